# oraclearb/engine.py
import asyncio
import time
from typing import Callable, Dict, List, Optional

from .config import build_risk_config
from .errors import ArbError, ExchangeUnavailable, InvalidInstrument, StaleData
from .execution import BracketOrchestrator
from .logger import AsyncAuditLogger
from .market_engine import MarketEngine
from .models import CooldownState, MarketQuote, Position
from .price_feed import PriceFeedListener
from .reconciler import ReconciliationLoop
from .risk_engine import RiskGate
from .strategy import OpportunityDetector


class Engine:
    """
    Single context object for one instrument.

    Owns the position book, the cooldown state and the entry lock, and wires
    feed -> detector -> risk gate -> orchestrator, with the reconciliation
    loop running alongside on its own timer.
    """
    def __init__(self, config: dict, logger, market=None, feed=None,
                 audit: Optional[AsyncAuditLogger] = None, clock: Callable[[], float] = time.time):
        self.cfg = config
        self.logger = logger
        self.clock = clock
        self.risk = build_risk_config(config)
        self.token_id = config['market']['token_id']
        eng = config['engine']

        self.positions: Dict[str, Position] = {}
        self.cooldown = CooldownState()
        self.last_quote: Optional[MarketQuote] = None

        self.market = market or MarketEngine(config, logger)
        self.feed = feed or PriceFeedListener(
            config['feed']['url'], config['feed']['instrument'], logger,
            reconnect_base=config['feed']['reconnect_base_seconds'],
            reconnect_max=config['feed']['reconnect_max_seconds'])
        self.audit = audit

        self.gate = RiskGate(self.risk, self.market, logger)
        self.detector = OpportunityDetector(self.gate, logger)
        self.orchestrator = BracketOrchestrator(
            self.risk, self.market, self.gate, self.positions, self.cooldown, logger,
            token_id=self.token_id,
            size_precision=eng['size_precision'],
            price_precision=eng['price_precision'],
            on_finished=self._on_finished,
            clock=clock)
        self.reconciler = ReconciliationLoop(
            self.market, self.orchestrator, self.positions, logger,
            interval=eng['reconcile_interval_seconds'],
            max_cancel_retries=eng['max_cancel_retries'],
            max_missing_polls=eng['max_missing_polls'],
            on_finished=self._on_finished,
            clock=clock)

        self.decision_interval = eng['decision_interval_seconds']
        self.shutdown_timeout = eng['shutdown_timeout_seconds']
        self.accepting = False
        self._entry_lock = asyncio.Lock()
        self._decision_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None

    async def _on_finished(self, position: Position):
        if self.audit is not None:
            await self.audit.log_position(position)

    def open_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if p.is_open]

    async def start(self) -> bool:
        """
        Runs diagnostics and starts the background tasks. False means do not trade.
        """
        if self.audit is not None:
            await self.audit.start()
        if not await self.market.initialize():
            return False

        await self.feed.start()
        self.accepting = True
        self._decision_task = asyncio.create_task(self._decision_loop())
        self._reconcile_task = asyncio.create_task(self.reconciler.run())
        self.logger.info(f"🚀 ENGINE RUNNING on {self.token_id} | {self.risk}")
        return True

    async def decide(self) -> Optional[Position]:
        """
        One pass of detector -> gate -> orchestrator.
        Held under the entry lock so two triggers can never both pass the gate.
        """
        if not self.accepting:
            return None

        async with self._entry_lock:
            tick = self.feed.fresh(self.clock(), self.risk.max_data_age_seconds)
            if tick is None:
                self.logger.debug("No fresh oracle tick")
                return None

            quote = await self.market.quote(self.token_id)
            self.last_quote = quote

            opp = self.detector.evaluate(tick, quote, self.cooldown, self.clock())
            if opp is None:
                return None
            return await self.orchestrator.open(opp)

    async def _decision_loop(self):
        while self.accepting:
            try:
                await asyncio.wait_for(self.feed.updated.wait(), timeout=self.decision_interval)
            except asyncio.TimeoutError:
                pass
            self.feed.updated.clear()
            if not self.accepting:
                break

            try:
                await self.decide()
            except (StaleData, ExchangeUnavailable, InvalidInstrument) as e:
                self.logger.warning(f"Decision cycle skipped: {e}")
            except ArbError as e:
                self.logger.error(f"Decision cycle failed: {e}")
            except Exception:
                self.logger.exception("Unexpected error in decision cycle")

    def request_close(self, position_id: str) -> bool:
        """
        Flags a live position for manual close. The reconciliation loop does the work.
        """
        position = self.positions.get(position_id)
        if position is None or not position.is_open:
            return False
        position.manual_close_requested = True
        self.logger.info(f"Manual close requested for {position.short_id()}")
        return True

    def request_close_all(self) -> int:
        """Flags every live position for manual close. Returns how many were flagged."""
        return sum(1 for p in self.open_positions() if self.request_close(p.id))

    async def _drain(self):
        while self.open_positions():
            await asyncio.sleep(min(self.reconciler.interval, 0.5))

    async def shutdown(self, timeout: Optional[float] = None):
        """
        Stops new entries, keeps reconciling until every position is closed
        or the timeout expires, then releases all resources.
        """
        timeout = self.shutdown_timeout if timeout is None else timeout
        self.accepting = False
        if self._decision_task is not None:
            if self._entry_lock.locked():
                # A cycle is mid-submission: let it finish so the entry gets its order id
                self.logger.info("Waiting for the in-flight decision cycle to finish")
            else:
                self._decision_task.cancel()
            try:
                await self._decision_task
            except asyncio.CancelledError:
                pass

        if self.open_positions():
            self.logger.info(f"Waiting up to {timeout:.0f}s for {len(self.open_positions())} open position(s)")
            try:
                await asyncio.wait_for(self._drain(), timeout=timeout)
            except asyncio.TimeoutError:
                for p in self.open_positions():
                    self.logger.critical(
                        f"🛑 LEFT OPEN {p.id} [{p.state.value}] entry={p.entry_leg.exchange_order_id} "
                        f"tp={p.take_profit_leg.exchange_order_id} sl={p.stop_loss_leg.exchange_order_id}: "
                        f"manual intervention required")

        self.reconciler.stop()
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass

        await self.feed.shutdown()
        await self.market.shutdown()
        if self.audit is not None:
            await self.audit.stop()
