# oraclearb/execution.py
import asyncio
import time
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import ExchangeUnavailable, OrderRejected, UnhedgedInventoryFailure
from .models import (
    CloseReason, CooldownState, LegStatus, Opportunity, OrderKind, Position,
    PositionState, RiskConfig, Side, TradeLeg,
)
from .risk_engine import RiskGate


class BracketOrchestrator:
    """
    Places the three-leg bracket and owns its failure handling.

    `open` submits only the entry. Exit legs go out through `submit_exits`,
    which the reconciliation loop calls once the entry is confirmed filled,
    so after creation a position is only ever mutated from that loop.
    """
    def __init__(self, risk: RiskConfig, market, gate: RiskGate,
                 positions: Dict[str, Position], cooldown: CooldownState, logger,
                 token_id: str, size_precision: int = 2, price_precision: int = 3,
                 on_finished: Optional[Callable[[Position], Awaitable[None]]] = None,
                 clock: Callable[[], float] = time.time):
        self.risk = risk
        self.market = market
        self.gate = gate
        self.positions = positions
        self.cooldown = cooldown
        self.logger = logger
        self.token_id = token_id
        self.size_step = Decimal(1).scaleb(-size_precision)
        self.price_step = Decimal(1).scaleb(-price_precision)
        self.on_finished = on_finished
        self.clock = clock

    def bracket_prices(self, reference_price: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
        """
        Returns (entry size in shares, take-profit price, stop-loss price).
        Size rounds down so the entry never spends more than the configured amount.
        """
        size = (self.risk.trade_amount_usd / reference_price).quantize(self.size_step, rounding=ROUND_DOWN)
        take_profit = (reference_price + self.risk.take_profit_offset).quantize(self.price_step, rounding=ROUND_HALF_UP)
        stop_loss = (reference_price - self.risk.stop_loss_offset).quantize(self.price_step, rounding=ROUND_HALF_UP)
        return size, take_profit, stop_loss

    async def open(self, opp: Opportunity) -> Optional[Position]:
        """
        Gate check, then entry submission. Returns the new Position (possibly
        FAILED) or None when nothing was attempted.
        """
        if opp.side is not Side.BUY:
            self.logger.debug(f"Ignoring {opp.side.value} opportunity: only long entries are traded")
            return None

        refusal = await self.gate.can_open(self.positions.values())
        if refusal is not None:
            return None

        size, take_profit, stop_loss = self.bracket_prices(opp.reference_price)
        if size <= 0 or stop_loss <= 0:
            self.logger.warning(
                f"Bracket not tradable at reference {opp.reference_price}: size={size} sl={stop_loss}")
            return None

        position = Position(
            token_id=self.token_id,
            entry_leg=TradeLeg(self.token_id, Side.BUY, OrderKind.MARKET, size),
            take_profit_leg=TradeLeg(self.token_id, Side.SELL, OrderKind.LIMIT, size, take_profit),
            stop_loss_leg=TradeLeg(self.token_id, Side.SELL, OrderKind.LIMIT, size, stop_loss),
            reference_price=opp.reference_price,
            opened_at=self.clock(),
        )
        self.positions[position.id] = position

        self.logger.info(
            f"⚡ ENTRY {position.short_id()}: BUY {size} {self.token_id} @ market "
            f"(ref {opp.reference_price}, TP {take_profit}, SL {stop_loss})")

        try:
            order_id = await self.market.place_order(position.entry_leg)
        except (OrderRejected, ExchangeUnavailable) as e:
            self.cooldown.last_action_at = self.clock()
            position.entry_leg.status = LegStatus.REJECTED
            position.state = PositionState.FAILED
            position.closed_at = self.clock()
            if isinstance(e, ExchangeUnavailable):
                self.logger.error(f"❌ ENTRY {position.short_id()} FAILED (exchange unreachable, verify manually): {e}")
            else:
                self.logger.warning(f"⚠️ ENTRY {position.short_id()} REJECTED: {e}")
            await self._finished(position)
            return position
        except asyncio.CancelledError:
            # The request may already be on the exchange, so the position cannot stay OPENING without an id
            self.cooldown.last_action_at = self.clock()
            position.entry_leg.status = LegStatus.REJECTED
            position.state = PositionState.FAILED
            position.closed_at = self.clock()
            position.anomalies.append("entry submission interrupted before the exchange answered")
            self.logger.critical(
                f"💀 ENTRY {position.short_id()} INTERRUPTED: BUY {size} {self.token_id} may have executed, "
                f"verify manually")
            await self._finished(position)
            raise

        self.cooldown.last_action_at = self.clock()
        position.entry_leg.exchange_order_id = order_id
        position.entry_leg.status = LegStatus.SUBMITTED
        self.logger.info(f"   entry {position.short_id()} submitted as {order_id}")
        return position

    async def submit_exits(self, position: Position):
        """
        Places take-profit then stop-loss. Any failure rolls the bracket back.
        """
        if position.entry_leg.status is not LegStatus.FILLED:
            self.logger.error(f"Refusing exits for {position.short_id()}: entry is {position.entry_leg.status.value}")
            return

        entry = position.entry_leg
        held = await self.market.filled_amount(entry.exchange_order_id, entry.token_id)
        if held is not None:
            held = held.quantize(self.size_step, rounding=ROUND_DOWN)
            if 0 < held < entry.size:
                self.logger.warning(
                    f"{position.short_id()} holds {held} of {entry.size} ordered, sizing exits to the fill")
                for leg in position.exit_legs:
                    leg.size = held

        submitted: List[TradeLeg] = []
        for leg in position.exit_legs:
            try:
                leg.exchange_order_id = await self.market.place_order(leg)
            except (OrderRejected, ExchangeUnavailable) as e:
                leg.status = LegStatus.REJECTED
                await self._rollback(position, submitted, e)
                return
            leg.status = LegStatus.SUBMITTED
            submitted.append(leg)

        position.state = PositionState.ACTIVE
        self.logger.info(
            f"✅ BRACKET {position.short_id()} ACTIVE: TP {position.take_profit_leg.exchange_order_id} "
            f"@ {position.take_profit_leg.limit_price} | SL {position.stop_loss_leg.exchange_order_id} "
            f"@ {position.stop_loss_leg.limit_price}")

    async def _rollback(self, position: Position, submitted: List[TradeLeg], cause: Exception):
        for leg in submitted:
            try:
                await self.market.cancel_order(leg.exchange_order_id, leg.token_id)
                leg.status = LegStatus.CANCELLED
            except (OrderRejected, ExchangeUnavailable) as e:
                note = f"rollback cancel of {leg.exchange_order_id} failed: {e}"
                position.anomalies.append(note)
                self.logger.critical(f"💀 {position.short_id()}: {note}")

        position.state = PositionState.FAILED
        position.close_reason = CloseReason.ROLLBACK
        position.unhedged = True
        position.closed_at = self.clock()

        failure = UnhedgedInventoryFailure(
            position.id,
            f"entry filled ({position.entry_leg.size} {position.token_id}) but exits could not be placed: {cause}. "
            f"Inventory is UNHEDGED, manual action required.")
        self.logger.critical(f"🚨 {failure}")
        await self._finished(position)

    async def _finished(self, position: Position):
        if self.on_finished is not None:
            await self.on_finished(position)
