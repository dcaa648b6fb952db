# oraclearb/reconciler.py
"""
Reconciliation loop: polls the exchange for every leg of every live position
and drives the position state machine.

    OPENING  -> ACTIVE    entry filled, both exits placed
    OPENING  -> FAILED    entry rejected/cancelled, or exit placement rolled back
    ACTIVE   -> CLOSING   one exit filled (or cancelled externally), sibling cancel sent
    CLOSING  -> CLOSED    sibling confirmed cancelled (or also filled, logged as anomaly)
    any      -> FAILED    cancel retries exhausted, or an order stays unknown to the exchange

This task is the only writer of a position after creation.
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

from .errors import ExchangeUnavailable, OrderNotFound, OrderRejected
from .execution import BracketOrchestrator
from .models import CloseReason, LegStatus, Position, PositionState, TradeLeg


class ReconciliationLoop:
    def __init__(self, market, orchestrator: BracketOrchestrator, positions: Dict[str, Position],
                 logger, interval: float = 3.0, max_cancel_retries: int = 3, max_missing_polls: int = 3,
                 on_finished: Optional[Callable[[Position], Awaitable[None]]] = None,
                 clock: Callable[[], float] = time.time):
        self.market = market
        self.orchestrator = orchestrator
        self.positions = positions
        self.logger = logger
        self.interval = interval
        self.max_cancel_retries = max_cancel_retries
        self.max_missing_polls = max_missing_polls
        self.on_finished = on_finished
        self.clock = clock
        self.running = False

    def open_positions(self):
        return [p for p in self.positions.values() if p.is_open]

    async def run(self):
        self.running = True
        while self.running:
            try:
                await self.reconcile_once()
            except Exception:
                self.logger.exception("Unexpected error during reconciliation")
            await asyncio.sleep(self.interval)

    def stop(self):
        self.running = False

    async def reconcile_once(self):
        for position in self.open_positions():
            try:
                await self.reconcile(position)
            except ExchangeUnavailable as e:
                self.logger.warning(f"Poll of {position.short_id()} failed, will retry: {e}")
            except OrderNotFound as e:
                await self._order_missing(position, e)
            else:
                position.missing_polls = 0

    async def _order_missing(self, position: Position, error: OrderNotFound):
        position.missing_polls += 1
        self.logger.error(
            f"Order of {position.short_id()} unknown to the exchange "
            f"({position.missing_polls}/{self.max_missing_polls}): {error}")
        if position.missing_polls >= self.max_missing_polls:
            self._anomaly(position, f"order vanished from the exchange: {error}")
            self.logger.critical(
                f"💀 {position.short_id()} FAILED: exchange lost track of its orders, "
                f"verify holdings manually")
            await self._finish(position, PositionState.FAILED)

    async def reconcile(self, position: Position):
        if position.state.is_terminal:
            return

        if position.manual_close_requested and position.close_reason is None:
            await self._start_manual_close(position)
            return

        if position.state is PositionState.OPENING:
            await self._reconcile_opening(position)
        elif position.state is PositionState.ACTIVE:
            await self._reconcile_active(position)
        elif position.state is PositionState.CLOSING:
            await self._reconcile_closing(position)

    async def _refresh(self, leg: TradeLeg) -> LegStatus:
        if leg.exchange_order_id is not None and leg.status.is_open:
            leg.status = await self.market.order_status(leg.exchange_order_id, leg.token_id)
        return leg.status

    async def _reconcile_opening(self, position: Position):
        entry = position.entry_leg
        if entry.exchange_order_id is None:
            # Entry submission still in flight
            return

        status = await self._refresh(entry)
        if status is LegStatus.FILLED:
            self.logger.info(f"📥 ENTRY FILLED {position.short_id()}: placing exits")
            await self.orchestrator.submit_exits(position)
        elif status in (LegStatus.REJECTED, LegStatus.CANCELLED):
            self.logger.warning(f"⚠️ ENTRY {position.short_id()} ended {status.value}, position failed")
            await self._finish(position, PositionState.FAILED)

    async def _reconcile_active(self, position: Position):
        tp = await self._refresh(position.take_profit_leg)
        sl = await self._refresh(position.stop_loss_leg)

        if tp is LegStatus.FILLED and sl is LegStatus.FILLED:
            self._anomaly(position, "both exit legs filled in the same poll")
            position.close_reason = CloseReason.TAKE_PROFIT
            await self._finish(position, PositionState.CLOSED)
            return

        if tp is LegStatus.FILLED:
            await self._begin_closing(position, CloseReason.TAKE_PROFIT)
        elif sl is LegStatus.FILLED:
            await self._begin_closing(position, CloseReason.STOP_LOSS)
        elif not tp.is_open or not sl.is_open:
            # An exit vanished without filling: someone intervened on the exchange
            self.logger.warning(
                f"Exit leg of {position.short_id()} closed externally (TP {tp.value}, SL {sl.value}), closing as MANUAL")
            await self._begin_closing(position, CloseReason.MANUAL)

    async def _begin_closing(self, position: Position, reason: CloseReason):
        position.close_reason = reason
        position.state = PositionState.CLOSING
        self.logger.info(f"🏁 {position.short_id()} {reason.value}: cancelling remaining exit")
        await self._cancel_open_legs(position)
        if not position.state.is_terminal:
            await self._reconcile_closing(position, poll=False)

    async def _reconcile_closing(self, position: Position, poll: bool = True):
        legs = [position.entry_leg] + position.exit_legs
        if poll:
            for leg in legs:
                await self._refresh(leg)

        if position.close_reason in (CloseReason.TAKE_PROFIT, CloseReason.STOP_LOSS):
            if all(leg.status is LegStatus.FILLED for leg in position.exit_legs):
                self._anomaly(position, f"sibling exit also filled after {position.close_reason.value}")

        if any(leg.status.is_open for leg in legs):
            if not poll:
                return
            await self._cancel_open_legs(position)
            if position.state.is_terminal or any(leg.status.is_open for leg in legs):
                return

        if position.close_reason is CloseReason.MANUAL and position.entry_leg.status is LegStatus.FILLED \
                and not any(leg.status is LegStatus.FILLED for leg in position.exit_legs):
            self.logger.warning(
                f"{position.short_id()} closed manually while holding {position.entry_leg.size} "
                f"{position.token_id} without exit orders")
        await self._finish(position, PositionState.CLOSED)

    async def _cancel_open_legs(self, position: Position):
        for leg in position.exit_legs + [position.entry_leg]:
            if not leg.status.is_open:
                continue
            if leg.exchange_order_id is None:
                leg.status = LegStatus.CANCELLED
                continue
            try:
                await self.market.cancel_order(leg.exchange_order_id, leg.token_id)
                leg.status = LegStatus.CANCELLED
            except (OrderRejected, ExchangeUnavailable) as e:
                position.cancel_attempts += 1
                self.logger.error(
                    f"Cancel of {leg.exchange_order_id} for {position.short_id()} failed "
                    f"({position.cancel_attempts}/{self.max_cancel_retries}): {e}")
                if position.cancel_attempts >= self.max_cancel_retries:
                    self._anomaly(position, f"could not cancel {leg.exchange_order_id}: {e}")
                    self.logger.critical(
                        f"💀 {position.short_id()} FAILED: exit {leg.exchange_order_id} may still be live, "
                        f"manual action required")
                    await self._finish(position, PositionState.FAILED)
                    return

    async def _start_manual_close(self, position: Position):
        self.logger.info(f"✋ Manual close of {position.short_id()} ({position.state.value})")
        position.close_reason = CloseReason.MANUAL
        if position.state is PositionState.OPENING and position.entry_leg.exchange_order_id is None:
            # Entry never reached the exchange
            position.entry_leg.status = LegStatus.CANCELLED
            await self._finish(position, PositionState.CLOSED)
            return
        position.state = PositionState.CLOSING
        await self._cancel_open_legs(position)
        if not position.state.is_terminal:
            await self._reconcile_closing(position, poll=False)

    def _anomaly(self, position: Position, note: str):
        position.anomalies.append(note)
        self.logger.error(f"❗ ANOMALY {position.short_id()}: {note}")

    async def _finish(self, position: Position, state: PositionState):
        position.state = state
        position.closed_at = self.clock()
        self.logger.info(
            f"📕 {position.short_id()} {state.value}"
            f"{' (' + position.close_reason.value + ')' if position.close_reason else ''}")
        if self.on_finished is not None:
            await self.on_finished(position)
