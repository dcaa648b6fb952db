"""
Tests for ReconciliationLoop state transitions.
"""
from decimal import Decimal

import ccxt.async_support as ccxt
import pytest
from unittest.mock import AsyncMock, MagicMock

from oraclearb.errors import ExchangeUnavailable, OrderNotFound, OrderRejected
from oraclearb.market_engine import MarketEngine
from oraclearb.models import CloseReason, LegStatus, PositionState
from oraclearb.reconciler import ReconciliationLoop

from conftest import make_config
from test_execution import Harness, opportunity


class Rig:
    def __init__(self, market, logger, clock):
        self.market = market
        self.h = Harness(market, logger, clock)
        self.loop = ReconciliationLoop(
            market, self.h.orch, self.h.positions, logger,
            interval=0.01, max_cancel_retries=2,
            on_finished=self.h._finished, clock=clock)

    async def open(self):
        return await self.h.orch.open(opportunity())

    async def active(self):
        position = await self.open()
        self.market.statuses[position.entry_leg.exchange_order_id] = LegStatus.FILLED
        await self.loop.reconcile_once()
        assert position.state is PositionState.ACTIVE
        return position

    def fill(self, leg):
        self.market.statuses[leg.exchange_order_id] = LegStatus.FILLED


@pytest.fixture
def rig(market, logger, clock):
    return Rig(market, logger, clock)


class TestOpening:

    @pytest.mark.asyncio
    async def test_waits_for_entry_fill(self, rig, market):
        position = await rig.open()

        await rig.loop.reconcile_once()

        assert position.state is PositionState.OPENING
        assert len(market.placed) == 1

    @pytest.mark.asyncio
    async def test_entry_fill_places_exits(self, rig, market):
        position = await rig.active()

        assert position.entry_leg.status is LegStatus.FILLED
        assert position.take_profit_leg.status is LegStatus.SUBMITTED
        assert position.stop_loss_leg.status is LegStatus.SUBMITTED
        assert len(market.placed) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [LegStatus.REJECTED, LegStatus.CANCELLED])
    async def test_entry_not_filled_fails(self, rig, market, status):
        position = await rig.open()
        market.statuses[position.entry_leg.exchange_order_id] = status

        await rig.loop.reconcile_once()

        assert position.state is PositionState.FAILED
        assert len(market.placed) == 1
        assert rig.h.finished == [position]

    @pytest.mark.asyncio
    async def test_exit_rejection_after_fill_rolls_back(self, rig, market):
        market.place_errors[2] = OrderRejected("bad price")
        position = await rig.open()
        market.statuses[position.entry_leg.exchange_order_id] = LegStatus.FILLED

        await rig.loop.reconcile_once()

        assert position.state is PositionState.FAILED
        assert position.close_reason is CloseReason.ROLLBACK
        assert position.take_profit_leg.status is LegStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_poll_failure_is_retried_next_cycle(self, rig, market):
        position = await rig.open()

        async def broken(order_id, token_id):
            raise ExchangeUnavailable("503")
        real = market.order_status
        market.order_status = broken
        await rig.loop.reconcile_once()
        assert position.state is PositionState.OPENING

        market.order_status = real
        market.statuses[position.entry_leg.exchange_order_id] = LegStatus.FILLED
        await rig.loop.reconcile_once()
        assert position.state is PositionState.ACTIVE


class TestMissingOrders:

    @pytest.mark.asyncio
    async def test_vanished_entry_fails_after_bound(self, rig, market):
        position = await rig.open()
        market.status_errors[position.entry_leg.exchange_order_id] = OrderNotFound("gone")

        await rig.loop.reconcile_once()
        await rig.loop.reconcile_once()
        assert position.state is PositionState.OPENING
        assert position.missing_polls == 2

        await rig.loop.reconcile_once()

        assert position.state is PositionState.FAILED
        assert any("vanished" in note for note in position.anomalies)
        assert rig.h.finished == [position]

    @pytest.mark.asyncio
    async def test_vanished_exit_fails_active_position(self, rig, market):
        position = await rig.active()
        market.status_errors[position.take_profit_leg.exchange_order_id] = OrderNotFound("gone")

        for _ in range(3):
            await rig.loop.reconcile_once()

        assert position.state is PositionState.FAILED

    @pytest.mark.asyncio
    async def test_counter_resets_after_successful_poll(self, rig, market):
        position = await rig.open()
        entry_id = position.entry_leg.exchange_order_id
        market.status_errors[entry_id] = OrderNotFound("not indexed yet")
        await rig.loop.reconcile_once()
        assert position.missing_polls == 1

        del market.status_errors[entry_id]
        await rig.loop.reconcile_once()

        assert position.missing_polls == 0
        assert position.state is PositionState.OPENING

    @pytest.mark.asyncio
    async def test_outage_never_fails_position(self, rig, market):
        position = await rig.open()
        market.status_errors[position.entry_leg.exchange_order_id] = ExchangeUnavailable("503")

        for _ in range(10):
            await rig.loop.reconcile_once()

        assert position.state is PositionState.OPENING
        assert position.missing_polls == 0

    @pytest.mark.asyncio
    async def test_ccxt_order_not_found_is_not_retried(self, logger, clock):
        client = MagicMock()
        client.fetch_balance = AsyncMock(return_value={'free': {'USDC': 100}})
        client.create_order = AsyncMock(return_value={'id': 'lost-1'})
        client.fetch_order = AsyncMock(side_effect=ccxt.OrderNotFound("lost-1"))
        market = MarketEngine(make_config(), logger, client=client)
        market.retry_base_delay = 0
        rig = Rig(market, logger, clock)
        position = await rig.open()

        for _ in range(3):
            await rig.loop.reconcile_once()

        assert position.state is PositionState.FAILED
        assert client.fetch_order.await_count == 3


class TestExits:

    @pytest.mark.asyncio
    async def test_scenario_d_take_profit(self, rig, market):
        position = await rig.active()
        rig.fill(position.take_profit_leg)

        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.close_reason is CloseReason.TAKE_PROFIT
        assert position.take_profit_leg.status is LegStatus.FILLED
        assert position.stop_loss_leg.status is LegStatus.CANCELLED
        assert market.cancelled == [position.stop_loss_leg.exchange_order_id]
        assert rig.h.finished == [position]

    @pytest.mark.asyncio
    async def test_stop_loss(self, rig, market):
        position = await rig.active()
        rig.fill(position.stop_loss_leg)

        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.close_reason is CloseReason.STOP_LOSS
        assert position.take_profit_leg.status is LegStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_nothing_filled_stays_active(self, rig, market):
        position = await rig.active()

        await rig.loop.reconcile_once()

        assert position.state is PositionState.ACTIVE
        assert market.cancelled == []

    @pytest.mark.asyncio
    async def test_both_filled_same_poll_is_anomaly(self, rig, market):
        position = await rig.active()
        rig.fill(position.take_profit_leg)
        rig.fill(position.stop_loss_leg)

        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.close_reason is CloseReason.TAKE_PROFIT
        assert position.anomalies
        assert market.cancelled == []

    @pytest.mark.asyncio
    async def test_sibling_fills_while_closing(self, rig, market):
        position = await rig.active()
        sl_id = position.stop_loss_leg.exchange_order_id
        market.cancel_errors[sl_id] = OrderRejected("already matched")
        rig.fill(position.take_profit_leg)

        await rig.loop.reconcile_once()
        assert position.state is PositionState.CLOSING

        rig.fill(position.stop_loss_leg)
        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.close_reason is CloseReason.TAKE_PROFIT
        assert any("also filled" in note for note in position.anomalies)

    @pytest.mark.asyncio
    async def test_cancel_retried_then_succeeds(self, rig, market):
        position = await rig.active()
        sl_id = position.stop_loss_leg.exchange_order_id
        market.cancel_errors[sl_id] = ExchangeUnavailable("timeout")
        rig.fill(position.take_profit_leg)

        await rig.loop.reconcile_once()
        assert position.state is PositionState.CLOSING

        del market.cancel_errors[sl_id]
        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.stop_loss_leg.status is LegStatus.CANCELLED
        assert market.cancelled == [sl_id, sl_id]

    @pytest.mark.asyncio
    async def test_cancel_retries_exhausted_fails(self, rig, market):
        position = await rig.active()
        market.cancel_errors[position.stop_loss_leg.exchange_order_id] = OrderRejected("nope")
        rig.fill(position.take_profit_leg)

        await rig.loop.reconcile_once()
        await rig.loop.reconcile_once()

        assert position.state is PositionState.FAILED
        assert position.cancel_attempts == 2
        assert position.close_reason is CloseReason.TAKE_PROFIT

    @pytest.mark.asyncio
    async def test_exit_cancelled_externally_closes_manual(self, rig, market):
        position = await rig.active()
        market.statuses[position.take_profit_leg.exchange_order_id] = LegStatus.CANCELLED

        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.close_reason is CloseReason.MANUAL
        assert position.stop_loss_leg.status is LegStatus.CANCELLED


class TestIdempotenceAndManualClose:

    @pytest.mark.asyncio
    async def test_closed_position_untouched(self, rig, market):
        position = await rig.active()
        rig.fill(position.take_profit_leg)
        await rig.loop.reconcile_once()
        assert position.state is PositionState.CLOSED

        calls = market.exchange_calls
        snapshot = (position.state, position.close_reason, position.closed_at,
                    [leg.status for leg in position.exit_legs])

        await rig.loop.reconcile_once()
        await rig.loop.reconcile(position)

        assert market.exchange_calls == calls
        assert snapshot == (position.state, position.close_reason, position.closed_at,
                            [leg.status for leg in position.exit_legs])
        assert rig.h.finished == [position]

    @pytest.mark.asyncio
    async def test_manual_close_active(self, rig, market):
        position = await rig.active()
        position.manual_close_requested = True

        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.close_reason is CloseReason.MANUAL
        assert all(leg.status is LegStatus.CANCELLED for leg in position.exit_legs)

    @pytest.mark.asyncio
    async def test_manual_close_while_opening(self, rig, market):
        position = await rig.open()
        entry_id = position.entry_leg.exchange_order_id
        market.cancel_errors[entry_id] = OrderRejected("market order already matched")
        position.manual_close_requested = True

        await rig.loop.reconcile_once()
        assert position.state is PositionState.CLOSING
        assert all(leg.status is LegStatus.CANCELLED for leg in position.exit_legs)

        market.statuses[entry_id] = LegStatus.FILLED
        await rig.loop.reconcile_once()

        assert position.state is PositionState.CLOSED
        assert position.close_reason is CloseReason.MANUAL
        assert len(market.placed) == 1
        assert position.entry_leg.size == Decimal("14.28")
