"""
Tests for the asynchronous position journal.
"""
import csv
from decimal import Decimal

import pytest

from oraclearb.logger import AUDIT_HEADER, AsyncAuditLogger
from oraclearb.models import CloseReason, OrderKind, Position, PositionState, Side, TradeLeg


def closed_position():
    p = Position(
        token_id="tok",
        entry_leg=TradeLeg("tok", Side.BUY, OrderKind.MARKET, Decimal("14.28")),
        take_profit_leg=TradeLeg("tok", Side.SELL, OrderKind.LIMIT, Decimal("14.28"), Decimal("0.71")),
        stop_loss_leg=TradeLeg("tok", Side.SELL, OrderKind.LIMIT, Decimal("14.28"), Decimal("0.695")),
        reference_price=Decimal("0.70"),
        opened_at=1_700_000_000.0,
    )
    p.state = PositionState.CLOSED
    p.close_reason = CloseReason.TAKE_PROFIT
    p.closed_at = 1_700_000_060.0
    return p


@pytest.mark.asyncio
async def test_journal_writes_header_and_rows(tmp_path):
    path = tmp_path / "logs" / "positions.csv"
    audit = AsyncAuditLogger(str(path))
    await audit.start()

    position = closed_position()
    await audit.log_position(position)
    await audit.stop()

    with open(path, newline='') as f:
        rows = list(csv.reader(f))

    assert rows[0] == AUDIT_HEADER
    assert len(rows) == 2
    record = dict(zip(AUDIT_HEADER, rows[1]))
    assert record['position_id'] == position.id
    assert record['close_reason'] == 'TAKE_PROFIT'
    assert record['take_profit'] == '0.71'
    assert record['stop_loss'] == '0.695'


@pytest.mark.asyncio
async def test_header_not_repeated_on_restart(tmp_path):
    path = tmp_path / "positions.csv"
    for _ in range(2):
        audit = AsyncAuditLogger(str(path))
        await audit.start()
        await audit.log_position(closed_position())
        await audit.stop()

    with open(path, newline='') as f:
        rows = list(csv.reader(f))

    assert rows.count(AUDIT_HEADER) == 1
    assert len(rows) == 3
