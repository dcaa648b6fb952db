"""
Shared fixtures: a controllable clock, an in-memory exchange and oracle feed.
"""
import asyncio
import itertools
import logging
from decimal import Decimal

import pytest

from oraclearb.config import validate_config
from oraclearb.models import LegStatus, MarketQuote, PriceTick

TOKEN = "tok-123"
T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeMarket:
    """
    Scripted stand-in for MarketEngine.
    place_errors / cancel_errors map a placement index or order id to an exception,
    status_errors an order id to the exception its status poll raises.
    Set place_gate to an asyncio.Event to hold place_order until it is set.
    """
    def __init__(self, clock, balance="100"):
        self.clock = clock
        self.balance_value = Decimal(balance)
        self.bid = Decimal("0.69")
        self.ask = Decimal("0.71")
        self.placed = []
        self.cancelled = []
        self.statuses = {}
        self.place_errors = {}
        self.cancel_errors = {}
        self.status_errors = {}
        self.fills = {}
        self.place_gate = None
        self.quote_calls = 0
        self.status_calls = 0
        self.fill_calls = 0
        self.balance_calls = 0
        self.initialized = True
        self.closed = False
        self._ids = itertools.count(1)

    def set_mid(self, mid: str, half_spread: str = "0.01"):
        self.bid = Decimal(mid) - Decimal(half_spread)
        self.ask = Decimal(mid) + Decimal(half_spread)

    async def initialize(self):
        return self.initialized

    async def balance(self):
        self.balance_calls += 1
        return self.balance_value

    async def quote(self, token_id):
        self.quote_calls += 1
        return MarketQuote(bid=self.bid, ask=self.ask, midpoint=(self.bid + self.ask) / 2,
                           timestamp=self.clock())

    async def place_order(self, leg):
        index = len(self.placed)
        self.placed.append(leg)
        if self.place_gate is not None:
            await self.place_gate.wait()
        error = self.place_errors.get(index)
        if error is not None:
            raise error
        order_id = f"ord-{next(self._ids)}"
        self.statuses[order_id] = LegStatus.SUBMITTED
        return order_id

    async def cancel_order(self, order_id, token_id):
        self.cancelled.append(order_id)
        error = self.cancel_errors.get(order_id)
        if error is not None:
            raise error
        self.statuses[order_id] = LegStatus.CANCELLED

    async def order_status(self, order_id, token_id):
        self.status_calls += 1
        error = self.status_errors.get(order_id)
        if error is not None:
            raise error
        return self.statuses[order_id]

    async def filled_amount(self, order_id, token_id):
        self.fill_calls += 1
        return self.fills.get(order_id)

    async def shutdown(self):
        self.closed = True

    @property
    def exchange_calls(self):
        return len(self.placed) + len(self.cancelled) + self.status_calls + self.fill_calls


class FakeFeed:
    def __init__(self, clock):
        self.clock = clock
        self._latest = None
        self.updated = asyncio.Event()
        self.connected = True
        self.started = False

    def push(self, price: str, age: float = 0.0):
        self._latest = PriceTick(oracle_price=Decimal(price), timestamp=self.clock() - age)
        self.updated.set()

    def latest(self):
        return self._latest

    def fresh(self, now, max_age):
        tick = self._latest
        if tick is None or tick.age(now) > max_age:
            return None
        return tick

    async def start(self):
        self.started = True

    async def shutdown(self):
        self.started = False


def make_config(**risk_overrides):
    risk = {
        'price_difference_threshold': '0.015',
        'take_profit_offset': '0.01',
        'stop_loss_offset': '0.005',
        'trade_amount_usd': '10',
        'cooldown_seconds': 30,
        'max_concurrent_positions': 1,
    }
    risk.update(risk_overrides)
    return validate_config({
        'system': {'dry_run': True},
        'exchange': {'name': 'polymarket'},
        'market': {'token_id': TOKEN},
        'feed': {'url': 'wss://oracle.test/ws', 'instrument': 'BTC'},
        'risk': risk,
        'engine': {'reconcile_interval_seconds': 0.01, 'decision_interval_seconds': 0.01},
    })


@pytest.fixture
def logger():
    return logging.getLogger("oraclearb-test")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market(clock):
    return FakeMarket(clock)


@pytest.fixture
def feed(clock):
    return FakeFeed(clock)


@pytest.fixture
def config():
    return make_config()
