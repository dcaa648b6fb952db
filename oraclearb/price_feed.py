# oraclearb/price_feed.py
import asyncio
import aiohttp
import json
import time
import logging
import math
from decimal import Decimal, InvalidOperation
from typing import Optional

from .errors import FeedDisconnected
from .models import PriceTick

# Tolerated lead of a source timestamp over local receipt time
MAX_CLOCK_SKEW = 2.0


def parse_tick(raw: str, instrument: str, received_at: float) -> Optional[PriceTick]:
    """
    Turns one feed message into a PriceTick.
    Returns None for messages about other instruments; raises ValueError if malformed.
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected an object, got {type(data).__name__}")

    if data.get('instrument') != instrument:
        return None

    try:
        price = Decimal(str(data['price']))
    except KeyError as e:
        raise ValueError("missing 'price'") from e
    except InvalidOperation as e:
        raise ValueError(f"bad price {data['price']!r}") from e
    if not price.is_finite() or price <= 0:
        raise ValueError(f"non-positive price {price}")

    ts = data.get('timestamp')
    if ts is None:
        timestamp = received_at
    else:
        timestamp = float(ts)
        if not math.isfinite(timestamp):
            raise ValueError(f"non-finite timestamp {ts!r}")
        # Feeds commonly send epoch milliseconds
        if timestamp > 1e12:
            timestamp /= 1000.0
        if timestamp > received_at + MAX_CLOCK_SKEW:
            raise ValueError(f"timestamp {timestamp} is ahead of receipt time {received_at}")
        timestamp = min(timestamp, received_at)

    return PriceTick(oracle_price=price, timestamp=timestamp)


class PriceFeedListener:
    """
    Keeps the latest oracle price for one instrument.
    Runs forever in the background and reconnects with exponential backoff.
    """
    def __init__(self, url: str, instrument: str, logger: logging.Logger,
                 reconnect_base: float = 1.0, reconnect_max: float = 30.0):
        self.url = url
        self.instrument = instrument
        self.logger = logger
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max

        self._latest: Optional[PriceTick] = None
        self.updated = asyncio.Event()
        self.running = False
        self.connected = False
        self.dropped_messages = 0
        self._attempt = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None

    def latest(self) -> Optional[PriceTick]:
        return self._latest

    def fresh(self, now: float, max_age: float) -> Optional[PriceTick]:
        """Latest tick, or None when it is older than max_age."""
        tick = self._latest
        if tick is None or tick.age(now) > max_age:
            return None
        return tick

    def handle_message(self, raw: str):
        try:
            tick = parse_tick(raw, self.instrument, time.time())
        except (ValueError, TypeError) as e:
            self.dropped_messages += 1
            self.logger.warning(f"Dropped malformed feed message: {e} | {raw[:200]!r}")
            return
        if tick is None:
            return

        self._latest = tick
        self._attempt = 0
        self.updated.set()

    def backoff_delay(self) -> float:
        return min(self.reconnect_base * (2 ** self._attempt), self.reconnect_max)

    async def connect(self, session: aiohttp.ClientSession):
        async with session.ws_connect(self.url, heartbeat=20) as ws:
            self.connected = True
            self.logger.info(f"📡 ORACLE FEED CONNECTED: {self.url} ({self.instrument})")
            await ws.send_json({"op": "subscribe", "instrument": self.instrument})

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise FeedDisconnected(f"websocket error: {ws.exception()}")

        raise FeedDisconnected("server closed the stream")

    async def start(self):
        self.running = True
        self._session = aiohttp.ClientSession()
        self._task = asyncio.create_task(self._run_forever())

    async def _run_forever(self):
        while self.running:
            try:
                await self.connect(self._session)
            except asyncio.CancelledError:
                raise
            except (FeedDisconnected, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self.logger.error(f"Oracle feed lost: {e}")
            finally:
                self.connected = False

            if self.running:
                delay = self.backoff_delay()
                self._attempt += 1
                self.logger.info(f"Reconnecting oracle feed in {delay:.1f}s (attempt {self._attempt})")
                await asyncio.sleep(delay)

    async def shutdown(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._session:
            await self._session.close()
