# oraclearb/market_engine.py
import ccxt.async_support as ccxt
import asyncio
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional

from .errors import ConfigError, ExchangeUnavailable, InvalidInstrument, OrderNotFound, OrderRejected, StaleData
from .models import LegStatus, MarketQuote, OrderKind, TradeLeg

CCXT_STATUS = {
    'open': LegStatus.SUBMITTED,
    'closed': LegStatus.FILLED,
    'canceled': LegStatus.CANCELLED,
    'cancelled': LegStatus.CANCELLED,
    'expired': LegStatus.CANCELLED,
    'rejected': LegStatus.REJECTED,
}


def map_order_status(order: dict) -> LegStatus:
    """Translates a ccxt unified order into the engine's leg status."""
    status = order.get('status')
    if status is None:
        # Some venues omit status right after placement
        return LegStatus.SUBMITTED
    try:
        return CCXT_STATUS[status]
    except KeyError:
        raise ExchangeUnavailable(f"unknown order status {status!r} for order {order.get('id')}")


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value))


class MarketEngine:
    """
    Owns the exchange connection.
    Responsible for startup diagnostics, fresh book snapshots, and the
    order primitives used by execution and reconciliation.
    """
    def __init__(self, config: dict, logger, client=None):
        self.cfg = config
        self.logger = logger
        self.client = client
        self.name = config['exchange']['name']
        self.quote_currency = config['exchange']['quote_currency']
        self.read_retries = config['engine']['read_retries']
        self.retry_base_delay = 0.5

    def _build_client(self):
        creds = self.cfg['exchange']
        if self.name not in ccxt.exchanges:
            raise ConfigError(f"exchange '{self.name}' is not supported by ccxt")
        ex_class = getattr(ccxt, self.name)
        params = {
            'timeout': creds['network_timeout_ms'],
            'enableRateLimit': True,
        }
        if creds.get('api_key'):
            params.update({
                'apiKey': creds['api_key'],
                'secret': creds['secret'],
                'password': creds.get('password', ''),
            })
        client = ex_class(params)
        if self.cfg['system']['environment'] == 'testnet':
            client.set_sandbox_mode(True)

        if self.cfg['system']['dry_run']:
            from .paper_exchange import PaperExchange
            return PaperExchange(client, self.quote_currency, self.logger,
                                 starting_balance=float(creds['paper_balance']))
        return client

    async def initialize(self) -> bool:
        """
        Connects and runs diagnostics. Returns False if any check fails.
        """
        token_id = self.cfg['market']['token_id']
        self.logger.info(f"📡 TESTING EXCHANGE CONNECTION ({self.name})...")

        try:
            if self.client is None:
                self.client = self._build_client()

            # --- DIAGNOSTIC PHASE 1: PUBLIC API ---
            await self.client.load_markets()
            if self.client.markets and token_id not in self.client.markets:
                self.logger.critical(f"   ❌ {self.name.upper()} | UNKNOWN TOKEN: {token_id}")
                return False

            # --- DIAGNOSTIC PHASE 2: PRIVATE API ---
            balance = await self.balance()
            self.logger.info(f"   ✅ {self.name.upper()} | Auth: OK | Free {self.quote_currency}: {balance}")

            # --- DIAGNOSTIC PHASE 3: LEFTOVER ORDERS ---
            # Positions are not persisted, so orders from a previous run cannot be re-attached
            leftovers = await self.open_orders(token_id)
            if leftovers:
                ids = ", ".join(str(o.get('id')) for o in leftovers)
                self.logger.critical(
                    f"   ❌ {self.name.upper()} | {len(leftovers)} OPEN ORDER(S) ON {token_id}: {ids}. "
                    f"Resolve them manually before starting.")
                return False

        except ConfigError as e:
            self.logger.critical(f"   ❌ {self.name.upper()} | {e}")
            return False

        except InvalidInstrument as e:
            self.logger.critical(f"   ❌ {self.name.upper()} | UNKNOWN TOKEN: {e}")
            return False

        except ccxt.AuthenticationError:
            self.logger.critical(f"   ❌ {self.name.upper()} | AUTH FAILED: Invalid API Key or Secret.")
            return False

        except ccxt.PermissionDenied:
            self.logger.critical(f"   ❌ {self.name.upper()} | PERMISSION DENIED: Key lacks trading permissions.")
            return False

        except (ExchangeUnavailable, ccxt.NetworkError) as e:
            self.logger.error(f"   ❌ {self.name.upper()} | UNREACHABLE: {e}")
            return False

        except ccxt.ExchangeError as e:
            self.logger.critical(f"   ❌ {self.name.upper()} | EXCHANGE ERROR: {e}")
            return False

        return True

    async def _read(self, what: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """
        Runs a read-only call, retrying transient failures with exponential backoff.
        """
        attempt = 0
        while True:
            try:
                return await call()
            except ccxt.BadSymbol as e:
                raise InvalidInstrument(str(e)) from e
            except ccxt.InvalidOrder as e:
                # OrderNotFound included: the order is gone, asking again will not bring it back
                raise OrderNotFound(f"{what}: {e}") from e
            except (ccxt.AuthenticationError, ccxt.PermissionDenied):
                raise
            except (ccxt.NetworkError, ccxt.ExchangeError) as e:
                if attempt >= self.read_retries:
                    raise ExchangeUnavailable(f"{what} failed after {attempt + 1} attempts: {e}") from e
                delay = self.retry_base_delay * (2 ** attempt)
                attempt += 1
                self.logger.warning(f"{what} failed ({e}); retry {attempt}/{self.read_retries} in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def quote(self, token_id: str) -> MarketQuote:
        """
        Fresh top-of-book snapshot. Never cached.
        """
        book = await self._read(f"order book {token_id}", lambda: self.client.fetch_order_book(token_id))
        bids = book.get('bids') or []
        asks = book.get('asks') or []
        if not bids or not asks:
            raise StaleData(f"one-sided book for {token_id} (bids={len(bids)}, asks={len(asks)})")

        bid = _to_decimal(bids[0][0])
        ask = _to_decimal(asks[0][0])
        return MarketQuote(bid=bid, ask=ask, midpoint=(bid + ask) / 2, timestamp=time.time())

    async def balance(self) -> Decimal:
        res = await self._read("balance", lambda: self.client.fetch_balance())
        free = (res.get('free') or {}).get(self.quote_currency) or 0
        return _to_decimal(free)

    async def open_orders(self, token_id: str) -> List[dict]:
        return await self._read(f"open orders {token_id}", lambda: self.client.fetch_open_orders(token_id))

    async def order_status(self, order_id: str, token_id: str) -> LegStatus:
        order = await self._read(f"order {order_id}", lambda: self.client.fetch_order(order_id, token_id))
        return map_order_status(order)

    async def filled_amount(self, order_id: str, token_id: str) -> Optional[Decimal]:
        """
        Shares actually held from an order: the filled amount less any fee
        charged in the token itself. None when the venue does not report it.
        """
        order = await self._read(f"order {order_id}", lambda: self.client.fetch_order(order_id, token_id))
        filled = order.get('filled')
        if filled is None:
            return None
        held = _to_decimal(filled)
        fee = order.get('fee') or {}
        if fee.get('cost') and fee.get('currency') not in (None, self.quote_currency):
            held -= _to_decimal(fee['cost'])
        return held

    async def place_order(self, leg: TradeLeg) -> str:
        """
        Submits one leg. Never retried: a timeout may still have placed the order.
        """
        order_type = 'market' if leg.kind is OrderKind.MARKET else 'limit'
        price = float(leg.limit_price) if leg.limit_price is not None else None
        try:
            res = await self.client.create_order(
                leg.token_id, order_type, leg.side.value.lower(), float(leg.size), price)
        except ccxt.NetworkError as e:
            raise ExchangeUnavailable(f"create_order: {e}") from e
        except ccxt.ExchangeError as e:
            raise OrderRejected(f"create_order: {e}") from e

        order_id = res.get('id') if res else None
        if not order_id:
            raise OrderRejected(f"exchange returned no order id: {res}")
        return str(order_id)

    async def cancel_order(self, order_id: str, token_id: str):
        try:
            await self.client.cancel_order(order_id, token_id)
        except ccxt.NetworkError as e:
            raise ExchangeUnavailable(f"cancel_order {order_id}: {e}") from e
        except ccxt.ExchangeError as e:
            raise OrderRejected(f"cancel_order {order_id}: {e}") from e

    async def shutdown(self):
        """
        Gracefully closes the REST session.
        """
        if self.client is not None:
            await self.client.close()
