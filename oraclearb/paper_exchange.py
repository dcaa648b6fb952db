# oraclearb/paper_exchange.py
import itertools
import time
from typing import Dict, Optional

import ccxt.async_support as ccxt


class PaperExchange:
    """
    Dry-run stand-in for a ccxt client.

    Public data (markets, order books) comes from the real exchange; orders and
    balances are simulated locally. Market orders fill at the touch on
    placement. A limit sell placed below the bid rests as a stop and fills once
    the bid falls to it; any other limit fills once the book crosses it.
    """
    def __init__(self, public_client, quote_currency: str, logger, starting_balance: float = 1000.0):
        self.public = public_client
        self.quote_currency = quote_currency
        self.logger = logger
        self.cash = starting_balance
        self.orders: Dict[str, dict] = {}
        self._ids = itertools.count(1)

    @property
    def markets(self):
        return self.public.markets

    async def load_markets(self):
        return await self.public.load_markets()

    async def fetch_order_book(self, symbol: str, limit: Optional[int] = None):
        return await self.public.fetch_order_book(symbol, limit)

    async def fetch_balance(self, params: Optional[dict] = None):
        return {'free': {self.quote_currency: self.cash}}

    async def fetch_open_orders(self, symbol: Optional[str] = None):
        return [o for o in self.orders.values()
                if o['status'] == 'open' and (symbol is None or o['symbol'] == symbol)]

    async def _touch(self, symbol: str):
        book = await self.public.fetch_order_book(symbol)
        bid = book['bids'][0][0] if book.get('bids') else None
        ask = book['asks'][0][0] if book.get('asks') else None
        return bid, ask

    async def create_order(self, symbol: str, type: str, side: str, amount: float,
                           price: Optional[float] = None, params: Optional[dict] = None):
        bid, ask = await self._touch(symbol)
        order_id = f"paper-{next(self._ids)}"
        order = {
            'id': order_id, 'symbol': symbol, 'type': type, 'side': side,
            'amount': amount, 'price': price, 'status': 'open', 'filled': 0.0,
            'timestamp': int(time.time() * 1000), 'stop': False,
        }

        if type == 'market':
            fill_px = ask if side == 'buy' else bid
            if fill_px is None:
                raise ccxt.InvalidOrder(f"paper: no liquidity to {side} {symbol}")
            if side == 'buy' and amount * fill_px > self.cash:
                raise ccxt.InsufficientFunds(f"paper: need {amount * fill_px:.2f}, have {self.cash:.2f}")
            self._fill(order, fill_px)
        elif side == 'sell' and bid is not None and price < bid:
            order['stop'] = True

        self.orders[order_id] = order
        self.logger.info(f"🔵 PAPER {type.upper()} {side.upper()} {amount} {symbol} @ {price or 'market'} -> {order_id}")
        return dict(order)

    def _fill(self, order: dict, price: float):
        order['status'] = 'closed'
        order['filled'] = order['amount']
        order['average'] = price
        notional = order['amount'] * price
        self.cash += -notional if order['side'] == 'buy' else notional

    async def fetch_order(self, id: str, symbol: Optional[str] = None):
        order = self.orders.get(id)
        if order is None:
            raise ccxt.OrderNotFound(f"paper: unknown order {id}")

        if order['status'] == 'open':
            bid, ask = await self._touch(order['symbol'])
            if order['side'] == 'sell' and bid is not None:
                hit = bid <= order['price'] if order['stop'] else bid >= order['price']
                if hit:
                    self._fill(order, bid)
            elif order['side'] == 'buy' and ask is not None and ask <= order['price']:
                self._fill(order, ask)
        return dict(order)

    async def cancel_order(self, id: str, symbol: Optional[str] = None):
        order = self.orders.get(id)
        if order is None:
            raise ccxt.OrderNotFound(f"paper: unknown order {id}")
        if order['status'] != 'open':
            raise ccxt.InvalidOrder(f"paper: order {id} is already {order['status']}")
        order['status'] = 'canceled'
        return dict(order)

    async def close(self):
        await self.public.close()
