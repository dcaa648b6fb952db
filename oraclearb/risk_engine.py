# oraclearb/risk_engine.py
import logging
from typing import Iterable, Optional

from .models import MarketQuote, Position, PriceTick, RiskConfig, RiskRefusal


class RiskGate:
    """
    Decides 'Can we open another position?' before any entry is submitted.
    Refusals are ordinary outcomes and are returned, not raised.
    """
    def __init__(self, risk: RiskConfig, market, logger: logging.Logger):
        self.risk = risk
        self.market = market
        self.logger = logger
        self.last_refusal: Optional[RiskRefusal] = None

    @property
    def required_balance(self):
        return self.risk.trade_amount_usd * (1 + self.risk.fee_buffer_pct)

    async def can_open(self, positions: Iterable[Position]) -> Optional[RiskRefusal]:
        """
        Returns None when an entry is allowed, otherwise the refusal reason.
        Balance lookup errors propagate and abort the decision cycle.
        """
        open_count = sum(1 for p in positions if p.is_open)
        if open_count >= self.risk.max_concurrent_positions:
            return self._refuse(RiskRefusal.POSITION_LIMIT_REACHED,
                                f"{open_count}/{self.risk.max_concurrent_positions} positions open")

        balance = await self.market.balance()
        if balance < self.required_balance:
            return self._refuse(RiskRefusal.INSUFFICIENT_BALANCE,
                                f"balance {balance} < required {self.required_balance}")

        self.last_refusal = None
        return None

    def _refuse(self, reason: RiskRefusal, detail: str) -> RiskRefusal:
        self.last_refusal = reason
        self.logger.info(f"⛔ ENTRY REFUSED: {reason.value} ({detail})")
        return reason

    def validate_tick(self, tick: Optional[PriceTick], now: float) -> bool:
        if tick is None:
            return False
        if tick.age(now) > self.risk.max_data_age_seconds:
            return False
        return tick.oracle_price > 0

    def validate_quote(self, quote: Optional[MarketQuote], now: float) -> bool:
        """
        Filter out stale or anomalous book snapshots.
        """
        if quote is None:
            return False
        if quote.age(now) > self.risk.max_data_age_seconds:
            return False
        # Zero/negative or crossed book
        if quote.bid <= 0 or quote.ask <= 0 or quote.bid > quote.ask:
            return False
        return True
