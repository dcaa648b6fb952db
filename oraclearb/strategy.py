# oraclearb/strategy.py
import logging
from typing import Optional

from .models import CooldownState, MarketQuote, Opportunity, PriceTick, Side
from .risk_engine import RiskGate


class OpportunityDetector:
    """
    Compares the oracle price against the exchange midpoint and applies the
    threshold and cooldown policy. Pure decision logic, no I/O.
    """
    def __init__(self, risk_gate: RiskGate, logger: logging.Logger):
        self.gate = risk_gate
        self.risk = risk_gate.risk
        self.logger = logger
        self.last_divergence = None

    def evaluate(self, tick: Optional[PriceTick], quote: Optional[MarketQuote],
                 cooldown: CooldownState, now: float) -> Optional[Opportunity]:
        if not self.gate.validate_tick(tick, now) or not self.gate.validate_quote(quote, now):
            self.logger.debug("Stale or missing market data, skipping cycle")
            return None

        divergence = tick.oracle_price - quote.midpoint
        self.last_divergence = divergence

        if cooldown.remaining(self.risk.cooldown_seconds, now) > 0:
            return None

        # At exactly the threshold we still trade
        if abs(divergence) < self.risk.price_difference_threshold:
            return None

        side = Side.BUY if divergence > 0 else Side.SELL
        # SELL signals are not traded and would repeat every cycle
        log = self.logger.info if side is Side.BUY else self.logger.debug
        log(f"✨ DIVERGENCE: oracle {tick.oracle_price} vs mid {quote.midpoint} "
            f"= {divergence:+} ({side.value})")
        return Opportunity(
            side=side,
            reference_price=quote.midpoint,
            oracle_price=tick.oracle_price,
            divergence=divergence,
            timestamp=now,
        )
