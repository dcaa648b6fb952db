# oraclearb/models.py
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderKind(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class LegStatus(Enum):
    """
    Lifecycle of a single order as seen by the engine.
    """
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_open(self) -> bool:
        return self in (LegStatus.PENDING, LegStatus.SUBMITTED)


class PositionState(Enum):
    OPENING = "OPENING"
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PositionState.CLOSED, PositionState.FAILED)


class CloseReason(Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    MANUAL = "MANUAL"
    ROLLBACK = "ROLLBACK"


class RiskRefusal(Enum):
    """Expected reasons for the risk gate to refuse an entry."""
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    POSITION_LIMIT_REACHED = "PositionLimitReached"


@dataclass(slots=True)
class PriceTick:
    """
    Latest oracle value for the active instrument.
    """
    oracle_price: Decimal
    timestamp: float

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp


@dataclass(slots=True)
class MarketQuote:
    """
    Top of the exchange book at the moment it was fetched.
    Never reused across decision cycles.
    """
    bid: Decimal
    ask: Decimal
    midpoint: Decimal
    timestamp: float

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp


@dataclass(slots=True)
class TradeLeg:
    token_id: str
    side: Side
    kind: OrderKind
    size: Decimal
    limit_price: Optional[Decimal] = None
    exchange_order_id: Optional[str] = None
    status: LegStatus = LegStatus.PENDING


@dataclass(slots=True)
class Position:
    """
    One bracket: an entry leg plus two mutually exclusive exit legs.
    """
    token_id: str
    entry_leg: TradeLeg
    take_profit_leg: TradeLeg
    stop_loss_leg: TradeLeg
    reference_price: Decimal
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    opened_at: float = field(default_factory=time.time)
    state: PositionState = PositionState.OPENING
    close_reason: Optional[CloseReason] = None
    closed_at: Optional[float] = None
    cancel_attempts: int = 0
    missing_polls: int = 0
    manual_close_requested: bool = False
    unhedged: bool = False
    anomalies: List[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return not self.state.is_terminal

    @property
    def exit_legs(self) -> List[TradeLeg]:
        return [self.take_profit_leg, self.stop_loss_leg]

    def short_id(self) -> str:
        return self.id[:8]


@dataclass(slots=True)
class CooldownState:
    last_action_at: Optional[float] = None

    def remaining(self, cooldown_seconds: int, now: float) -> float:
        if self.last_action_at is None:
            return 0.0
        return max(0.0, cooldown_seconds - (now - self.last_action_at))


@dataclass(frozen=True)
class RiskConfig:
    """
    Immutable trading limits, loaded once at startup.
    """
    price_difference_threshold: Decimal
    take_profit_offset: Decimal
    stop_loss_offset: Decimal
    trade_amount_usd: Decimal
    cooldown_seconds: int
    max_concurrent_positions: int
    fee_buffer_pct: Decimal = Decimal("0.02")
    max_data_age_seconds: float = 5.0


@dataclass(slots=True)
class Opportunity:
    """
    A qualified divergence signal passed from the detector to execution.
    """
    side: Side
    reference_price: Decimal
    oracle_price: Decimal
    divergence: Decimal
    timestamp: float
