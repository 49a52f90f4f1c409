# drawdown_trading/models.py
"""
Record types shared across the engine.

Trade is the only durable record; everything else lives for one cycle.
Construction validates the invariants so a malformed record never reaches the
ledger or the exchange.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .utils import calculate_drawdown_pct, parse_datetime, utc_now


class QuoteState(str, Enum):
    """Exchange-side quote lifecycle."""
    CREATED = 'CREATED'
    PENDING = 'PENDING'
    EXECUTING = 'EXECUTING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    EXPIRED = 'EXPIRED'
    CANCELLED = 'CANCELLED'

    @classmethod
    def parse(cls, value: Any) -> Optional['QuoteState']:
        if value is None:
            return None
        text = str(value).upper().split('.')[-1]
        if text == 'CANCELED':
            text = 'CANCELLED'
        try:
            return cls(text)
        except ValueError:
            return None

    @property
    def is_terminal_failure(self) -> bool:
        return self in (QuoteState.FAILED, QuoteState.EXPIRED, QuoteState.CANCELLED)


class OrderState(str, Enum):
    """Local order lifecycle driven by the OrderExecutor."""
    CREATING_QUOTE = 'creating_quote'
    QUOTE_CREATED = 'quote_created'
    EXECUTING = 'executing'
    POLLING = 'polling'
    COMPLETED = 'completed'
    FAILED = 'failed'


class OrderSide(str, Enum):
    BUY = 'BUY'
    SELL = 'SELL'


class SellKind(str, Enum):
    TAKE_PROFIT = 'TAKE_PROFIT'
    FORCED = 'FORCED'


# =============================================================================
# PRICE
# =============================================================================

@dataclass(frozen=True)
class PriceSample:
    """One source's answer for one cycle."""
    source: str
    success: bool
    price: Optional[float] = None
    volume: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    error: Optional[str] = None
    latency_seconds: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.success and (self.price is None or self.price <= 0):
            raise ValueError(f"Successful sample from {self.source} needs a positive price")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class ConsolidatedPrice:
    """Trusted price point built from the successful samples of one cycle."""
    price: float
    six_months_high: float
    six_months_low: float
    sources_used: int
    total_sources: int
    fallback_used: bool = False
    volume: float = 0.0
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    samples: List[PriceSample] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.price <= 0:
            raise ValueError(f"Consolidated price must be positive, got {self.price}")
        if not self.fallback_used and self.sources_used < 2:
            raise ValueError(
                f"Consolidated price needs at least 2 sources, got {self.sources_used}"
            )

    @property
    def drawdown_percent(self) -> float:
        return calculate_drawdown_pct(self.price, self.six_months_high)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'price': self.price,
            'six_months_high': self.six_months_high,
            'six_months_low': self.six_months_low,
            'drawdown_percent': round(self.drawdown_percent, 4),
            'volume': self.volume,
            'high_24h': self.high_24h,
            'low_24h': self.low_24h,
            'sources_used': self.sources_used,
            'total_sources': self.total_sources,
            'fallback_used': self.fallback_used,
            'samples': [s.to_dict() for s in self.samples],
            'timestamp': self.timestamp.isoformat()
        }


# =============================================================================
# STRATEGY
# =============================================================================

@dataclass(frozen=True)
class MarketSignals:
    atr: float
    rsi: float

    def __post_init__(self):
        if self.atr < 0:
            raise ValueError(f"ATR must be >= 0, got {self.atr}")
        if not 0 <= self.rsi <= 100:
            raise ValueError(f"RSI must be within [0, 100], got {self.rsi}")


@dataclass(frozen=True)
class ConfidenceScore:
    overall: int
    volatility: int
    momentum: int
    drawdown: int
    take_profit: int
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Tier:
    """Risk bracket ("palier") derived from the drawdown magnitude."""
    name: str
    key: str
    drawdown_min: float
    drawdown_max: float
    capital_base_percent: float
    drawdown_factor: float
    capital_percent: float
    take_profit_base_percent: float
    take_profit_percent: float
    rsi_adjustment: float
    atr_adjustment: float
    atr_value: float
    rsi_value: float
    confidence: Optional[ConfidenceScore] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['confidence'] = self.confidence.to_dict() if self.confidence else None
        return data


@dataclass
class BuyDecision:
    allowed: bool
    reason: str
    tier: Optional[Tier] = None
    invested_amount: float = 0.0
    target_entry_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    available_capital: float = 0.0
    drawdown_percent: Optional[float] = None
    forced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'reason': self.reason,
            'tier': self.tier.name if self.tier else None,
            'capital_percent': self.tier.capital_percent if self.tier else None,
            'take_profit_percent': self.tier.take_profit_percent if self.tier else None,
            'confidence': self.tier.confidence.to_dict() if self.tier and self.tier.confidence else None,
            'invested_amount': self.invested_amount,
            'target_entry_price': self.target_entry_price,
            'take_profit_price': self.take_profit_price,
            'available_capital': self.available_capital,
            'drawdown_percent': self.drawdown_percent,
            'forced': self.forced
        }


# =============================================================================
# TRADE
# =============================================================================

@dataclass
class Trade:
    """A buy held until its take-profit sell closes it."""
    id: str
    quantity: float
    entry_price: float
    invested_amount: float
    take_profit_price: float
    take_profit_percent: float
    tier: Dict[str, Any]
    quote_id: str
    entry_time: datetime = field(default_factory=utc_now)
    side: OrderSide = OrderSide.BUY
    closed: bool = False
    exit_price: Optional[float] = None
    exit_amount: Optional[float] = None
    exit_time: Optional[datetime] = None
    exit_kind: Optional[str] = None
    exit_quote_id: Optional[str] = None
    pnl_percent: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Trade id is required")
        if self.quantity <= 0:
            raise ValueError(f"Trade quantity must be positive, got {self.quantity}")
        if self.entry_price <= 0:
            raise ValueError(f"Trade entry price must be positive, got {self.entry_price}")
        if self.invested_amount <= 0:
            raise ValueError(f"Invested amount must be positive, got {self.invested_amount}")
        if self.take_profit_price <= 0:
            raise ValueError(f"Take-profit price must be positive, got {self.take_profit_price}")
        self.side = OrderSide(self.side)
        if self.closed and self.exit_price is None:
            raise ValueError("A closed trade needs an exit price")

    @property
    def tier_name(self) -> Optional[str]:
        return (self.tier or {}).get('name')

    @property
    def is_open_buy(self) -> bool:
        return self.side == OrderSide.BUY and not self.closed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'side': self.side.value,
            'quantity': self.quantity,
            'entry_price': self.entry_price,
            'invested_amount': self.invested_amount,
            'take_profit_price': self.take_profit_price,
            'take_profit_percent': self.take_profit_percent,
            'tier': self.tier,
            'quote_id': self.quote_id,
            'entry_time': self.entry_time.isoformat(),
            'closed': self.closed,
            'exit_price': self.exit_price,
            'exit_amount': self.exit_amount,
            'exit_time': self.exit_time.isoformat() if self.exit_time else None,
            'exit_kind': self.exit_kind,
            'exit_quote_id': self.exit_quote_id,
            'pnl_percent': self.pnl_percent,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Trade':
        return cls(
            id=data['id'],
            side=OrderSide(data.get('side', 'BUY')),
            quantity=float(data['quantity']),
            entry_price=float(data['entry_price']),
            invested_amount=float(data['invested_amount']),
            take_profit_price=float(data['take_profit_price']),
            take_profit_percent=float(data.get('take_profit_percent') or 0.0),
            tier=data.get('tier') or {},
            quote_id=data.get('quote_id', ''),
            entry_time=parse_datetime(data['entry_time']),
            closed=bool(data.get('closed', False)),
            exit_price=data.get('exit_price'),
            exit_amount=data.get('exit_amount'),
            exit_time=parse_datetime(data.get('exit_time')),
            exit_kind=data.get('exit_kind'),
            exit_quote_id=data.get('exit_quote_id'),
            pnl_percent=data.get('pnl_percent'),
            created_at=parse_datetime(data.get('created_at')) or utc_now(),
            updated_at=parse_datetime(data.get('updated_at')) or utc_now()
        )


@dataclass
class SellDecision:
    trade: Trade
    kind: SellKind
    reason: str
    target_price: float
    current_profit_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trade_id': self.trade.id,
            'kind': self.kind.value,
            'reason': self.reason,
            'target_price': self.target_price,
            'current_profit_percent': round(self.current_profit_percent, 4)
        }


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class OrderResult:
    side: OrderSide
    state: OrderState = OrderState.CREATING_QUOTE
    success: bool = False
    quote_id: Optional[str] = None
    trade_id: Optional[str] = None
    quantity: Optional[float] = None
    price: Optional[float] = None
    amount: Optional[float] = None
    pnl_percent: Optional[float] = None
    receipt_id: Optional[str] = None
    error: Optional[str] = None
    transitions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['side'] = self.side.value
        data['state'] = self.state.value
        return data


@dataclass
class CycleReport:
    """Structured result of a cycle or admin action, successful or not."""
    execution_id: str
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    success: bool = False
    reason: str = ''
    action: str = 'NO_ACTION'
    price: Optional[float] = None
    drawdown_percent: Optional[float] = None
    tier_name: Optional[str] = None
    sources_used: Optional[int] = None
    available_capital: Optional[float] = None
    open_trades: Optional[int] = None
    buy_decision: Optional[Dict[str, Any]] = None
    buy_result: Optional[Dict[str, Any]] = None
    sell_decisions: List[Dict[str, Any]] = field(default_factory=list)
    sell_results: List[Dict[str, Any]] = field(default_factory=list)
    sells_executed: int = 0
    error: Optional[str] = None

    def finish(self, success: bool, reason: str, error: Optional[str] = None) -> 'CycleReport':
        self.success = success
        self.reason = reason
        self.error = error
        self.finished_at = utc_now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['started_at'] = self.started_at.isoformat()
        data['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        return data
