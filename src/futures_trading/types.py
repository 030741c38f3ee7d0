"""Shared domain types for the futures trading engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

Bias = Literal["strong_buy", "buy", "neutral", "sell", "strong_sell"]
LeverageMode = Literal["boosted", "normal", "high_volatility"]


class Direction(str, Enum):
    """Trade direction."""

    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def entry_side(self) -> Literal["BUY", "SELL"]:
        return "BUY" if self is Direction.LONG else "SELL"

    @property
    def exit_side(self) -> Literal["BUY", "SELL"]:
        return "SELL" if self is Direction.LONG else "BUY"


class CloseReason(str, Enum):
    """Why a position left the active set."""

    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"
    MANUAL_CLOSE = "MANUAL_CLOSE"


@dataclass(frozen=True, slots=True)
class MACDValues:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True, slots=True)
class BollingerValues:
    upper: float
    middle: float
    lower: float
    position: float
    squeeze: bool


@dataclass(frozen=True, slots=True)
class EMAValues:
    ema9: float | None = None
    ema21: float | None = None
    ema50: float | None = None

    @property
    def complete(self) -> bool:
        return None not in (self.ema9, self.ema21, self.ema50)


@dataclass(frozen=True, slots=True)
class IndicatorSnapshot:
    """Indicator values for one symbol on one timeframe.

    Every indicator except ``price`` may be ``None`` when there was not
    enough history to compute it.
    """

    symbol: str
    timeframe: str
    price: float
    rsi: float | None = None
    macd: MACDValues | None = None
    macd_prev: MACDValues | None = None
    bollinger: BollingerValues | None = None
    ema: EMAValues = field(default_factory=EMAValues)
    atr: float | None = None
    atr_pct: float | None = None
    volume_ratio: float | None = None


@dataclass(frozen=True, slots=True)
class LayerScore:
    score: int
    status: str


@dataclass(frozen=True, slots=True)
class SignalScore:
    """Seven-layer directional score, recomputed every scan."""

    direction: Direction | None
    score: int
    layers: dict[str, LayerScore] = field(default_factory=dict)
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class LeverageDecision:
    leverage: int
    mode: LeverageMode


@dataclass(frozen=True, slots=True)
class StopTarget:
    stop_loss: float
    take_profit: float
    rr_ratio: float
    stop_distance_pct: float
    target_distance_pct: float


@dataclass(frozen=True, slots=True)
class PositionSizing:
    risk_budget: float
    stop_distance: float
    notional: float
    margin: float
    quantity: float
    leverage: int
    margin_capped: bool


@dataclass(frozen=True, slots=True)
class Fill:
    """Confirmed execution reported by a gateway."""

    symbol: str
    side: Literal["BUY", "SELL"]
    quantity: float
    price: float
    order_id: str
    timestamp: str


@dataclass(frozen=True, slots=True)
class HeldPosition:
    """Position as the exchange reports it."""

    direction: Direction
    quantity: float
    entry_price: float


@dataclass(slots=True)
class Position:
    """Open leveraged position. Mutated only by the lifecycle manager."""

    id: str
    symbol: str
    direction: Direction
    entry_price: float
    quantity: float
    leverage: int
    stop_loss: float
    take_profit: float
    opened_at: str
    score: int = 0
    leverage_mode: LeverageMode = "normal"
    margin: float = 0.0
    current_price: float = 0.0
    trailing_active: bool = False
    trailing_stop_price: float | None = None
    partial_closed: bool = False
    unrealized_pnl: float = 0.0
    pnl_pct: float = 0.0
    realized_pnl: float = 0.0
    closing: bool = False
    close_reason: CloseReason | None = None
    # A reduce order was sent but its fill was never confirmed.
    unconfirmed_reduce: bool = False

    def mark(self, price: float) -> None:
        """Refresh current price and unrealized P&L."""
        sign = self.direction.sign
        self.current_price = price
        self.unrealized_pnl = sign * (price - self.entry_price) * self.quantity
        self.pnl_pct = sign * (price - self.entry_price) / self.entry_price * 100 * self.leverage

    def pnl_at(self, price: float, quantity: float) -> float:
        return self.direction.sign * (price - self.entry_price) * quantity

    def stop_hit(self) -> bool:
        if self.direction is Direction.LONG:
            return self.current_price <= self.stop_loss
        return self.current_price >= self.stop_loss

    def target_hit(self) -> bool:
        if self.direction is Direction.LONG:
            return self.current_price >= self.take_profit
        return self.current_price <= self.take_profit

    def trailing_hit(self) -> bool:
        if not self.trailing_active or self.trailing_stop_price is None:
            return False
        if self.direction is Direction.LONG:
            return self.current_price <= self.trailing_stop_price
        return self.current_price >= self.trailing_stop_price

    def ratchet_stop(self, price: float) -> bool:
        """Move the stop loss to ``price`` only if that tightens it."""
        if self.direction is Direction.LONG:
            tighter = price > self.stop_loss
        else:
            tighter = price < self.stop_loss
        if tighter:
            self.stop_loss = price
        return tighter

    def ratchet_trailing(self, distance_pct: float) -> bool:
        """Trail the stop behind the current price, never letting it retreat."""
        distance = self.current_price * distance_pct / 100
        candidate = self.current_price - self.direction.sign * distance
        if self.trailing_stop_price is None:
            self.trailing_stop_price = candidate
            return True
        if self.direction is Direction.LONG and candidate > self.trailing_stop_price:
            self.trailing_stop_price = candidate
            return True
        if self.direction is Direction.SHORT and candidate < self.trailing_stop_price:
            self.trailing_stop_price = candidate
            return True
        return False


@dataclass(slots=True)
class RiskState:
    """Process-wide risk state, persisted across restarts."""

    day: str
    daily_pnl: float = 0.0
    daily_trade_count: int = 0
    locked_until: str | None = None
    lock_reason: str | None = None
    outcomes: list[float] = field(default_factory=list)
    peak_balance: float = 0.0
    max_drawdown_pct: float = 0.0


@dataclass(frozen=True, slots=True)
class AdmissionContext:
    """Full context the risk governor needs to admit one trade."""

    symbol: str
    balance: float
    margin: float
    rr_ratio: float
    open_positions: int


@dataclass(slots=True)
class AdmissionResult:
    """Result of the admission gate."""

    allowed: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CycleResult:
    """Outcome of one scan or monitor pass."""

    status: str
    decisions: list[dict[str, object]] = field(default_factory=list)
    orders: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Dry-run view of what a scan would decide for one symbol."""

    symbol: str
    signal: SignalScore
    min_score: int
    would_trade: bool
    leverage: LeverageDecision | None = None
    entry_price: float | None = None
    stop_target: StopTarget | None = None
    sizing: PositionSizing | None = None
    atr_pct: float | None = None
    biases: dict[str, str] = field(default_factory=dict)
    error: str | None = None


@dataclass(slots=True)
class EngineStatus:
    running: bool
    monitoring: bool
    positions: dict[str, Position]
    daily_pnl: float
    locked: bool
    locked_until: str | None
    balance: float
    balance_stale: bool
    risk: dict[str, object] = field(default_factory=dict)
