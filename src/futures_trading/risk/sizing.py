"""Leverage, position sizing and stop/target rules."""

from __future__ import annotations

from futures_trading.config import Settings
from futures_trading.types import (
    BollingerValues,
    Direction,
    LeverageDecision,
    PositionSizing,
    StopTarget,
)

BOOST_MIN_SCORE = 9
BOOST_MAX_ATR_PCT = 2.0
HIGH_VOLATILITY_ATR_PCT = 3.0


def determine_leverage(score: int, atr_pct: float | None, settings: Settings) -> LeverageDecision:
    """Pick leverage from a fixed table of score and volatility.

    Boosted only when score >= 9 and ATR% < 2 hold together; ATR% > 3 always
    falls back to the high-volatility tier. Unknown ATR% never boosts.
    """
    if score >= BOOST_MIN_SCORE and atr_pct is not None and atr_pct < BOOST_MAX_ATR_PCT:
        return LeverageDecision(_clamp_leverage(settings.boosted_leverage, settings), "boosted")
    if atr_pct is not None and atr_pct > HIGH_VOLATILITY_ATR_PCT:
        return LeverageDecision(
            _clamp_leverage(settings.high_volatility_leverage, settings), "high_volatility"
        )
    return LeverageDecision(_clamp_leverage(settings.default_leverage, settings), "normal")


def compute_position_size(
    balance: float,
    entry: float,
    stop_loss: float,
    leverage: int,
    settings: Settings,
) -> PositionSizing | None:
    """Size a position so the loss at the stop equals the risk budget.

    Returns ``None`` when no position can be sized. When the margin cap
    binds, notional and quantity shrink with it, so realized risk can land
    under budget but margin never exceeds the cap.
    """
    if balance <= 0 or entry <= 0 or stop_loss <= 0 or leverage <= 0:
        return None
    stop_distance = abs(entry - stop_loss) / entry
    if stop_distance == 0:
        return None

    risk_budget = balance * settings.risk_per_trade_pct / 100.0
    notional = risk_budget / stop_distance
    margin = notional / leverage

    max_margin = balance * settings.max_margin_usage_pct / 100.0
    capped = margin > max_margin
    if capped:
        margin = max_margin
        notional = margin * leverage

    return PositionSizing(
        risk_budget=risk_budget,
        stop_distance=stop_distance,
        notional=notional,
        margin=margin,
        quantity=notional / entry,
        leverage=leverage,
        margin_capped=capped,
    )


def build_stop_target(
    direction: Direction,
    entry: float,
    atr: float | None,
    bollinger: BollingerValues | None,
    settings: Settings,
) -> StopTarget:
    """Build the initial stop loss and take profit for a new position.

    The stop takes the tighter of the ATR and percentage distances, the
    target the wider one; both may then be pulled in to the Bollinger band
    edges. If reward:risk ends up under the floor, only the target moves.
    """
    stop_dist = entry * settings.stop_loss_pct / 100.0
    target_dist = entry * settings.take_profit_pct / 100.0
    if atr is not None and atr > 0:
        stop_dist = min(stop_dist, atr * settings.stop_loss_atr_multiplier)
        target_dist = max(target_dist, atr * settings.take_profit_atr_multiplier)

    sign = direction.sign
    stop_loss = entry - sign * stop_dist
    take_profit = entry + sign * target_dist

    if bollinger is not None:
        stop_loss, take_profit = _clamp_to_bands(
            direction, entry, stop_loss, take_profit, bollinger, settings.bollinger_buffer_pct
        )

    stop_dist = abs(entry - stop_loss)
    target_dist = abs(entry - take_profit)
    rr_ratio = target_dist / stop_dist if stop_dist > 0 else 0.0
    if stop_dist > 0 and rr_ratio < settings.min_rr_ratio:
        # Nudged past the floor to absorb float rounding.
        rr_ratio = settings.min_rr_ratio
        target_dist = stop_dist * rr_ratio * (1 + 1e-9)
        take_profit = entry + sign * target_dist

    return StopTarget(
        stop_loss=stop_loss,
        take_profit=take_profit,
        rr_ratio=rr_ratio,
        stop_distance_pct=stop_dist / entry * 100,
        target_distance_pct=target_dist / entry * 100,
    )


def _clamp_to_bands(
    direction: Direction,
    entry: float,
    stop_loss: float,
    take_profit: float,
    bb: BollingerValues,
    buffer_pct: float,
) -> tuple[float, float]:
    below = 1 - buffer_pct / 100.0
    above = 1 + buffer_pct / 100.0
    if direction is Direction.LONG:
        if bb.lower > stop_loss and bb.lower * below < entry:
            stop_loss = bb.lower * below
        if bb.upper < take_profit and bb.upper * above > entry:
            take_profit = bb.upper * above
    else:
        if bb.upper < stop_loss and bb.upper * above > entry:
            stop_loss = bb.upper * above
        if bb.lower > take_profit and bb.lower * below < entry:
            take_profit = bb.lower * below
    return stop_loss, take_profit


def _clamp_leverage(value: int, settings: Settings) -> int:
    return max(settings.min_leverage, min(settings.max_leverage, value))
