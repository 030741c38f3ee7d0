"""Seven-layer multi-timeframe signal scoring."""

from __future__ import annotations

from futures_trading.types import (
    Bias,
    Direction,
    IndicatorSnapshot,
    LayerScore,
    MACDValues,
    SignalScore,
)

LAYER_CAPS = {
    "trend": 2,
    "rsi": 2,
    "macd": 2,
    "bollinger": 1,
    "ema": 1,
    "volume": 1,
    "entry_timing": 1,
}

_NO_DATA = "no_data"


def classify_bias(snapshot: IndicatorSnapshot | None) -> Bias:
    """Vote the snapshot's indicators into a directional bias.

    RSI and MACD contribute up to 2 points each side, Bollinger and EMA up to
    1.5, and a volume surge adds 1 to whichever side already leads. A side
    needs at least 5 points and a clear lead to count; otherwise the bias is
    neutral.
    """
    if snapshot is None:
        return "neutral"

    buy = 0.0
    sell = 0.0

    if snapshot.rsi is not None:
        if snapshot.rsi < 25:
            buy += 2
        elif snapshot.rsi < 35:
            buy += 1
        elif snapshot.rsi > 75:
            sell += 2
        elif snapshot.rsi > 65:
            sell += 1

    if snapshot.macd is not None and snapshot.macd_prev is not None:
        if _macd_cross_up(snapshot.macd_prev, snapshot.macd):
            buy += 2
        elif _macd_cross_down(snapshot.macd_prev, snapshot.macd):
            sell += 2
        elif snapshot.macd.histogram > 0:
            buy += 1
        elif snapshot.macd.histogram < 0:
            sell += 1

    bb = snapshot.bollinger
    if bb is not None:
        if bb.position < 0.1:
            buy += 1.5
        elif bb.position > 0.9:
            sell += 1.5
        elif bb.squeeze:
            buy += 0.5
            sell += 0.5

    ema = snapshot.ema
    if ema.complete:
        if ema.ema9 > ema.ema21 > ema.ema50:  # type: ignore[operator]
            buy += 1.5
        elif ema.ema9 < ema.ema21 < ema.ema50:  # type: ignore[operator]
            sell += 1.5
        elif ema.ema9 > ema.ema21:  # type: ignore[operator]
            buy += 0.5
        else:
            sell += 0.5

    if snapshot.volume_ratio is not None and snapshot.volume_ratio > 1.5:
        if buy > sell:
            buy += 1
        elif sell > buy:
            sell += 1

    if buy >= 7 and buy > sell + 2:
        return "strong_buy"
    if buy >= 5 and buy > sell + 1:
        return "buy"
    if sell >= 7 and sell > buy + 2:
        return "strong_sell"
    if sell >= 5 and sell > buy + 1:
        return "sell"
    return "neutral"


def bias_direction(bias: Bias) -> Direction | None:
    if bias.endswith("buy"):
        return Direction.LONG
    if bias.endswith("sell"):
        return Direction.SHORT
    return None


def score_signal(
    base: IndicatorSnapshot | None,
    slow: IndicatorSnapshot | None,
    fast: IndicatorSnapshot | None,
) -> SignalScore:
    """Score a trade setup from the base, slow and fast timeframe snapshots.

    Any snapshot may be ``None``; the layers that depend on it score zero
    with a ``no_data`` status and the remaining layers are still evaluated.
    """
    base_bias = classify_bias(base)
    slow_bias = classify_bias(slow)

    direction = bias_direction(base_bias) or bias_direction(slow_bias)
    if direction is None:
        return SignalScore(direction=None, score=0, reason="direction_undetermined")

    layers = {
        "trend": _trend_layer(direction, base_bias, slow_bias),
        "rsi": _rsi_layer(direction, base),
        "macd": _macd_layer(direction, base),
        "bollinger": _bollinger_layer(direction, base),
        "ema": _ema_layer(direction, base),
        "volume": _volume_layer(base),
        "entry_timing": _entry_timing_layer(direction, fast),
    }
    total = sum(min(layer.score, LAYER_CAPS[name]) for name, layer in layers.items())
    return SignalScore(direction=direction, score=total, layers=layers)


def _trend_layer(direction: Direction, base_bias: Bias, slow_bias: Bias) -> LayerScore:
    agreeing = sum(1 for bias in (base_bias, slow_bias) if bias_direction(bias) is direction)
    if agreeing == 2:
        return LayerScore(2, "full_alignment")
    if agreeing == 1:
        return LayerScore(1, "partial_alignment")
    return LayerScore(0, "misaligned")


def _rsi_layer(direction: Direction, snapshot: IndicatorSnapshot | None) -> LayerScore:
    if snapshot is None or snapshot.rsi is None:
        return LayerScore(0, _NO_DATA)
    rsi = snapshot.rsi
    if direction is Direction.LONG:
        if rsi < 25:
            return LayerScore(2, "strong_oversold")
        if rsi < 35:
            return LayerScore(1, "oversold")
    else:
        if rsi > 75:
            return LayerScore(2, "strong_overbought")
        if rsi > 65:
            return LayerScore(1, "overbought")
    return LayerScore(0, "neutral")


def _macd_layer(direction: Direction, snapshot: IndicatorSnapshot | None) -> LayerScore:
    if snapshot is None or snapshot.macd is None or snapshot.macd_prev is None:
        return LayerScore(0, _NO_DATA)
    prev, cur = snapshot.macd_prev, snapshot.macd
    histogram = cur.histogram
    if direction is Direction.LONG:
        if _macd_cross_up(prev, cur):
            return LayerScore(2, "bullish_crossover")
        if histogram > 0:
            return LayerScore(1, "positive_histogram")
    else:
        if _macd_cross_down(prev, cur):
            return LayerScore(2, "bearish_crossover")
        if histogram < 0:
            return LayerScore(1, "negative_histogram")
    return LayerScore(0, "neutral")


def _bollinger_layer(direction: Direction, snapshot: IndicatorSnapshot | None) -> LayerScore:
    if snapshot is None or snapshot.bollinger is None:
        return LayerScore(0, _NO_DATA)
    bb = snapshot.bollinger
    if direction is Direction.LONG and bb.position < 0.1:
        return LayerScore(1, "lower_band")
    if direction is Direction.SHORT and bb.position > 0.9:
        return LayerScore(1, "upper_band")
    if bb.squeeze:
        return LayerScore(1, "squeeze")
    return LayerScore(0, "neutral")


def _ema_layer(direction: Direction, snapshot: IndicatorSnapshot | None) -> LayerScore:
    if snapshot is None or not snapshot.ema.complete:
        return LayerScore(0, _NO_DATA)
    ema = snapshot.ema
    if direction is Direction.LONG and ema.ema9 > ema.ema21 > ema.ema50:  # type: ignore[operator]
        return LayerScore(1, "bullish_stack")
    if direction is Direction.SHORT and ema.ema9 < ema.ema21 < ema.ema50:  # type: ignore[operator]
        return LayerScore(1, "bearish_stack")
    return LayerScore(0, "mixed")


def _volume_layer(snapshot: IndicatorSnapshot | None) -> LayerScore:
    if snapshot is None or snapshot.volume_ratio is None:
        return LayerScore(0, _NO_DATA)
    if snapshot.volume_ratio >= 1.3:
        return LayerScore(1, "high_volume")
    return LayerScore(0, "low_volume")


def _entry_timing_layer(direction: Direction, fast: IndicatorSnapshot | None) -> LayerScore:
    if fast is None:
        return LayerScore(0, _NO_DATA)
    if bias_direction(classify_bias(fast)) is direction:
        return LayerScore(1, "aligned")
    return LayerScore(0, "misaligned")


def _macd_cross_up(prev: MACDValues, cur: MACDValues) -> bool:
    return prev.line <= prev.signal and cur.line > cur.signal


def _macd_cross_down(prev: MACDValues, cur: MACDValues) -> bool:
    return prev.line >= prev.signal and cur.line < cur.signal
