"""Indicator snapshot computation from OHLCV bars."""

from __future__ import annotations

import math

import pandas as pd  # type: ignore[import-untyped]

from futures_trading.exec.gateway import InsufficientDataError
from futures_trading.types import BollingerValues, EMAValues, IndicatorSnapshot, MACDValues

MIN_BARS = 50
_SQUEEZE_RATIO = 0.7


def compute_snapshot(symbol: str, timeframe: str, df: pd.DataFrame) -> IndicatorSnapshot:
    """Compute the indicator snapshot for the latest bar of ``df``."""
    if df.empty or len(df) < MIN_BARS:
        raise InsufficientDataError(f"insufficient_bars: {symbol} {timeframe} rows={len(df)}")

    if not _is_time_ascending(df):
        raise ValueError("ohlcv_timestamp_not_ascending")

    close = df["close"].astype(float)
    price = float(close.iloc[-1])
    if price <= 0:
        raise InsufficientDataError(f"non_positive_price: {symbol} {timeframe}")

    macd_line, macd_signal, macd_hist = _macd(close)
    atr = _last(_atr(df, period=14))

    return IndicatorSnapshot(
        symbol=symbol,
        timeframe=timeframe,
        price=price,
        rsi=_last(_rsi(close, period=14)),
        macd=_macd_at(macd_line, macd_signal, macd_hist, -1),
        macd_prev=_macd_at(macd_line, macd_signal, macd_hist, -2),
        bollinger=_bollinger(close),
        ema=EMAValues(
            ema9=_last(_ema(close, 9)),
            ema21=_last(_ema(close, 21)),
            ema50=_last(_ema(close, 50)),
        ),
        atr=atr,
        atr_pct=atr / price * 100 if atr is not None else None,
        volume_ratio=_volume_ratio(df["volume"].astype(float)),
    )


def _is_time_ascending(df: pd.DataFrame) -> bool:
    open_time = df.get("open_time")
    if open_time is None:
        return False
    return bool(pd.Series(open_time).is_monotonic_increasing)


def _last(series: pd.Series) -> float | None:
    clean = series.dropna()
    if clean.empty:
        return None
    value = float(clean.iloc[-1])
    return value if math.isfinite(value) else None


def _ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False).mean()


def _rsi(close: pd.Series, period: int = 14) -> pd.Series:
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss
    rsi = 100 - 100 / (1 + rs)
    # No losses in the window means RSI is pinned at 100.
    return rsi.where(avg_loss != 0, 100.0)


def _macd(
    close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9
) -> tuple[pd.Series, pd.Series, pd.Series]:
    line = _ema(close, fast) - _ema(close, slow)
    signal_line = _ema(line, signal)
    return line, signal_line, line - signal_line


def _macd_at(
    line: pd.Series, signal: pd.Series, hist: pd.Series, index: int
) -> MACDValues | None:
    if len(line) < abs(index):
        return None
    return MACDValues(
        line=float(line.iloc[index]),
        signal=float(signal.iloc[index]),
        histogram=float(hist.iloc[index]),
    )


def _bollinger(close: pd.Series, period: int = 20, num_std: float = 2.0) -> BollingerValues | None:
    middle = close.rolling(window=period, min_periods=period).mean()
    std = close.rolling(window=period, min_periods=period).std(ddof=0)
    upper = middle + num_std * std
    lower = middle - num_std * std
    width = (upper - lower).dropna()
    if width.empty:
        return None

    last_upper = float(upper.iloc[-1])
    last_lower = float(lower.iloc[-1])
    band_range = last_upper - last_lower
    price = float(close.iloc[-1])
    position = (price - last_lower) / band_range if band_range > 0 else 0.5

    squeeze = False
    if len(width) >= 5:
        recent = float(width.iloc[-5:].mean())
        previous = width.iloc[-20:-5]
        baseline = float(previous.mean()) if not previous.empty else recent
        squeeze = recent < baseline * _SQUEEZE_RATIO

    return BollingerValues(
        upper=last_upper,
        middle=float(middle.iloc[-1]),
        lower=last_lower,
        position=float(position),
        squeeze=squeeze,
    )


def _atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    close = df["close"].astype(float)
    prev_close = close.shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    tr = tr_components.max(axis=1)
    return tr.rolling(window=period, min_periods=period).mean()


def _volume_ratio(volume: pd.Series, recent: int = 5, base: int = 20) -> float | None:
    if len(volume) < base:
        return None
    avg_base = float(volume.iloc[-base:].mean())
    if avg_base <= 0:
        return 1.0
    return float(volume.iloc[-recent:].mean()) / avg_base
