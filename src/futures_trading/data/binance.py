"""Binance USDT-M futures gateway: market data and order execution."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any

import pandas as pd  # type: ignore[import-untyped]
import requests
from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from futures_trading.config import Settings
from futures_trading.exec.gateway import (
    ExecutionFailedError,
    GatewayError,
    InsufficientDataError,
    PriceUnavailableError,
)
from futures_trading.features.indicators import compute_snapshot
from futures_trading.types import Direction, Fill, HeldPosition, IndicatorSnapshot
from futures_trading.utils.logging import get_logger, log_order_execution

_KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_asset_volume",
    "taker_buy_quote_asset_volume",
    "ignore",
]

# "No need to change margin type."
_MARGIN_TYPE_UNCHANGED = -4046

_TRANSIENT = (BinanceRequestException, requests.RequestException)


@contextmanager
def _translate_errors(action: str, error_cls: type[GatewayError]) -> Iterator[None]:
    try:
        yield
    except BinanceAPIException as exc:
        raise error_cls(f"{action}: code={exc.code} {exc.message}") from exc
    except _TRANSIENT as exc:
        raise error_cls(f"{action}: {exc}") from exc


class BinanceGateway:
    """Isolated-margin futures gateway. Read-only calls are retried; orders are not."""

    _INTERVAL_MAP = {
        "5m": Client.KLINE_INTERVAL_5MINUTE,
        "15m": Client.KLINE_INTERVAL_15MINUTE,
        "30m": Client.KLINE_INTERVAL_30MINUTE,
        "1h": Client.KLINE_INTERVAL_1HOUR,
        "2h": Client.KLINE_INTERVAL_2HOUR,
        "4h": Client.KLINE_INTERVAL_4HOUR,
        "1d": Client.KLINE_INTERVAL_1DAY,
    }

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("futures_trading.data.binance")
        self._client_lock = threading.Lock()
        self._client = client
        self._lot_sizes: dict[str, tuple[Decimal, Decimal]] = {}
        self._configured: dict[str, int] = {}
        self._bars = {
            settings.fast_timeframe: settings.fast_bars,
            settings.base_timeframe: settings.base_bars,
            settings.slow_timeframe: settings.slow_bars,
        }

    @property
    def client(self) -> Client:
        """Created on first use; the constructor of ``Client`` pings the exchange."""
        with self._client_lock:
            if self._client is None:
                self._client = Client(
                    api_key=self._settings.binance_api_key or None,
                    api_secret=self._settings.binance_api_secret or None,
                    testnet=self._settings.binance_testnet,
                    requests_params={"timeout": self._settings.gateway_timeout_sec},
                )
            return self._client

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        """Fetch futures klines and return normalized dataframe."""
        resolved_interval = self._INTERVAL_MAP.get(interval.lower())
        if resolved_interval is None:
            raise ValueError(f"unsupported_interval: {interval}")

        with _translate_errors(f"klines {symbol} {interval}", InsufficientDataError):
            rows = self._klines(symbol, resolved_interval, limit)
        df = pd.DataFrame(rows, columns=_KLINE_COLUMNS)
        if df.empty:
            raise InsufficientDataError(f"empty_ohlcv_response: {symbol} {interval}")

        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df = df.dropna(subset=numeric_cols).reset_index(drop=True)
        return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

    def fetch_indicator_snapshot(self, symbol: str, timeframe: str) -> IndicatorSnapshot:
        limit = self._bars.get(timeframe, self._settings.base_bars)
        df = self.fetch_ohlcv(symbol, timeframe, limit)
        return compute_snapshot(symbol, timeframe, df)

    def current_price(self, symbol: str) -> float:
        with _translate_errors(f"ticker {symbol}", PriceUnavailableError):
            payload = self._ticker(symbol)
        value = payload.get("price")
        if value is None or float(value) <= 0:
            raise PriceUnavailableError(f"no_price: {symbol}")
        return float(value)

    def balance(self) -> float:
        """Available USDT balance of the futures wallet."""
        with _translate_errors("account_balance", GatewayError):
            rows = self._account_balance()
        for row in rows:
            if row.get("asset") == "USDT":
                return float(row.get("availableBalance", row.get("balance", 0.0)))
        raise GatewayError("usdt_balance_missing")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def open_position(
        self,
        symbol: str,
        direction: Direction,
        quantity: float,
        leverage: int,
    ) -> Fill:
        if self.held_position(symbol) is not None:
            raise ExecutionFailedError(f"position_already_open: {symbol}")
        self._configure_symbol(symbol, leverage)
        qty = self._normalize_qty(symbol, quantity)
        return self._market_order(symbol, direction.entry_side, qty, reduce_only=False)

    def reduce_position(self, symbol: str, quantity: float) -> Fill:
        """Offset up to ``quantity`` of the open position with a reduce-only order."""
        held = self.held_position(symbol)
        if held is None:
            raise ExecutionFailedError(f"no_open_position: {symbol}")

        qty = self._normalize_qty(symbol, min(quantity, held.quantity))
        side = held.direction.exit_side
        return self._market_order(symbol, side, qty, reduce_only=True)

    def held_position(self, symbol: str) -> HeldPosition | None:
        """Net one-way position from ``positionAmt``; ``None`` when flat."""
        with _translate_errors(f"position_information {symbol}", ExecutionFailedError):
            rows = self._position_information(symbol)
        amount = 0.0
        notional_entry = 0.0
        for row in rows:
            row_amount = float(row.get("positionAmt", 0.0))
            amount += row_amount
            notional_entry += abs(row_amount) * float(row.get("entryPrice", 0.0))
        if amount == 0:
            return None
        return HeldPosition(
            direction=Direction.LONG if amount > 0 else Direction.SHORT,
            quantity=abs(amount),
            entry_price=notional_entry / abs(amount),
        )

    def _market_order(self, symbol: str, side: str, qty: str, *, reduce_only: bool) -> Fill:
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": Client.FUTURE_ORDER_TYPE_MARKET,
            "quantity": qty,
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"

        with _translate_errors(f"order {symbol} {side}", ExecutionFailedError):
            response = self.client.futures_create_order(**params)

        executed = float(response.get("executedQty", 0.0))
        avg_price = float(response.get("avgPrice", 0.0))
        if response.get("status") != "FILLED" or executed <= 0 or avg_price <= 0:
            log_order_execution(
                self._logger,
                symbol=symbol,
                side=side,
                quantity=float(qty),
                order_id=str(response.get("orderId")),
                status="failed",
                exchange_status=response.get("status"),
            )
            raise ExecutionFailedError(
                f"order_not_filled: {symbol} status={response.get('status')}"
            )

        update_time = response.get("updateTime")
        timestamp = (
            datetime.fromtimestamp(update_time / 1000, tz=timezone.utc)
            if update_time
            else datetime.now(timezone.utc)
        )
        return Fill(
            symbol=symbol,
            side="BUY" if side == "BUY" else "SELL",
            quantity=executed,
            price=avg_price,
            order_id=str(response.get("orderId")),
            timestamp=timestamp.isoformat(),
        )

    def _configure_symbol(self, symbol: str, leverage: int) -> None:
        if self._configured.get(symbol) == leverage:
            return
        try:
            self.client.futures_change_margin_type(symbol=symbol, marginType="ISOLATED")
        except BinanceAPIException as exc:
            if exc.code != _MARGIN_TYPE_UNCHANGED:
                raise ExecutionFailedError(
                    f"margin_type {symbol}: code={exc.code} {exc.message}"
                ) from exc
        except _TRANSIENT as exc:
            raise ExecutionFailedError(f"margin_type {symbol}: {exc}") from exc

        with _translate_errors(f"leverage {symbol}", ExecutionFailedError):
            self.client.futures_change_leverage(symbol=symbol, leverage=leverage)
        self._configured[symbol] = leverage
        self._logger.info("symbol_configured", symbol=symbol, leverage=leverage, margin="ISOLATED")

    def _normalize_qty(self, symbol: str, quantity: float) -> str:
        step, min_qty = self._lot_size(symbol)
        qty = (Decimal(str(quantity)) / step).to_integral_value(rounding=ROUND_DOWN) * step
        if qty < min_qty or qty <= 0:
            raise ExecutionFailedError(f"qty_below_min: {symbol} qty={quantity} min={min_qty}")
        text = format(step, "f")
        decimals = len(text.split(".")[1].rstrip("0")) if "." in text else 0
        return f"{qty:.{decimals}f}"

    def _lot_size(self, symbol: str) -> tuple[Decimal, Decimal]:
        cached = self._lot_sizes.get(symbol)
        if cached is not None:
            return cached
        with _translate_errors("exchange_info", ExecutionFailedError):
            info = self._exchange_info()
        for entry in info.get("symbols", []):
            if entry.get("symbol") != symbol:
                continue
            for rule in entry.get("filters", []):
                if rule.get("filterType") == "LOT_SIZE":
                    lot = (Decimal(rule["stepSize"]), Decimal(rule["minQty"]))
                    self._lot_sizes[symbol] = lot
                    return lot
        raise ExecutionFailedError(f"lot_size_unknown: {symbol}")

    # ------------------------------------------------------------------
    # Retried read-only calls
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _klines(self, symbol: str, interval: str, limit: int) -> list[list[Any]]:
        return self.client.futures_klines(symbol=symbol, interval=interval, limit=limit)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _ticker(self, symbol: str) -> dict[str, Any]:
        return self.client.futures_symbol_ticker(symbol=symbol)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _account_balance(self) -> list[dict[str, Any]]:
        return self.client.futures_account_balance()

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _exchange_info(self) -> dict[str, Any]:
        return self.client.futures_exchange_info()

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _position_information(self, symbol: str) -> list[dict[str, Any]]:
        return self.client.futures_position_information(symbol=symbol)
