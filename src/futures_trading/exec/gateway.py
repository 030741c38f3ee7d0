"""Execution gateway contract and its error taxonomy."""

from __future__ import annotations

from typing import Protocol

from futures_trading.types import Direction, Fill, HeldPosition, IndicatorSnapshot


class GatewayError(Exception):
    """Base gateway error."""


class InsufficientDataError(GatewayError):
    """Raised when a timeframe is missing or has too few bars."""


class PriceUnavailableError(GatewayError):
    """Raised when no current price can be obtained."""


class ExecutionFailedError(GatewayError):
    """Raised when an order is rejected or cannot be confirmed."""


class GatewayTimeoutError(GatewayError):
    """Raised when a gateway call exceeds its time budget."""


class ExecutionGateway(Protocol):
    """Market data and order execution consumed by the engine."""

    def fetch_indicator_snapshot(self, symbol: str, timeframe: str) -> IndicatorSnapshot: ...

    def current_price(self, symbol: str) -> float: ...

    def open_position(
        self,
        symbol: str,
        direction: Direction,
        quantity: float,
        leverage: int,
    ) -> Fill: ...

    def reduce_position(self, symbol: str, quantity: float) -> Fill: ...

    def held_position(self, symbol: str) -> HeldPosition | None:
        """What the exchange currently holds for ``symbol``, or ``None`` if flat."""
        ...

    def balance(self) -> float: ...


class MarketDataSource(Protocol):
    """Read-only half of the gateway, used by the paper executor."""

    def fetch_indicator_snapshot(self, symbol: str, timeframe: str) -> IndicatorSnapshot: ...

    def current_price(self, symbol: str) -> float: ...
