"""Paper trading gateway with persistent local state."""

from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from futures_trading.exec.gateway import ExecutionFailedError, MarketDataSource
from futures_trading.journal.state import StateFile
from futures_trading.types import Direction, Fill, HeldPosition, IndicatorSnapshot
from futures_trading.utils.logging import get_logger


@dataclass(slots=True)
class _PaperHolding:
    direction: Direction
    quantity: float
    entry_price: float
    leverage: int


@dataclass(slots=True)
class _PaperState:
    equity: float
    initial_equity: float
    holdings: dict[str, _PaperHolding] = field(default_factory=dict)


class PaperGateway:
    """Simulated execution against live market data.

    Market orders fill at the current price with adverse slippage. Realized
    P&L is folded into equity, which is what ``balance()`` reports.
    """

    def __init__(
        self,
        market: MarketDataSource,
        journal_dir: Path,
        *,
        slippage_bps: float = 2.0,
        initial_equity: float = 100.0,
    ) -> None:
        self._market = market
        self._slippage_bps = slippage_bps
        self._state_file = StateFile(journal_dir / "paper_state.json")
        self._lock = threading.Lock()
        self._logger = get_logger("futures_trading.exec.paper")
        self._state = self._load_state(initial_equity)

    @property
    def equity(self) -> float:
        return self._state.equity

    def holding(self, symbol: str) -> dict[str, Any] | None:
        with self._lock:
            held = self._state.holdings.get(symbol)
            return asdict(held) if held else None

    def fetch_indicator_snapshot(self, symbol: str, timeframe: str) -> IndicatorSnapshot:
        return self._market.fetch_indicator_snapshot(symbol, timeframe)

    def current_price(self, symbol: str) -> float:
        return self._market.current_price(symbol)

    def balance(self) -> float:
        return self._state.equity

    def held_position(self, symbol: str) -> HeldPosition | None:
        with self._lock:
            held = self._state.holdings.get(symbol)
            if held is None:
                return None
            return HeldPosition(
                direction=held.direction, quantity=held.quantity, entry_price=held.entry_price
            )

    def open_position(
        self,
        symbol: str,
        direction: Direction,
        quantity: float,
        leverage: int,
    ) -> Fill:
        """Open a position with configured slippage."""
        if quantity <= 0:
            raise ExecutionFailedError("qty_must_be_positive")
        price = self._market.current_price(symbol)
        fill_price = price * (1.0 + direction.sign * self._slippage_bps / 10_000.0)

        with self._lock:
            if symbol in self._state.holdings:
                raise ExecutionFailedError(f"position_already_open: {symbol}")
            self._state.holdings[symbol] = _PaperHolding(
                direction=direction,
                quantity=float(quantity),
                entry_price=float(fill_price),
                leverage=leverage,
            )
            self._persist()

        return self._fill(symbol, direction.entry_side, quantity, fill_price)

    def reduce_position(self, symbol: str, quantity: float) -> Fill:
        """Close up to ``quantity`` of the held position and realize P&L."""
        if quantity <= 0:
            raise ExecutionFailedError("qty_must_be_positive")
        with self._lock:
            held = self._state.holdings.get(symbol)
        if held is None:
            raise ExecutionFailedError(f"no_open_position: {symbol}")

        price = self._market.current_price(symbol)
        fill_price = price * (1.0 - held.direction.sign * self._slippage_bps / 10_000.0)

        with self._lock:
            closed = min(float(quantity), held.quantity)
            pnl = held.direction.sign * (fill_price - held.entry_price) * closed
            self._state.equity += pnl
            held.quantity -= closed
            if held.quantity <= 1e-12:
                del self._state.holdings[symbol]
            self._persist()

        self._logger.info(
            "paper_reduce",
            symbol=symbol,
            quantity=closed,
            price=fill_price,
            realized_pnl=round(pnl, 6),
            equity=round(self._state.equity, 6),
        )
        return self._fill(symbol, held.direction.exit_side, closed, fill_price)

    def _fill(self, symbol: str, side: Any, quantity: float, price: float) -> Fill:
        return Fill(
            symbol=symbol,
            side=side,
            quantity=float(quantity),
            price=float(price),
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def _load_state(self, initial_equity: float) -> _PaperState:
        raw = self._state_file.load()
        if raw is None:
            return _PaperState(equity=initial_equity, initial_equity=initial_equity)

        holdings = {
            symbol: _PaperHolding(
                direction=Direction(payload["direction"]),
                quantity=float(payload["quantity"]),
                entry_price=float(payload["entry_price"]),
                leverage=int(payload.get("leverage", 1)),
            )
            for symbol, payload in (raw.get("holdings") or {}).items()
        }
        return _PaperState(
            equity=float(raw.get("equity", initial_equity)),
            initial_equity=float(raw.get("initial_equity", initial_equity)),
            holdings=holdings,
        )

    def _persist(self) -> None:
        self._state_file.save(
            {
                "equity": self._state.equity,
                "initial_equity": self._state.initial_equity,
                "holdings": {
                    symbol: asdict(held) for symbol, held in self._state.holdings.items()
                },
            }
        )
