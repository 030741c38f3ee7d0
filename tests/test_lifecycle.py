from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import pytest

from futures_trading.config import Settings
from futures_trading.engine.events import EngineEvent, EventBus
from futures_trading.engine.lifecycle import FuturesEngine, StopMode
from futures_trading.exec.gateway import ExecutionFailedError, InsufficientDataError
from futures_trading.journal.state import StateFile
from futures_trading.risk.governor import RiskGovernor
from futures_trading.types import (
    BollingerValues,
    CloseReason,
    Direction,
    EMAValues,
    Fill,
    HeldPosition,
    IndicatorSnapshot,
    MACDValues,
)


def _bullish(price: float = 100.0) -> IndicatorSnapshot:
    return IndicatorSnapshot(
        symbol="",
        timeframe="",
        price=price,
        rsi=22.0,
        macd=MACDValues(line=1.0, signal=0.5, histogram=0.5),
        macd_prev=MACDValues(line=-1.0, signal=0.0, histogram=-1.0),
        bollinger=BollingerValues(upper=110.0, middle=100.0, lower=90.0, position=0.05, squeeze=False),
        ema=EMAValues(ema9=3.0, ema21=2.0, ema50=1.0),
        atr=1.0,
        atr_pct=1.0,
        volume_ratio=1.6,
    )


def _bearish(price: float = 100.0) -> IndicatorSnapshot:
    return IndicatorSnapshot(
        symbol="",
        timeframe="",
        price=price,
        rsi=80.0,
        macd=MACDValues(line=-1.0, signal=-0.5, histogram=-0.5),
        macd_prev=MACDValues(line=1.0, signal=0.0, histogram=1.0),
        bollinger=BollingerValues(upper=110.0, middle=100.0, lower=90.0, position=0.95, squeeze=False),
        ema=EMAValues(ema9=1.0, ema21=2.0, ema50=3.0),
        atr=1.0,
        atr_pct=1.0,
        volume_ratio=1.6,
    )


class _FakeGateway:
    def __init__(self, snapshots: dict[str, IndicatorSnapshot]) -> None:
        self.snapshots = snapshots
        self.prices = {symbol: snap.price for symbol, snap in snapshots.items()}
        self.held: dict[str, HeldPosition] = {}
        self.opens: list[tuple[str, Direction, float, int]] = []
        self.reduces: list[tuple[str, float]] = []
        self.fail_open = False
        self.fail_reduce = False
        self.fail_balance = False
        self.price_delay = 0.0
        # Orders fill on the exchange first; only the response is slow.
        self.open_delay = 0.0
        self.reduce_delay = 0.0
        self.equity = 100.0

    def fetch_indicator_snapshot(self, symbol: str, timeframe: str) -> IndicatorSnapshot:
        snapshot = self.snapshots.get(symbol)
        if snapshot is None:
            raise InsufficientDataError(symbol)
        return replace(snapshot, symbol=symbol, timeframe=timeframe)

    def current_price(self, symbol: str) -> float:
        if self.price_delay:
            time.sleep(self.price_delay)
        return self.prices[symbol]

    def held_position(self, symbol: str) -> HeldPosition | None:
        return self.held.get(symbol)

    def open_position(
        self, symbol: str, direction: Direction, quantity: float, leverage: int
    ) -> Fill:
        if self.fail_open:
            time.sleep(self.open_delay)
            raise ExecutionFailedError("rejected")
        if symbol in self.held:
            raise ExecutionFailedError(f"position_already_open: {symbol}")
        self.opens.append((symbol, direction, quantity, leverage))
        self.held[symbol] = HeldPosition(direction, quantity, self.prices[symbol])
        fill = self._fill(symbol, direction.entry_side, quantity)
        time.sleep(self.open_delay)
        return fill

    def reduce_position(self, symbol: str, quantity: float) -> Fill:
        if self.fail_reduce:
            raise ExecutionFailedError("exchange_unreachable")
        held = self.held.get(symbol)
        if held is None:
            raise ExecutionFailedError(f"no_open_position: {symbol}")
        closed = min(quantity, held.quantity)
        self.reduces.append((symbol, closed))
        if held.quantity - closed <= 1e-12:
            del self.held[symbol]
        else:
            self.held[symbol] = replace(held, quantity=held.quantity - closed)
        fill = self._fill(symbol, held.direction.exit_side, closed)
        time.sleep(self.reduce_delay)
        return fill

    def balance(self) -> float:
        if self.fail_balance:
            raise ExecutionFailedError("balance_unavailable")
        return self.equity

    def _fill(self, symbol: str, side: str, quantity: float) -> Fill:
        return Fill(
            symbol=symbol,
            side=side,  # type: ignore[arg-type]
            quantity=quantity,
            price=self.prices[symbol],
            order_id=f"order-{len(self.opens) + len(self.reduces)}",
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class _Harness:
    def __init__(self, engine: FuturesEngine, governor: RiskGovernor, events: list[EngineEvent]):
        self.engine = engine
        self.governor = governor
        self.events = events

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events if e.kind != "scan"]


@pytest.fixture
def make_engine(tmp_path: Path) -> Iterator[Callable[..., _Harness]]:
    engines: list[FuturesEngine] = []

    def _make(gateway: _FakeGateway, **overrides: object) -> _Harness:
        values: dict[str, object] = {"symbols": "BTCUSDT", "gateway_timeout_sec": 5.0}
        values.update(overrides)
        settings = Settings(journal_dir=tmp_path, **values)
        bus = EventBus()
        events: list[EngineEvent] = []
        bus.subscribe(events.append)
        governor = RiskGovernor(
            settings,
            StateFile(tmp_path / "risk_state.json"),
            events=bus,
            clock=lambda: datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc),
        )
        engine = FuturesEngine(
            settings,
            gateway,
            governor,
            StateFile(tmp_path / "positions.json"),
            events=bus,
        )
        engines.append(engine)
        return _Harness(engine, governor, events)

    yield _make
    for engine in engines:
        engine.shutdown()


def test_scan_opens_position_with_sized_stops(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)

    result = h.engine.scan_once()

    assert result.status == "opened"
    position = h.engine.positions["BTCUSDT"]
    assert position.direction is Direction.LONG
    assert position.leverage == 4
    assert position.leverage_mode == "boosted"
    assert position.stop_loss == pytest.approx(98.5)
    assert position.take_profit == pytest.approx(107.0)
    assert position.quantity == pytest.approx(2.0)
    assert position.margin == pytest.approx(50.0)
    assert h.kinds() == ["position_opened"]


def test_held_symbol_is_not_rescanned(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()
    result = h.engine.scan_once()
    assert result.status == "no_signal"
    assert len(gateway.opens) == 1


def test_low_score_does_not_trade(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, min_signal_score=10)
    gateway.snapshots["BTCUSDT"] = replace(_bullish(), volume_ratio=1.0)
    result = h.engine.scan_once()
    assert result.status == "no_signal"
    assert gateway.opens == []


def test_open_positions_cap_holds_under_concurrent_scans(
    make_engine: Callable[..., _Harness],
) -> None:
    gateway = _FakeGateway(
        {"BTCUSDT": _bullish(), "ETHUSDT": _bullish(), "SOLUSDT": _bullish()}
    )
    h = make_engine(gateway, symbols="BTCUSDT,ETHUSDT,SOLUSDT", max_open_positions=2)

    with ThreadPoolExecutor(max_workers=4) as pool:
        for future in [pool.submit(h.engine.scan_once) for _ in range(4)]:
            future.result()

    assert len(h.engine.positions) == 2
    assert len(gateway.opens) == 2
    assert len({symbol for symbol, *_ in gateway.opens}) == 2


def test_scan_respects_cap_and_reports_denial(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway(
        {"BTCUSDT": _bullish(), "ETHUSDT": _bullish(), "SOLUSDT": _bullish()}
    )
    h = make_engine(gateway, symbols="BTCUSDT,ETHUSDT,SOLUSDT", max_open_positions=2)

    h.engine.scan_once()

    assert sorted(h.engine.positions) == ["BTCUSDT", "ETHUSDT"]
    denied = [e for e in h.events if e.kind == "admission_denied"]
    assert denied[0].symbol == "SOLUSDT"
    assert "max_open_positions" in denied[0].payload["reasons"]


def test_locked_breaker_skips_scan(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.governor.trip_breaker("operator")
    assert h.engine.scan_once().status == "locked"
    assert gateway.opens == []


def test_failed_open_releases_reservation(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    gateway.fail_open = True

    result = h.engine.scan_once()
    assert result.status == "no_admission"
    assert "open_failed:BTCUSDT" in result.warnings
    assert h.engine.positions == {}

    gateway.fail_open = False
    assert h.engine.scan_once().status == "opened"


def test_scan_without_balance_does_not_trade(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    gateway.fail_balance = True
    assert h.engine.scan_once().status == "balance_unavailable"
    assert gateway.opens == []


def test_stop_loss_closes_and_records_outcome(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 98.0
    h.engine.monitor_once()

    assert h.engine.positions == {}
    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.STOP_LOSS.value
    assert closed.payload["pnl"] == pytest.approx(-4.0)
    assert h.governor.snapshot().daily_pnl == pytest.approx(-4.0)


def test_take_profit_closes(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 107.5
    h.engine.monitor_once()

    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.TAKE_PROFIT.value
    assert closed.payload["pnl"] == pytest.approx(15.0)


def test_partial_close_runs_once_and_moves_stop_to_breakeven(
    make_engine: Callable[..., _Harness],
) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 101.2
    h.engine.monitor_once()
    position = h.engine.positions["BTCUSDT"]
    assert position.partial_closed
    assert position.quantity == pytest.approx(1.0)
    assert position.stop_loss == pytest.approx(100.0)
    assert position.realized_pnl == pytest.approx(1.2)

    gateway.prices["BTCUSDT"] = 101.5
    h.engine.monitor_once()
    assert len(gateway.reduces) == 1

    gateway.prices["BTCUSDT"] = 99.9
    h.engine.monitor_once()
    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.STOP_LOSS.value
    assert closed.payload["pnl"] == pytest.approx(1.1)
    assert h.kinds().count("partial_close") == 1


def test_trailing_stop_only_tightens_and_fires(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, partial_close_pct=100.0)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 101.0
    h.engine.monitor_once()
    position = h.engine.positions["BTCUSDT"]
    assert position.trailing_active
    assert position.trailing_stop_price == pytest.approx(101.0 * 0.985)

    gateway.prices["BTCUSDT"] = 102.0
    h.engine.monitor_once()
    peak_trail = h.engine.positions["BTCUSDT"].trailing_stop_price
    assert peak_trail == pytest.approx(102.0 * 0.985)

    gateway.prices["BTCUSDT"] = 101.0
    h.engine.monitor_once()
    assert h.engine.positions["BTCUSDT"].trailing_stop_price == pytest.approx(peak_trail)

    gateway.prices["BTCUSDT"] = 100.4
    h.engine.monitor_once()
    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.TRAILING_STOP.value
    assert h.kinds().count("trailing_activated") == 1


def test_failed_close_keeps_position_and_retries(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 98.0
    gateway.fail_reduce = True
    result = h.engine.monitor_once()
    assert result.decisions == [{"symbol": "BTCUSDT", "outcome": "close_pending"}]
    position = h.engine.positions["BTCUSDT"]
    assert position.closing
    assert position.close_reason is CloseReason.STOP_LOSS
    assert "close_failed" in h.kinds()

    gateway.fail_reduce = False
    gateway.prices["BTCUSDT"] = 100.5
    h.engine.monitor_once()
    assert h.engine.positions == {}
    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.STOP_LOSS.value


def test_slow_price_times_out(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, gateway_timeout_sec=0.05)
    h.engine.scan_once()

    gateway.price_delay = 0.5
    result = h.engine.monitor_once()
    assert result.decisions == [{"symbol": "BTCUSDT", "outcome": "price_unavailable"}]
    assert "BTCUSDT" in h.engine.positions


def test_analyze_is_read_only(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)

    first = h.engine.analyze("btcusdt")
    second = h.engine.analyze("BTCUSDT")

    assert first == second
    assert first.would_trade
    assert first.signal.score == 10
    assert first.leverage is not None and first.leverage.mode == "boosted"
    assert first.stop_target is not None
    assert first.sizing is not None and first.sizing.quantity == pytest.approx(2.0)
    assert gateway.opens == []
    assert h.engine.positions == {}
    assert h.governor.snapshot().daily_trade_count == 0
    assert h.events == []


def test_analyze_reports_missing_data(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({})
    h = make_engine(gateway)
    result = h.engine.analyze("BTCUSDT")
    assert not result.would_trade
    assert result.error == "base_timeframe_unavailable"
    assert result.signal.reason == "direction_undetermined"


def test_close_all(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish(), "ETHUSDT": _bullish()})
    h = make_engine(gateway, symbols="BTCUSDT,ETHUSDT")
    h.engine.scan_once()
    assert len(h.engine.positions) == 2

    result = h.engine.close_all()

    assert result.status == "closed"
    assert h.engine.positions == {}
    reasons = {e.payload["reason"] for e in h.events if e.kind == "position_closed"}
    assert reasons == {CloseReason.MANUAL_CLOSE.value}


def test_positions_resume_after_restart(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    first = make_engine(gateway)
    first.engine.scan_once()
    first.engine.shutdown()

    second = make_engine(gateway)
    restored = second.engine.positions["BTCUSDT"]
    assert restored.direction is Direction.LONG
    assert restored.stop_loss == pytest.approx(98.5)

    gateway.prices["BTCUSDT"] = 98.0
    second.engine.monitor_once()
    assert second.engine.positions == {}


def test_status_reports_stale_balance(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    fresh = h.engine.get_status()
    assert fresh.balance == pytest.approx(100.0)
    assert not fresh.balance_stale
    assert list(fresh.positions) == ["BTCUSDT"]

    gateway.fail_balance = True
    stale = h.engine.get_status()
    assert stale.balance == pytest.approx(100.0)
    assert stale.balance_stale


def test_start_and_stop_are_idempotent(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({})
    h = make_engine(gateway, scan_interval_sec=3600, monitor_interval_sec=3600)

    h.engine.start()
    h.engine.start()
    assert h.engine.running
    assert h.kinds().count("engine_started") == 1

    h.engine.stop(StopMode.HALT)
    h.engine.stop(StopMode.HALT)
    assert not h.engine.running
    assert h.kinds().count("engine_stopped") == 1
    assert h.engine.scan_once().status == "halted"


def test_stop_with_close_all(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, scan_interval_sec=3600, monitor_interval_sec=3600)
    h.engine.scan_once()

    h.engine.stop(StopMode.CLOSE_ALL)
    assert h.engine.positions == {}


def test_symbol_failure_does_not_block_others(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish(), "ETHUSDT": _bullish()})
    h = make_engine(gateway, symbols="BTCUSDT,ETHUSDT")
    h.engine.scan_once()

    del gateway.prices["BTCUSDT"]
    gateway.prices["ETHUSDT"] = 98.0
    result = h.engine.monitor_once()

    assert "monitor_failed:BTCUSDT" in result.warnings
    assert "ETHUSDT" not in h.engine.positions
    assert "BTCUSDT" in h.engine.positions


def test_concurrent_monitors_close_once(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()
    gateway.prices["BTCUSDT"] = 98.0

    threads = [threading.Thread(target=h.engine.monitor_once) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(gateway.reduces) == 1
    assert h.kinds().count("position_closed") == 1


def _wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def test_symbol_failure_publishes_error_event(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    del gateway.prices["BTCUSDT"]
    h.engine.monitor_once()

    errors = [e for e in h.events if e.kind == "error"]
    assert [e.symbol for e in errors] == ["BTCUSDT"]
    assert errors[0].payload["error_type"] == "KeyError"


def test_short_opens_below_entry_with_stop_above(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bearish()})
    h = make_engine(gateway)

    assert h.engine.scan_once().status == "opened"

    position = h.engine.positions["BTCUSDT"]
    assert position.direction is Direction.SHORT
    assert position.leverage == 4
    assert position.stop_loss == pytest.approx(101.5)
    assert position.take_profit == pytest.approx(93.0)
    assert position.quantity == pytest.approx(2.0)
    assert gateway.opens[0][1] is Direction.SHORT


def test_short_stop_loss_realizes_loss(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bearish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 101.6
    h.engine.monitor_once()

    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.STOP_LOSS.value
    assert closed.payload["pnl"] == pytest.approx(-3.2)
    assert closed.payload["pnl_pct"] < 0
    assert h.governor.snapshot().daily_pnl == pytest.approx(-3.2)


def test_short_take_profit_realizes_gain(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bearish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 92.5
    h.engine.monitor_once()

    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.TAKE_PROFIT.value
    assert closed.payload["pnl"] == pytest.approx(15.0)
    assert closed.payload["pnl_pct"] > 0


def test_short_partial_close_lowers_stop_to_breakeven(
    make_engine: Callable[..., _Harness],
) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bearish()})
    h = make_engine(gateway)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 98.8
    h.engine.monitor_once()

    position = h.engine.positions["BTCUSDT"]
    assert position.partial_closed
    assert position.quantity == pytest.approx(1.0)
    assert position.stop_loss == pytest.approx(100.0)
    assert position.realized_pnl == pytest.approx(1.2)


def test_short_trailing_stop_ratchets_down_and_fires(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bearish()})
    h = make_engine(gateway, partial_close_pct=100.0)
    h.engine.scan_once()

    gateway.prices["BTCUSDT"] = 99.0
    h.engine.monitor_once()
    position = h.engine.positions["BTCUSDT"]
    assert position.trailing_active
    assert position.trailing_stop_price == pytest.approx(99.0 * 1.015)

    gateway.prices["BTCUSDT"] = 98.0
    h.engine.monitor_once()
    low_trail = h.engine.positions["BTCUSDT"].trailing_stop_price
    assert low_trail == pytest.approx(98.0 * 1.015)

    gateway.prices["BTCUSDT"] = 99.0
    h.engine.monitor_once()
    assert h.engine.positions["BTCUSDT"].trailing_stop_price == pytest.approx(low_trail)

    gateway.prices["BTCUSDT"] = 99.6
    h.engine.monitor_once()
    closed = [e for e in h.events if e.kind == "position_closed"][0]
    assert closed.payload["reason"] == CloseReason.TRAILING_STOP.value
    assert closed.payload["pnl"] == pytest.approx(0.8)
    assert h.kinds().count("trailing_activated") == 1


def test_close_filled_after_timeout_is_reconciled(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, gateway_timeout_sec=0.1)
    h.engine.scan_once()

    gateway.reduce_delay = 0.3
    gateway.prices["BTCUSDT"] = 98.0
    first = h.engine.monitor_once()
    assert first.decisions == [{"symbol": "BTCUSDT", "outcome": "close_pending"}]
    assert h.engine.positions["BTCUSDT"].unconfirmed_reduce
    assert "BTCUSDT" not in gateway.held

    for _ in range(5):
        h.engine.monitor_once()

    assert h.engine.positions == {}
    assert len(gateway.reduces) == 1
    closed = [e for e in h.events if e.kind == "position_closed"]
    assert len(closed) == 1
    assert closed[0].payload["reason"] == CloseReason.STOP_LOSS.value
    assert closed[0].payload["reconciled"] is True
    assert closed[0].payload["pnl"] == pytest.approx(-4.0)
    assert h.governor.snapshot().daily_pnl == pytest.approx(-4.0)
    assert h.governor.snapshot().daily_trade_count == 1


def test_close_rejected_for_flat_exchange_position_completes(
    make_engine: Callable[..., _Harness],
) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway)
    h.engine.scan_once()
    del gateway.held["BTCUSDT"]

    gateway.prices["BTCUSDT"] = 98.0
    assert h.engine.monitor_once().decisions[0]["outcome"] == "close_pending"
    assert h.engine.monitor_once().decisions[0]["outcome"] == "closed"

    assert h.engine.positions == {}
    assert h.kinds().count("position_closed") == 1


def test_partial_close_filled_after_timeout_is_reconciled(
    make_engine: Callable[..., _Harness],
) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, gateway_timeout_sec=0.1)
    h.engine.scan_once()

    gateway.reduce_delay = 0.3
    gateway.prices["BTCUSDT"] = 101.2
    h.engine.monitor_once()
    position = h.engine.positions["BTCUSDT"]
    assert position.unconfirmed_reduce
    assert not position.partial_closed

    gateway.reduce_delay = 0.0
    h.engine.monitor_once()
    position = h.engine.positions["BTCUSDT"]
    assert not position.unconfirmed_reduce
    assert position.partial_closed
    assert position.quantity == pytest.approx(1.0)
    assert position.stop_loss == pytest.approx(100.0)
    assert position.realized_pnl == pytest.approx(1.2)
    assert len(gateway.reduces) == 1


def test_open_filled_after_timeout_is_adopted(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, gateway_timeout_sec=0.1)
    gateway.open_delay = 0.3

    first = h.engine.scan_once()
    assert "open_failed:BTCUSDT" in first.warnings
    assert h.engine.positions == {}
    failed = [e for e in h.events if e.kind == "open_failed"][0]
    assert failed.payload["pending"] is True

    h.engine.scan_once()
    assert len(gateway.opens) == 1

    def adopted() -> bool:
        h.engine.monitor_once()
        return "BTCUSDT" in h.engine.positions

    assert _wait_for(adopted)
    position = h.engine.positions["BTCUSDT"]
    assert position.quantity == pytest.approx(2.0)
    assert position.stop_loss == pytest.approx(98.5)
    opened = [e for e in h.events if e.kind == "position_opened"][0]
    assert opened.payload["adopted"] is True

    h.engine.scan_once()
    assert len(gateway.opens) == 1

    gateway.prices["BTCUSDT"] = 98.0
    h.engine.monitor_once()
    assert h.engine.positions == {}
    assert "BTCUSDT" not in gateway.held


def test_open_that_never_filled_releases_slot(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({"BTCUSDT": _bullish()})
    h = make_engine(gateway, gateway_timeout_sec=0.1)
    gateway.fail_open = True
    gateway.open_delay = 0.3

    h.engine.scan_once()
    assert h.engine.scan_once().status == "no_signal"

    gateway.fail_open = False
    gateway.open_delay = 0.0
    assert _wait_for(lambda: h.engine.scan_once().status == "opened")
    assert len(gateway.opens) == 1
    assert h.engine.positions["BTCUSDT"].quantity == pytest.approx(2.0)


def test_engine_restarts_while_scan_in_flight(make_engine: Callable[..., _Harness]) -> None:
    gateway = _FakeGateway({})
    h = make_engine(gateway, scan_interval_sec=0.05, monitor_interval_sec=3600)
    scans: list[float] = []
    in_scan = threading.Event()
    original = h.engine.scan_once

    def slow_scan() -> object:
        in_scan.set()
        scans.append(time.monotonic())
        time.sleep(0.3)
        return original()

    h.engine._scan_task._func = slow_scan
    h.engine.start()
    assert in_scan.wait(1.0)

    h.engine.stop()
    h.engine.start()

    assert _wait_for(lambda: len(scans) >= 3, timeout=2.0)
    assert h.engine.running
