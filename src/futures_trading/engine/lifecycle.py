"""Position lifecycle manager: scan, admit, open, monitor, adjust and close."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from time import perf_counter
from typing import Any, TypeVar

from futures_trading.config import Settings
from futures_trading.engine.events import EngineEvent, EventBus
from futures_trading.engine.scheduler import PeriodicTask
from futures_trading.exec.gateway import ExecutionGateway, GatewayError, GatewayTimeoutError
from futures_trading.journal.state import StateFile
from futures_trading.risk.governor import RiskGovernor
from futures_trading.risk.sizing import build_stop_target, compute_position_size, determine_leverage
from futures_trading.strategy.scoring import classify_bias, score_signal
from futures_trading.types import (
    AdmissionContext,
    AdmissionResult,
    AnalysisResult,
    CloseReason,
    CycleResult,
    Direction,
    EngineStatus,
    Fill,
    HeldPosition,
    IndicatorSnapshot,
    LeverageDecision,
    Position,
    PositionSizing,
    SignalScore,
    StopTarget,
)
from futures_trading.utils.logging import get_logger, log_order_execution, log_trade_signal

T = TypeVar("T")

# Fill quantities within this relative tolerance count as a complete close.
_QTY_TOLERANCE = 1e-9


class StopMode(str, Enum):
    """What happens to open positions when the engine is stopped."""

    KEEP_MONITORING = "keep_monitoring"
    CLOSE_ALL = "close_all"
    HALT = "halt"


@dataclass(frozen=True, slots=True)
class SymbolEvaluation:
    symbol: str
    signal: SignalScore
    base: IndicatorSnapshot | None
    biases: dict[str, str]


@dataclass(frozen=True, slots=True)
class TradePlan:
    symbol: str
    direction: Direction
    score: int
    entry_price: float
    leverage: LeverageDecision
    stop_target: StopTarget
    sizing: PositionSizing


def build_trade_plan(
    evaluation: SymbolEvaluation, balance: float, settings: Settings
) -> TradePlan | None:
    """Turn a scored symbol into leverage, stop/target and size. Pure."""
    signal, base = evaluation.signal, evaluation.base
    if signal.direction is None or base is None:
        return None
    leverage = determine_leverage(signal.score, base.atr_pct, settings)
    stop_target = build_stop_target(signal.direction, base.price, base.atr, base.bollinger, settings)
    sizing = compute_position_size(
        balance, base.price, stop_target.stop_loss, leverage.leverage, settings
    )
    if sizing is None:
        return None
    return TradePlan(
        symbol=evaluation.symbol,
        direction=signal.direction,
        score=signal.score,
        entry_price=base.price,
        leverage=leverage,
        stop_target=stop_target,
        sizing=sizing,
    )


@dataclass(slots=True)
class _PendingOpen:
    """An open order whose fill was not confirmed within the gateway timeout."""

    plan: TradePlan
    # None once the order call is known to have returned.
    order: Future[Fill] | None = None


class FuturesEngine:
    """Owns the set of open positions and drives them through their lifecycle.

    Two non-overlapping periodic tasks run the engine: a scan over symbols
    without a position and a faster monitor over every open position. Only
    this class mutates positions; each position is mutated under its own
    symbol lock so one symbol never waits on another.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: ExecutionGateway,
        governor: RiskGovernor,
        positions_file: StateFile,
        *,
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._governor = governor
        self._positions_file = positions_file
        self._events = events or EventBus()
        self._logger = get_logger("futures_trading.engine.lifecycle")

        self._lock = threading.RLock()
        self._positions: dict[str, Position] = {}
        self._symbol_locks: dict[str, threading.Lock] = {}
        self._reserved: set[str] = set()
        self._pending_opens: dict[str, _PendingOpen] = {}
        self._running = False
        self._halted = False
        self._last_balance = settings.initial_balance
        self._balance_stale = True

        self._io_pool = ThreadPoolExecutor(
            max_workers=settings.max_workers * 4, thread_name_prefix="gateway"
        )
        self._worker_pool = ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="evaluate"
        )
        self._scan_task = PeriodicTask("futures-scan", settings.scan_interval_sec, self.scan_once)
        self._monitor_task = PeriodicTask(
            "futures-monitor", settings.monitor_interval_sec, self.monitor_once
        )
        self._restore_positions()

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def running(self) -> bool:
        return self._running

    @property
    def positions(self) -> dict[str, Position]:
        """Copies of the open positions keyed by symbol."""
        with self._lock:
            return {symbol: replace(pos) for symbol, pos in self._positions.items()}

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._running:
                self._logger.warning("engine_already_running")
                return
            self._running = True
            self._halted = False
        for task in (self._monitor_task, self._scan_task):
            if not task.start():
                self._logger.info("task_already_running", task=task.name)
        self._publish("engine_started", None, {"symbols": self._settings.symbol_list})

    def stop(self, mode: StopMode = StopMode.KEEP_MONITORING) -> None:
        """Halt admissions and the scan loop; open positions follow ``mode``."""
        with self._lock:
            was_running = self._running
            self._running = False
            self._halted = True
        self._scan_task.stop()
        if mode is StopMode.CLOSE_ALL:
            self.close_all()
        if mode is StopMode.HALT:
            self._monitor_task.stop()
        if was_running:
            self._publish("engine_stopped", None, {"mode": mode.value})
        else:
            self._logger.info("engine_not_running", mode=mode.value)

    def shutdown(self) -> None:
        """Stop both loops and release worker threads. Positions stay persisted."""
        self.stop(StopMode.HALT)
        self._worker_pool.shutdown(wait=False, cancel_futures=True)
        self._io_pool.shutdown(wait=False, cancel_futures=True)

    def unlock(self) -> None:
        self._governor.unlock()

    def get_status(self) -> EngineStatus:
        """Current state. A failing balance refresh reports the last known value as stale."""
        balance, fresh = self._refresh_balance()
        risk = self._governor.report(balance, self._settings)
        return EngineStatus(
            running=self._running,
            monitoring=self._monitor_task.running,
            positions=self.positions,
            daily_pnl=float(risk["daily_pnl"]),
            locked=bool(risk["locked"]),
            locked_until=risk["locked_until"],  # type: ignore[arg-type]
            balance=balance,
            balance_stale=not fresh,
            risk=risk,
        )

    def analyze(self, symbol: str) -> AnalysisResult:
        """Score, size and place stops for ``symbol`` without trading or mutating state."""
        settings = self._settings
        symbol = symbol.strip().upper()
        evaluation = self._evaluate_symbol(symbol, settings)
        signal = evaluation.signal
        base = evaluation.base
        would_trade = signal.direction is not None and signal.score >= settings.min_signal_score

        try:
            balance = self._call_gateway("balance", self._gateway.balance)
        except GatewayError:
            balance = self._last_balance

        plan = build_trade_plan(evaluation, balance, settings)
        leverage = plan.leverage if plan else (
            determine_leverage(signal.score, base.atr_pct, settings) if base else None
        )
        return AnalysisResult(
            symbol=symbol,
            signal=signal,
            min_score=settings.min_signal_score,
            would_trade=would_trade,
            leverage=leverage,
            entry_price=base.price if base else None,
            stop_target=plan.stop_target if plan else None,
            sizing=plan.sizing if plan else None,
            atr_pct=base.atr_pct if base else None,
            biases=evaluation.biases,
            error=None if base else "base_timeframe_unavailable",
        )

    def close_all(self) -> CycleResult:
        """Force-close every open position. Unconfirmed closes stay pending for the monitor."""
        started = perf_counter()
        settings = self._settings
        with self._lock:
            symbols = list(self._positions)
        result = CycleResult(status="no_positions" if not symbols else "closed")
        outcomes = self._fan_out(
            symbols, lambda symbol: self._close_symbol(symbol, CloseReason.MANUAL_CLOSE, settings)
        )
        for symbol, outcome in outcomes.items():
            result.orders.append({"symbol": symbol, "action": "close", "result": outcome})
            if outcome != "closed":
                result.status = "close_pending"
                result.warnings.append(f"close_pending:{symbol}")
        result.elapsed_ms = (perf_counter() - started) * 1000
        return result

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def scan_once(self) -> CycleResult:
        """Evaluate unheld symbols and open positions for admitted signals."""
        started = perf_counter()
        settings = self._settings
        result = CycleResult(status="unknown")
        self._reconcile_pending_opens()

        if self._halted:
            return self._finish(result, started, "halted")
        if self._governor.is_locked():
            self._logger.warning("scan_skipped", reason="locked")
            return self._finish(result, started, "locked")

        with self._lock:
            held = set(self._positions) | self._reserved
        if len(held) >= settings.max_open_positions:
            self._logger.info(
                "scan_skipped",
                reason="max_open_positions",
                open_positions=len(held),
                limit=settings.max_open_positions,
            )
            return self._finish(result, started, "max_positions")

        candidates = [s for s in settings.symbol_list if s not in held]
        self._logger.info("scan_started", symbols=candidates)
        evaluations = self._fan_out(
            candidates, lambda symbol: self._evaluate_symbol(symbol, settings)
        )

        qualifying: list[SymbolEvaluation] = []
        for symbol in candidates:
            evaluation = evaluations.get(symbol)
            if not isinstance(evaluation, SymbolEvaluation):
                result.warnings.append(f"evaluation_failed:{symbol}")
                continue
            signal = evaluation.signal
            result.decisions.append(
                {
                    "symbol": symbol,
                    "direction": signal.direction.value if signal.direction else None,
                    "score": signal.score,
                    "min_score": settings.min_signal_score,
                }
            )
            self._logger.info(
                "symbol_scored",
                symbol=symbol,
                score=signal.score,
                direction=signal.direction.value if signal.direction else None,
                min_score=settings.min_signal_score,
            )
            if signal.direction is not None and signal.score >= settings.min_signal_score:
                qualifying.append(evaluation)

        if not qualifying:
            return self._finish(result, started, "no_signal")

        balance, fresh = self._refresh_balance()
        if not fresh:
            result.warnings.append("balance_unavailable")
            return self._finish(result, started, "balance_unavailable")

        opened = 0
        # Highest score first; the sort is stable so ties keep configured symbol order.
        for evaluation in sorted(qualifying, key=lambda e: -e.signal.score):
            if self._halted:
                result.warnings.append("halted_during_scan")
                break
            plan = build_trade_plan(evaluation, balance, settings)
            if plan is None:
                self._logger.warning("sizing_failed", symbol=evaluation.symbol)
                result.warnings.append(f"sizing_failed:{evaluation.symbol}")
                continue

            admission = self._reserve(plan, balance, settings)
            if not admission.allowed:
                self._publish("admission_denied", plan.symbol, {"reasons": admission.reasons})
                continue

            position = self._open(plan)
            if position is None:
                result.warnings.append(f"open_failed:{plan.symbol}")
                continue
            opened += 1
            result.orders.append(
                {
                    "action": "open",
                    "symbol": position.symbol,
                    "direction": position.direction.value,
                    "qty": position.quantity,
                    "price": position.entry_price,
                    "leverage": position.leverage,
                    "stop_loss": position.stop_loss,
                    "take_profit": position.take_profit,
                }
            )

        return self._finish(result, started, "opened" if opened else "no_admission")

    def _evaluate_symbol(self, symbol: str, settings: Settings) -> SymbolEvaluation:
        snapshots: dict[str, IndicatorSnapshot | None] = {}
        for role, timeframe in (
            ("fast", settings.fast_timeframe),
            ("base", settings.base_timeframe),
            ("slow", settings.slow_timeframe),
        ):
            try:
                snapshots[role] = self._call_gateway(
                    "fetch_indicator_snapshot",
                    self._gateway.fetch_indicator_snapshot,
                    symbol,
                    timeframe,
                )
            except GatewayError as exc:
                self._logger.warning(
                    "snapshot_unavailable", symbol=symbol, timeframe=timeframe, error=str(exc)
                )
                snapshots[role] = None

        signal = score_signal(snapshots["base"], snapshots["slow"], snapshots["fast"])
        biases = {
            timeframe: classify_bias(snapshots[role])
            for role, timeframe in (
                ("fast", settings.fast_timeframe),
                ("base", settings.base_timeframe),
                ("slow", settings.slow_timeframe),
            )
        }
        return SymbolEvaluation(symbol=symbol, signal=signal, base=snapshots["base"], biases=biases)

    def _reserve(self, plan: TradePlan, balance: float, settings: Settings) -> AdmissionResult:
        """Serialized check-and-reserve of one open-position slot."""
        with self._lock:
            if plan.symbol in self._positions or plan.symbol in self._reserved:
                return AdmissionResult(allowed=False, reasons=["symbol_already_held"])
            context = AdmissionContext(
                symbol=plan.symbol,
                balance=balance,
                margin=plan.sizing.margin,
                rr_ratio=plan.stop_target.rr_ratio,
                open_positions=len(self._positions) + len(self._reserved),
            )
            admission = self._governor.can_admit(context, settings)
            if admission.allowed:
                self._reserved.add(plan.symbol)
            return admission

    def _open(self, plan: TradePlan) -> Position | None:
        log_trade_signal(
            self._logger,
            symbol=plan.symbol,
            direction=plan.direction.value,
            score=plan.score,
            leverage=plan.leverage.leverage,
            leverage_mode=plan.leverage.mode,
            entry=plan.entry_price,
            stop_loss=round(plan.stop_target.stop_loss, 8),
            take_profit=round(plan.stop_target.take_profit, 8),
            rr_ratio=round(plan.stop_target.rr_ratio, 2),
            quantity=plan.sizing.quantity,
            margin=round(plan.sizing.margin, 4),
        )
        order = self._io_pool.submit(
            self._gateway.open_position,
            plan.symbol,
            plan.direction,
            plan.sizing.quantity,
            plan.leverage.leverage,
        )
        try:
            fill = self._await("open_position", order)
        except GatewayError as exc:
            pending = isinstance(exc, GatewayTimeoutError)
            with self._lock:
                if pending:
                    # The slot stays reserved until the exchange says what filled.
                    self._pending_opens[plan.symbol] = _PendingOpen(plan=plan, order=order)
                else:
                    self._reserved.discard(plan.symbol)
            log_order_execution(
                self._logger,
                symbol=plan.symbol,
                side=plan.direction.entry_side,
                quantity=plan.sizing.quantity,
                status="unconfirmed" if pending else "failed",
                error=str(exc),
            )
            self._publish("open_failed", plan.symbol, {"error": str(exc), "pending": pending})
            return None

        log_order_execution(
            self._logger,
            symbol=fill.symbol,
            side=fill.side,
            quantity=fill.quantity,
            price=fill.price,
            order_id=fill.order_id,
            status="filled",
        )
        return self._admit_position(plan, fill.price, fill.quantity, fill.timestamp)

    def _admit_position(
        self,
        plan: TradePlan,
        entry_price: float,
        quantity: float,
        opened_at: str,
        *,
        adopted: bool = False,
    ) -> Position:
        position = Position(
            id=uuid.uuid4().hex,
            symbol=plan.symbol,
            direction=plan.direction,
            entry_price=entry_price,
            quantity=quantity,
            leverage=plan.leverage.leverage,
            leverage_mode=plan.leverage.mode,
            stop_loss=plan.stop_target.stop_loss,
            take_profit=plan.stop_target.take_profit,
            opened_at=opened_at,
            score=plan.score,
            margin=plan.sizing.margin,
            current_price=entry_price,
        )
        with self._lock:
            self._reserved.discard(plan.symbol)
            self._positions[plan.symbol] = position
            self._symbol_locks.setdefault(plan.symbol, threading.Lock())
            self._persist_positions()

        self._publish(
            "position_opened",
            plan.symbol,
            {
                "position_id": position.id,
                "direction": position.direction.value,
                "entry_price": position.entry_price,
                "quantity": position.quantity,
                "leverage": position.leverage,
                "leverage_mode": position.leverage_mode,
                "stop_loss": position.stop_loss,
                "take_profit": position.take_profit,
                "score": position.score,
                "rr_ratio": plan.stop_target.rr_ratio,
                "adopted": adopted,
            },
        )
        return position

    def _reconcile_pending_opens(self) -> None:
        """Resolve timed-out opens once their order call has returned.

        A position the exchange reports is adopted with the plan's stop and
        target. A flat symbol gets its slot back.
        """
        with self._lock:
            symbols = list(self._pending_opens)
        for symbol in symbols:
            with self._symbol_lock(symbol):
                with self._lock:
                    pending = self._pending_opens.get(symbol)
                if pending is None or (pending.order is not None and not pending.order.done()):
                    continue
                try:
                    held = self._call_gateway("held_position", self._gateway.held_position, symbol)
                except GatewayError as exc:
                    self._logger.warning("open_reconcile_failed", symbol=symbol, error=str(exc))
                    continue
                with self._lock:
                    self._pending_opens.pop(symbol, None)
                self._resolve_pending_open(pending.plan, held)

    def _resolve_pending_open(self, plan: TradePlan, held: HeldPosition | None) -> None:
        if held is None:
            with self._lock:
                self._reserved.discard(plan.symbol)
            self._logger.info("pending_open_released", symbol=plan.symbol)
            return

        if held.direction is not plan.direction:
            self._logger.error(
                "unexpected_exchange_position",
                symbol=plan.symbol,
                held_direction=held.direction.value,
                planned_direction=plan.direction.value,
                quantity=held.quantity,
            )
            try:
                self._call_gateway(
                    "reduce_position", self._gateway.reduce_position, plan.symbol, held.quantity
                )
            except GatewayError as exc:
                self._logger.error("flatten_failed", symbol=plan.symbol, error=str(exc))
                with self._lock:
                    self._pending_opens[plan.symbol] = _PendingOpen(plan=plan)
                return
            with self._lock:
                self._reserved.discard(plan.symbol)
            return

        self._logger.warning(
            "pending_open_adopted",
            symbol=plan.symbol,
            quantity=held.quantity,
            entry_price=held.entry_price,
        )
        self._admit_position(
            plan,
            held.entry_price,
            held.quantity,
            datetime.now(timezone.utc).isoformat(),
            adopted=True,
        )

    # ------------------------------------------------------------------
    # Monitor
    # ------------------------------------------------------------------

    def monitor_once(self) -> CycleResult:
        """Evaluate exit and adjustment rules for every open position."""
        started = perf_counter()
        settings = self._settings
        self._reconcile_pending_opens()
        with self._lock:
            symbols = list(self._positions)
        result = CycleResult(status="no_positions" if not symbols else "monitored")
        outcomes = self._fan_out(symbols, lambda symbol: self._monitor_symbol(symbol, settings))
        for symbol, outcome in outcomes.items():
            if isinstance(outcome, str):
                result.decisions.append({"symbol": symbol, "outcome": outcome})
            else:
                result.warnings.append(f"monitor_failed:{symbol}")
        result.elapsed_ms = (perf_counter() - started) * 1000
        return result

    def _monitor_symbol(self, symbol: str, settings: Settings) -> str:
        with self._symbol_lock(symbol):
            with self._lock:
                position = self._positions.get(symbol)
            if position is None:
                return "gone"
            if position.unconfirmed_reduce:
                outcome = self._reconcile(position, settings)
                if outcome is not None:
                    return outcome
            if position.closing:
                return self._close(position, position.close_reason or CloseReason.MANUAL_CLOSE, settings)

            try:
                price = self._call_gateway("current_price", self._gateway.current_price, symbol)
            except GatewayError as exc:
                self._logger.warning("price_unavailable", symbol=symbol, error=str(exc))
                return "price_unavailable"

            position.mark(price)
            if position.stop_hit():
                return self._close(position, CloseReason.STOP_LOSS, settings)
            if position.target_hit():
                return self._close(position, CloseReason.TAKE_PROFIT, settings)

            changed = False
            if position.pnl_pct >= settings.trailing_activate_pct and not position.trailing_active:
                position.trailing_active = True
                position.ratchet_trailing(settings.trailing_distance_pct)
                changed = True
                self._publish(
                    "trailing_activated",
                    symbol,
                    {
                        "price": price,
                        "pnl_pct": position.pnl_pct,
                        "trailing_stop_price": position.trailing_stop_price,
                        "distance_pct": settings.trailing_distance_pct,
                    },
                )
            if position.trailing_active:
                changed = position.ratchet_trailing(settings.trailing_distance_pct) or changed
                if position.trailing_hit():
                    return self._close(position, CloseReason.TRAILING_STOP, settings)

            if position.pnl_pct >= settings.partial_close_pct and not position.partial_closed:
                changed = self._partial_close(position, settings) or changed

            if changed:
                with self._lock:
                    self._persist_positions()
            return "held"

    def _partial_close(self, position: Position, settings: Settings) -> bool:
        quantity = position.quantity * settings.partial_close_fraction_pct / 100.0
        try:
            fill = self._call_gateway(
                "reduce_position", self._gateway.reduce_position, position.symbol, quantity
            )
        except GatewayError as exc:
            if isinstance(exc, GatewayTimeoutError):
                position.unconfirmed_reduce = True
                with self._lock:
                    self._persist_positions()
            log_order_execution(
                self._logger,
                symbol=position.symbol,
                side=position.direction.exit_side,
                quantity=quantity,
                status="failed",
                action="partial_close",
                error=str(exc),
            )
            return False

        closed = min(fill.quantity, position.quantity)
        pnl = position.pnl_at(fill.price, closed)
        position.realized_pnl += pnl
        position.quantity -= closed
        position.partial_closed = True
        position.ratchet_stop(position.entry_price)
        position.mark(position.current_price)

        log_order_execution(
            self._logger,
            symbol=fill.symbol,
            side=fill.side,
            quantity=closed,
            price=fill.price,
            order_id=fill.order_id,
            status="filled",
            action="partial_close",
        )
        self._publish(
            "partial_close",
            position.symbol,
            {
                "closed_quantity": closed,
                "remaining_quantity": position.quantity,
                "price": fill.price,
                "realized_pnl": pnl,
                "pnl_pct": position.pnl_pct,
                "stop_loss": position.stop_loss,
            },
        )
        return True

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def _close_symbol(self, symbol: str, reason: CloseReason, settings: Settings) -> str:
        with self._symbol_lock(symbol):
            with self._lock:
                position = self._positions.get(symbol)
            if position is None:
                return "gone"
            return self._close(position, reason, settings)

    def _close(self, position: Position, reason: CloseReason, settings: Settings) -> str:
        """Offset the remaining quantity. Removes the position only once the fill is confirmed.

        Caller must hold the symbol lock.
        """
        if not position.closing:
            position.closing = True
            position.close_reason = reason
            with self._lock:
                self._persist_positions()
        if position.unconfirmed_reduce:
            outcome = self._reconcile(position, settings)
            if outcome is not None:
                return "close_pending" if outcome == "reconcile_pending" else outcome

        try:
            fill = self._call_gateway(
                "reduce_position", self._gateway.reduce_position, position.symbol, position.quantity
            )
        except GatewayError as exc:
            # The order may or may not have reached the book; re-read before the next attempt.
            position.unconfirmed_reduce = True
            with self._lock:
                self._persist_positions()
            log_order_execution(
                self._logger,
                symbol=position.symbol,
                side=position.direction.exit_side,
                quantity=position.quantity,
                status="failed",
                action="close",
                reason=reason.value,
                error=str(exc),
            )
            self._publish("close_failed", position.symbol, {"reason": reason.value, "error": str(exc)})
            return "close_pending"

        closed = min(fill.quantity, position.quantity)
        position.realized_pnl += position.pnl_at(fill.price, closed)
        position.quantity -= closed
        if position.quantity > _QTY_TOLERANCE * max(closed, 1.0):
            position.unconfirmed_reduce = True
            with self._lock:
                self._persist_positions()
            self._logger.warning(
                "close_partially_filled",
                symbol=position.symbol,
                filled=closed,
                remaining=position.quantity,
            )
            return "close_pending"

        log_order_execution(
            self._logger,
            symbol=fill.symbol,
            side=fill.side,
            quantity=closed,
            price=fill.price,
            order_id=fill.order_id,
            status="filled",
            action="close",
            reason=reason.value,
        )
        self._finalize_close(position, reason, fill.price, settings)
        return "closed"

    def _reconcile(self, position: Position, settings: Settings) -> str | None:
        """Match ``position.quantity`` to what the exchange still holds.

        Quantity that disappeared was filled by an earlier unconfirmed reduce;
        it is realized at the last mark. Returns ``"closed"`` when nothing is
        left, ``"reconcile_pending"`` when the exchange could not be asked, and
        ``None`` when the position carries on. Caller must hold the symbol lock.
        """
        try:
            held = self._call_gateway(
                "held_position", self._gateway.held_position, position.symbol
            )
        except GatewayError as exc:
            self._logger.warning("reconcile_failed", symbol=position.symbol, error=str(exc))
            return "reconcile_pending"

        position.unconfirmed_reduce = False
        held_qty = 0.0
        if held is not None and held.direction is position.direction:
            held_qty = held.quantity
        filled = position.quantity - held_qty
        if filled > _QTY_TOLERANCE * max(position.quantity, 1.0):
            exit_price = position.current_price or position.entry_price
            pnl = position.pnl_at(exit_price, filled)
            position.realized_pnl += pnl
            position.quantity = held_qty
            self._logger.warning(
                "reduce_reconciled",
                symbol=position.symbol,
                filled=filled,
                remaining=held_qty,
                price=exit_price,
            )
            if held_qty <= _QTY_TOLERANCE * max(filled, 1.0):
                self._finalize_close(
                    position,
                    position.close_reason or CloseReason.MANUAL_CLOSE,
                    exit_price,
                    settings,
                    reconciled=True,
                )
                return "closed"
            if not position.closing and not position.partial_closed:
                position.partial_closed = True
                position.ratchet_stop(position.entry_price)
                position.mark(position.current_price)
                self._publish(
                    "partial_close",
                    position.symbol,
                    {
                        "closed_quantity": filled,
                        "remaining_quantity": position.quantity,
                        "price": exit_price,
                        "realized_pnl": pnl,
                        "pnl_pct": position.pnl_pct,
                        "stop_loss": position.stop_loss,
                        "reconciled": True,
                    },
                )

        with self._lock:
            self._persist_positions()
        return None

    def _finalize_close(
        self,
        position: Position,
        reason: CloseReason,
        exit_price: float,
        settings: Settings,
        *,
        reconciled: bool = False,
    ) -> None:
        pnl = position.realized_pnl
        pnl_pct = (
            position.direction.sign
            * (exit_price - position.entry_price)
            / position.entry_price
            * 100
            * position.leverage
        )
        with self._lock:
            self._positions.pop(position.symbol, None)
            self._persist_positions()

        balance, _ = self._refresh_balance()
        self._governor.record_outcome(pnl, balance, settings)
        self._publish(
            "position_closed",
            position.symbol,
            {
                "position_id": position.id,
                "reason": reason.value,
                "direction": position.direction.value,
                "entry_price": position.entry_price,
                "exit_price": exit_price,
                "pnl": pnl,
                "pnl_pct": pnl_pct,
                "leverage": position.leverage,
                "score": position.score,
                "reconciled": reconciled,
            },
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _call_gateway(self, name: str, func: Callable[..., T], *args: Any) -> T:
        """Run a gateway call with the configured time budget."""
        return self._await(name, self._io_pool.submit(func, *args))

    def _await(self, name: str, future: Future[T]) -> T:
        try:
            return future.result(timeout=self._settings.gateway_timeout_sec)
        except TimeoutError as exc:
            future.cancel()
            raise GatewayTimeoutError(f"{name}_timeout") from exc

    def _fan_out(
        self, symbols: Iterable[str], func: Callable[[str], T]
    ) -> dict[str, T | BaseException]:
        """Run ``func`` per symbol on the worker pool; one failure never stops the rest."""
        futures = {self._worker_pool.submit(func, symbol): symbol for symbol in symbols}
        results: dict[str, T | BaseException] = {}
        for future in as_completed(futures):
            symbol = futures[future]
            try:
                results[symbol] = future.result()
            except Exception as exc:  # noqa: BLE001 - isolate per-symbol failures.
                self._logger.exception("symbol_task_failed", symbol=symbol, error=str(exc))
                self._publish(
                    "error", symbol, {"error": str(exc), "error_type": type(exc).__name__}
                )
                results[symbol] = exc
        return results

    def _refresh_balance(self) -> tuple[float, bool]:
        try:
            balance = float(self._call_gateway("balance", self._gateway.balance))
        except GatewayError as exc:
            self._balance_stale = True
            self._logger.warning(
                "balance_refresh_failed", error=str(exc), last_known=self._last_balance
            )
            return self._last_balance, False
        self._last_balance = balance
        self._balance_stale = False
        return balance, True

    def _symbol_lock(self, symbol: str) -> threading.Lock:
        with self._lock:
            return self._symbol_locks.setdefault(symbol, threading.Lock())

    def _publish(self, kind: str, symbol: str | None, payload: dict[str, Any]) -> None:
        self._events.publish(EngineEvent(kind=kind, symbol=symbol, payload=payload))

    def _finish(self, result: CycleResult, started: float, status: str) -> CycleResult:
        result.status = status
        result.elapsed_ms = (perf_counter() - started) * 1000
        self._publish(
            "scan",
            None,
            {"status": status, "opened": len(result.orders), "warnings": list(result.warnings)},
        )
        return result

    def _persist_positions(self) -> None:
        self._positions_file.save(
            {"positions": [asdict(position) for position in self._positions.values()]}
        )

    def _restore_positions(self) -> None:
        raw = self._positions_file.load()
        if raw is None:
            return
        for item in raw.get("positions", []):
            close_reason = item.get("close_reason")
            position = Position(
                **{
                    **item,
                    "direction": Direction(item["direction"]),
                    "close_reason": CloseReason(close_reason) if close_reason else None,
                }
            )
            self._positions[position.symbol] = position
            self._symbol_locks[position.symbol] = threading.Lock()
        if self._positions:
            self._logger.info("positions_restored", symbols=sorted(self._positions))
