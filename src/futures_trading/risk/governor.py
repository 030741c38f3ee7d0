"""Risk governor: admission gate, daily circuit breaker and Kelly advisory."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import asdict, replace
from datetime import datetime, time, timedelta
from typing import Any

from futures_trading.config import Settings
from futures_trading.engine.events import EngineEvent, EventBus
from futures_trading.journal.state import StateFile
from futures_trading.types import AdmissionContext, AdmissionResult, RiskState
from futures_trading.utils.logging import get_logger, log_risk_event


def local_now() -> datetime:
    return datetime.now().astimezone()


def next_local_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)


class RiskGovernor:
    """Owns the process-wide risk state. All mutations go through this class."""

    def __init__(
        self,
        settings: Settings,
        state_file: StateFile,
        *,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._settings = settings
        self._state_file = state_file
        self._events = events
        self._clock = clock
        self._lock = threading.RLock()
        self._logger = get_logger("futures_trading.risk.governor")
        self._state = self._load_state()

    def can_admit(
        self, context: AdmissionContext, settings: Settings | None = None
    ) -> AdmissionResult:
        """Check every admission condition and report all violations.

        Side-effect free, except that finding the daily loss limit already
        breached trips the breaker.
        """
        settings = settings or self._settings
        reasons: list[str] = []
        with self._lock:
            now = self._clock()
            self._roll_day_if_needed(now)
            if self._is_locked_at(now):
                reasons.append("locked")
            elif self._daily_limit_breached(context.balance, settings):
                self._trip_locked("daily_loss_limit", now)
                reasons.append("daily_loss_limit")

        if context.open_positions >= settings.max_open_positions:
            reasons.append("max_open_positions")
        if context.margin > context.balance * settings.max_margin_usage_pct / 100.0:
            reasons.append("margin_cap_exceeded")
        if context.rr_ratio < settings.min_rr_ratio:
            reasons.append("rr_below_floor")

        if reasons:
            log_risk_event(
                self._logger,
                event_type="admission_denied",
                action="skip_symbol",
                symbol=context.symbol,
                reasons=reasons,
            )
        return AdmissionResult(allowed=not reasons, reasons=reasons)

    def record_outcome(
        self, pnl: float, balance: float, settings: Settings | None = None
    ) -> None:
        """Fold one realized trade result into the daily and historical state."""
        settings = settings or self._settings
        with self._lock:
            now = self._clock()
            self._roll_day_if_needed(now)
            state = self._state
            state.daily_pnl += pnl
            state.daily_trade_count += 1
            state.outcomes.append(pnl)
            overflow = len(state.outcomes) - settings.outcome_history_size
            if overflow > 0:
                del state.outcomes[:overflow]

            if balance > state.peak_balance:
                state.peak_balance = balance
            if state.peak_balance > 0:
                drawdown = (state.peak_balance - balance) / state.peak_balance * 100
                state.max_drawdown_pct = max(state.max_drawdown_pct, drawdown)

            if self._daily_limit_breached(balance, settings):
                self._trip_locked("daily_loss_limit", now)
            self._persist()

        self._logger.info(
            "outcome_recorded",
            pnl=round(pnl, 4),
            daily_pnl=round(self._state.daily_pnl, 4),
            daily_trades=self._state.daily_trade_count,
        )

    def trip_breaker(self, reason: str) -> bool:
        """Lock admissions until the next local day. Returns False if already locked."""
        with self._lock:
            return self._trip_locked(reason, self._clock())

    def unlock(self) -> None:
        """Manual unlock: clears the lock and resets the daily P&L."""
        with self._lock:
            was_locked = self._state.locked_until is not None
            self._state.locked_until = None
            self._state.lock_reason = None
            self._state.daily_pnl = 0.0
            self._persist()
        self._logger.info("breaker_unlocked_manually", was_locked=was_locked)
        self._publish("breaker_cleared", {"manual": True})

    def is_locked(self) -> bool:
        with self._lock:
            now = self._clock()
            self._roll_day_if_needed(now)
            return self._is_locked_at(now)

    def kelly_advisory_size(self, balance: float, settings: Settings | None = None) -> float:
        """Half-Kelly capital suggestion from recent outcomes. Never gates admission."""
        settings = settings or self._settings
        with self._lock:
            outcomes = list(self._state.outcomes)

        if len(outcomes) < settings.kelly_min_trades:
            return balance * settings.kelly_fallback_pct / 100.0

        wins = [p for p in outcomes if p >= 0]
        losses = [p for p in outcomes if p < 0]
        win_rate = len(wins) / len(outcomes)
        gross_loss = abs(sum(losses))
        if gross_loss == 0:
            kelly = win_rate
        else:
            profit_factor = sum(wins) / gross_loss
            if profit_factor <= 0:
                return 0.0
            kelly = win_rate - (1 - win_rate) / profit_factor

        half_kelly = max(0.0, min(kelly / 2, settings.kelly_max_pct / 100.0))
        return balance * half_kelly

    def snapshot(self) -> RiskState:
        with self._lock:
            self._roll_day_if_needed(self._clock())
            return replace(self._state, outcomes=list(self._state.outcomes))

    def report(self, balance: float, settings: Settings | None = None) -> dict[str, Any]:
        settings = settings or self._settings
        # is_locked() clears an expired lock, so it runs before the snapshot.
        locked = self.is_locked()
        state = self.snapshot()
        outcomes = state.outcomes
        wins = sum(1 for p in outcomes if p >= 0)
        return {
            "daily_pnl": state.daily_pnl,
            "daily_trade_count": state.daily_trade_count,
            "locked": locked,
            "locked_until": state.locked_until,
            "lock_reason": state.lock_reason,
            "peak_balance": state.peak_balance,
            "max_drawdown_pct": state.max_drawdown_pct,
            "recent_trades": len(outcomes),
            "recent_win_rate": wins / len(outcomes) if outcomes else None,
            "kelly_size": self.kelly_advisory_size(balance, settings),
            "limits": {
                "max_daily_loss_pct": settings.max_daily_loss_pct,
                "risk_per_trade_pct": settings.risk_per_trade_pct,
                "max_open_positions": settings.max_open_positions,
                "max_margin_usage_pct": settings.max_margin_usage_pct,
                "min_rr_ratio": settings.min_rr_ratio,
            },
        }

    def _daily_limit_breached(self, balance: float, settings: Settings) -> bool:
        max_loss = balance * settings.max_daily_loss_pct / 100.0
        return self._state.daily_pnl < -max_loss

    def _is_locked_at(self, now: datetime) -> bool:
        locked_until = self._state.locked_until
        if locked_until is None:
            return False
        if now < datetime.fromisoformat(locked_until):
            return True
        self._state.locked_until = None
        self._state.lock_reason = None
        self._persist()
        self._logger.info("breaker_expired", locked_until=locked_until)
        self._publish("breaker_cleared", {"manual": False, "locked_until": locked_until})
        return False

    def _trip_locked(self, reason: str, now: datetime) -> bool:
        if self._state.locked_until is not None and self._is_locked_at(now):
            return False
        until = next_local_midnight(now)
        self._state.locked_until = until.isoformat()
        self._state.lock_reason = reason
        self._persist()
        log_risk_event(
            self._logger,
            event_type="breaker_tripped",
            action="lock_admissions",
            reason=reason,
            daily_pnl=round(self._state.daily_pnl, 4),
            locked_until=self._state.locked_until,
        )
        self._publish(
            "breaker_tripped",
            {
                "reason": reason,
                "daily_pnl": self._state.daily_pnl,
                "locked_until": self._state.locked_until,
            },
        )
        return True

    def _roll_day_if_needed(self, now: datetime) -> None:
        today = now.date().isoformat()
        if self._state.day != today:
            self._logger.info("daily_reset", previous_day=self._state.day, daily_pnl=self._state.daily_pnl)
            self._state.day = today
            self._state.daily_pnl = 0.0
            self._state.daily_trade_count = 0
            self._persist()

    def _publish(self, kind: str, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.publish(EngineEvent(kind=kind, symbol=None, payload=payload))

    def _load_state(self) -> RiskState:
        raw = self._state_file.load()
        today = self._clock().date().isoformat()
        if raw is None:
            return RiskState(day=today, peak_balance=self._settings.initial_balance)
        return RiskState(
            day=str(raw.get("day", today)),
            daily_pnl=float(raw.get("daily_pnl", 0.0)),
            daily_trade_count=int(raw.get("daily_trade_count", 0)),
            locked_until=raw.get("locked_until") or None,
            lock_reason=raw.get("lock_reason"),
            outcomes=[float(p) for p in raw.get("outcomes", [])],
            peak_balance=float(raw.get("peak_balance", self._settings.initial_balance)),
            max_drawdown_pct=float(raw.get("max_drawdown_pct", 0.0)),
        )

    def _persist(self) -> None:
        self._state_file.save(asdict(self._state))
