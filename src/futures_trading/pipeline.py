"""Engine wiring and the single-pass trading cycle."""

from __future__ import annotations

from futures_trading.config import Settings
from futures_trading.data.binance import BinanceGateway
from futures_trading.engine.events import EventBus, JournalObserver, LogObserver
from futures_trading.engine.lifecycle import FuturesEngine
from futures_trading.exec.gateway import ExecutionGateway
from futures_trading.exec.paper import PaperGateway
from futures_trading.journal.state import StateFile
from futures_trading.journal.store import JournalStore
from futures_trading.risk.governor import RiskGovernor
from futures_trading.types import CycleResult
from futures_trading.utils.logging import get_logger


def build_gateway(settings: Settings) -> ExecutionGateway:
    """Paper mode trades against live market data; live mode trades on Binance."""
    market = BinanceGateway(settings)
    if settings.is_live_mode:
        return market
    return PaperGateway(
        market,
        settings.journal_dir,
        slippage_bps=settings.paper_slippage_bps,
        initial_equity=settings.initial_balance,
    )


def build_engine(
    settings: Settings,
    *,
    gateway: ExecutionGateway | None = None,
    journal: JournalStore | None = None,
) -> FuturesEngine:
    """Assemble the engine with its persisted state and observers."""
    settings.ensure_directories()
    journal = journal or JournalStore(settings.journal_dir)
    events = EventBus()
    events.subscribe(JournalObserver(journal))
    events.subscribe(LogObserver())

    governor = RiskGovernor(
        settings,
        StateFile(settings.journal_dir / "risk_state.json"),
        events=events,
    )
    return FuturesEngine(
        settings,
        gateway or build_gateway(settings),
        governor,
        StateFile(settings.journal_dir / "positions.json"),
        events=events,
    )


def run_once(engine: FuturesEngine) -> list[CycleResult]:
    """Run one monitor pass followed by one scan pass."""
    logger = get_logger("futures_trading.pipeline")
    results = [engine.monitor_once(), engine.scan_once()]
    for name, result in zip(("monitor", "scan"), results):
        logger.info(
            "cycle_complete",
            cycle=name,
            status=result.status,
            orders=len(result.orders),
            warnings=result.warnings,
            elapsed_ms=round(result.elapsed_ms, 1),
        )
    return results
