"""CLI 入口模块 - Futures Trading Engine 命令行接口。"""

import sys
import time
from datetime import datetime
from pathlib import Path

import click

from futures_trading import __version__
from futures_trading.config import Settings, get_settings
from futures_trading.engine.lifecycle import FuturesEngine, StopMode
from futures_trading.journal.store import JournalStore
from futures_trading.pipeline import build_engine, run_once
from futures_trading.types import CycleResult
from futures_trading.utils.logging import get_logger, setup_logging

# status 命令展示的最近事件条数
_RECENT_EVENTS = 5


def _require_live_config(settings: Settings) -> None:
    """实盘模式下校验必要配置，缺失则退出。"""
    if not settings.is_live_mode:
        return
    missing = settings.validate_for_live()
    if missing:
        get_logger("futures_trading.main").error(
            "missing_required_config",
            missing_keys=missing,
            hint="请在 .env 文件中配置必要的 API 密钥",
        )
        sys.exit(1)


def _echo_cycle(name: str, result: CycleResult) -> None:
    click.echo(f"[{name}] status={result.status} elapsed={result.elapsed_ms:.1f}ms")
    for order in result.orders:
        details = " ".join(f"{key}={value}" for key, value in order.items())
        click.echo(f"   order: {details}")
    for warning in result.warnings:
        click.echo(f"   warn: {warning}")


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Futures Trading Engine - 多周期评分的 USDT 永续合约自动交易系统。

    七层信号评分、动态杠杆、ATR 止损止盈、移动止损与分批止盈，
    并由风控模块执行每日熔断。
    """
    if version:
        click.echo(f"futures-trading version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--on-stop",
    type=click.Choice([mode.value for mode in StopMode]),
    default=StopMode.KEEP_MONITORING.value,
    show_default=True,
    help="停止时对已有持仓的处理方式",
)
def run(on_stop: str) -> None:
    """启动引擎：周期扫描开仓并持续监控持仓。

    使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("futures_trading.main")
    settings = get_settings()
    _require_live_config(settings)

    engine = build_engine(settings)
    logger.info(
        "starting_engine",
        mode=settings.mode.value,
        symbols=settings.symbol_list,
        scan_interval_sec=settings.scan_interval_sec,
        monitor_interval_sec=settings.monitor_interval_sec,
        timestamp=datetime.now().isoformat(),
    )
    engine.start()

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("engine_interrupted", message="User stopped engine", on_stop=on_stop)
    finally:
        stop_mode = StopMode(on_stop)
        engine.stop(stop_mode)
        if stop_mode is StopMode.KEEP_MONITORING and engine.positions:
            # 进程退出后由下次启动恢复监控
            logger.warning("positions_left_open", symbols=sorted(engine.positions))
        engine.shutdown()


@cli.command()
def once() -> None:
    """执行单次循环：先监控持仓，再扫描开仓。"""
    setup_logging()
    logger = get_logger("futures_trading.main")
    settings = get_settings()
    _require_live_config(settings)

    engine = build_engine(settings)
    try:
        monitor_result, scan_result = run_once(engine)
        _echo_cycle("monitor", monitor_result)
        _echo_cycle("scan", scan_result)
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)
    finally:
        engine.shutdown()


@cli.command()
@click.argument("symbol")
def analyze(symbol: str) -> None:
    """分析单个合约：输出评分、杠杆、止损止盈与仓位，不下单。"""
    setup_logging()
    settings = get_settings()
    engine = build_engine(settings)
    try:
        result = engine.analyze(symbol)
    finally:
        engine.shutdown()

    signal = result.signal
    direction = signal.direction.value if signal.direction else "none"
    click.echo(f"{result.symbol}: direction={direction} score={signal.score}/10 (min {result.min_score})")
    if signal.reason:
        click.echo(f"   reason: {signal.reason}")
    for name, layer in signal.layers.items():
        click.echo(f"   {name:<14} {layer.score}  {layer.status}")
    for timeframe, bias in result.biases.items():
        click.echo(f"   bias[{timeframe}]: {bias}")
    if result.error:
        click.echo(f"   error: {result.error}")
    if result.leverage:
        click.echo(f"   leverage: {result.leverage.leverage}x ({result.leverage.mode})")
    if result.stop_target and result.entry_price:
        st = result.stop_target
        click.echo(
            f"   entry={result.entry_price} stop={st.stop_loss:.6f} target={st.take_profit:.6f} "
            f"rr={st.rr_ratio:.2f}"
        )
    if result.sizing:
        click.echo(
            f"   qty={result.sizing.quantity:.6f} margin={result.sizing.margin:.4f} "
            f"notional={result.sizing.notional:.4f}"
        )
    click.echo(f"   would trade: {'yes' if result.would_trade else 'no'}")


@cli.command()
def status() -> None:
    """显示系统状态、持仓与风控摘要。"""
    setup_logging()
    settings = get_settings()
    engine = build_engine(settings)
    try:
        state = engine.get_status()
    finally:
        engine.shutdown()

    click.echo("=" * 50)
    click.echo("Futures Trading Engine - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Symbols: {', '.join(settings.symbol_list)}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo()

    # 账户
    click.echo("[Account]")
    stale = " (stale)" if state.balance_stale else ""
    click.echo(f"   Balance: {state.balance:.4f} USDT{stale}")
    click.echo(f"   Daily PnL: {state.daily_pnl:+.4f} USDT")
    if state.locked:
        click.echo(f"   [LOCKED] until {state.locked_until} ({state.risk.get('lock_reason')})")
    click.echo(f"   Kelly advisory size: {float(state.risk['kelly_size']):.4f} USDT")  # type: ignore[arg-type]
    click.echo()

    # 持仓
    click.echo(f"[Positions] {len(state.positions)}/{settings.max_open_positions}")
    for symbol, pos in state.positions.items():
        flags = []
        if pos.trailing_active:
            flags.append(f"trailing@{pos.trailing_stop_price:.6f}")
        if pos.partial_closed:
            flags.append("partial")
        if pos.closing:
            flags.append("closing")
        if pos.unconfirmed_reduce:
            flags.append("unconfirmed")
        click.echo(
            f"   {symbol} {pos.direction.value} {pos.leverage}x qty={pos.quantity:.6f} "
            f"entry={pos.entry_price} sl={pos.stop_loss:.6f} tp={pos.take_profit:.6f} "
            f"{' '.join(flags)}"
        )
    click.echo()

    # 最近事件
    recent = JournalStore(settings.journal_dir).load_recent(_RECENT_EVENTS)
    click.echo(f"[Recent Events] last {len(recent)}")
    for record in recent:
        payload = record.get("payload") or {}
        click.echo(f"   {record['timestamp']} {record['event_type']} {payload.get('symbol') or '-'}")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Risk per trade: {settings.risk_per_trade_pct}%")
    click.echo(f"   Max margin usage: {settings.max_margin_usage_pct}%")
    click.echo(f"   Min reward:risk: {settings.min_rr_ratio}")
    click.echo(f"   Max daily loss: {settings.max_daily_loss_pct}%")
    click.echo(f"   Leverage: {settings.min_leverage}x - {settings.max_leverage}x")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require API keys")

    click.echo()
    click.echo("=" * 50)


@cli.command("close-all")
@click.confirmation_option(prompt="确认平掉所有持仓？")
def close_all() -> None:
    """立即平掉所有持仓。"""
    setup_logging()
    settings = get_settings()
    _require_live_config(settings)
    engine: FuturesEngine = build_engine(settings)
    try:
        result = engine.close_all()
    finally:
        engine.shutdown()
    _echo_cycle("close-all", result)
    if result.status == "close_pending":
        sys.exit(1)


@cli.command()
def unlock() -> None:
    """手动解除每日熔断，并重置当日盈亏。"""
    setup_logging()
    settings = get_settings()
    engine = build_engine(settings)
    try:
        engine.unlock()
    finally:
        engine.shutdown()
    click.echo("[OK] Circuit breaker cleared")


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("futures_trading.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Environment configuration"),
        ("pandas", "Data processing"),
        ("binance", "Binance futures API"),
        ("requests", "HTTP transport"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m futures_trading.main 调用
if __name__ == "__main__":
    cli()
