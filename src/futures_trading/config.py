"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。实例不可变，引擎在每个 tick 开始时
    取一次快照并传给所有决策函数。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 测试网")

    # ==================== 交易标的与周期 ====================
    symbols: str = Field(
        default="BTCUSDT,ETHUSDT,SOLUSDT",
        description="扫描的合约列表（逗号分隔）",
    )
    fast_timeframe: str = Field(default="15m", description="入场时机周期")
    base_timeframe: str = Field(default="1h", description="基准周期")
    slow_timeframe: str = Field(default="4h", description="趋势周期")
    fast_bars: int = Field(default=100, ge=50, le=1500, description="入场周期 K 线数量")
    base_bars: int = Field(default=200, ge=50, le=1500, description="基准周期 K 线数量")
    slow_bars: int = Field(default=100, ge=50, le=1500, description="趋势周期 K 线数量")

    # ==================== 调度 ====================
    scan_interval_sec: float = Field(default=60.0, gt=0, le=3600, description="信号扫描间隔（秒）")
    monitor_interval_sec: float = Field(default=5.0, gt=0, le=600, description="持仓监控间隔（秒）")
    gateway_timeout_sec: float = Field(default=10.0, gt=0, le=120, description="交易所调用超时（秒）")
    max_workers: int = Field(default=4, ge=1, le=32, description="并发评估线程数")

    # ==================== 杠杆 ====================
    min_leverage: int = Field(default=1, ge=1, le=125, description="最小杠杆")
    default_leverage: int = Field(default=2, ge=1, le=125, description="默认杠杆")
    boosted_leverage: int = Field(default=4, ge=1, le=125, description="高置信杠杆（评分≥9 且 ATR%<2）")
    high_volatility_leverage: int = Field(default=2, ge=1, le=125, description="高波动杠杆（ATR%>3）")
    max_leverage: int = Field(default=4, ge=1, le=125, description="最大杠杆")

    # ==================== 风控参数 ====================
    risk_per_trade_pct: float = Field(
        default=3.0,
        gt=0,
        le=10.0,
        description="单笔最大风险（账户净值百分比）",
    )
    max_margin_usage_pct: float = Field(
        default=50.0,
        gt=0,
        le=100.0,
        description="单笔最大保证金占用（账户净值百分比）",
    )
    min_rr_ratio: float = Field(default=2.5, ge=1.0, le=10.0, description="最小盈亏比")
    max_daily_loss_pct: float = Field(
        default=10.0,
        gt=0,
        le=50.0,
        description="日最大亏损熔断阈值（百分比）",
    )
    max_open_positions: int = Field(default=2, ge=1, le=20, description="最大同时持仓数")
    min_signal_score: int = Field(default=7, ge=0, le=10, description="开仓最低信号评分")

    # ==================== 止损止盈 ====================
    stop_loss_atr_multiplier: float = Field(default=1.5, gt=0, le=10.0, description="止损 ATR 倍数")
    take_profit_atr_multiplier: float = Field(default=3.5, gt=0, le=20.0, description="止盈 ATR 倍数")
    stop_loss_pct: float = Field(default=2.0, gt=0, le=20.0, description="百分比止损")
    take_profit_pct: float = Field(default=7.0, gt=0, le=50.0, description="百分比止盈")
    bollinger_buffer_pct: float = Field(default=0.2, ge=0, le=5.0, description="布林带缓冲（百分比）")

    # ==================== 移动止损与分批止盈 ====================
    trailing_activate_pct: float = Field(default=2.0, gt=0, le=100.0, description="移动止损激活收益率（含杠杆）")
    trailing_distance_pct: float = Field(default=1.5, gt=0, le=20.0, description="移动止损距离（百分比）")
    partial_close_pct: float = Field(default=4.0, gt=0, le=100.0, description="分批止盈触发收益率（含杠杆）")
    partial_close_fraction_pct: float = Field(
        default=50.0,
        gt=0,
        lt=100.0,
        description="分批止盈平仓比例（百分比）",
    )

    # ==================== Kelly 仓位建议 ====================
    kelly_min_trades: int = Field(default=10, ge=1, le=1000, description="Kelly 计算所需最少交易数")
    kelly_fallback_pct: float = Field(default=3.0, ge=0, le=100.0, description="数据不足时的默认仓位比例")
    kelly_max_pct: float = Field(default=10.0, ge=0, le=100.0, description="Kelly 仓位上限（百分比）")
    outcome_history_size: int = Field(default=50, ge=1, le=1000, description="交易结果历史窗口")

    # ==================== 账户 ====================
    initial_balance: float = Field(default=100.0, gt=0, description="初始/回退账户余额（USDT）")
    paper_slippage_bps: float = Field(default=2.0, ge=0, le=100.0, description="纸交易滑点（基点）")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="交易日志与状态存储目录",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_leverage_bounds(self) -> "Settings":
        """校验杠杆配置落在 [min_leverage, max_leverage] 区间内。"""
        if self.min_leverage > self.max_leverage:
            raise ValueError("min_leverage must not exceed max_leverage")
        for name in ("default_leverage", "boosted_leverage", "high_volatility_leverage"):
            value = getattr(self, name)
            if not self.min_leverage <= value <= self.max_leverage:
                raise ValueError(f"{name} must be within [min_leverage, max_leverage]")
        return self

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def symbol_list(self) -> list[str]:
        """解析后的合约列表。"""
        return [s.strip().upper() for s in self.symbols.split(",") if s.strip()]

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.binance_api_key:
            missing.append("BINANCE_API_KEY")
        if not self.binance_api_secret:
            missing.append("BINANCE_API_SECRET")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
