"""Multi-timeframe USDT-M futures trading engine."""

__version__ = "0.1.0"
