# config.py
"""Runtime settings and logging setup.

Settings are read from the environment (prefix ``RSI_MONITOR_``) or a local
``.env`` file. Complex values such as ``DEFAULT_SYMBOLS`` are given as JSON:

    RSI_MONITOR_DEFAULT_SYMBOLS='[{"symbol": "ethusdt", "interval": "5m"}]'
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RSI_MONITOR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Exchange
    binance_api_key: Optional[str] = None
    binance_api_secret: Optional[str] = None
    binance_rest_url: str = "https://api.binance.com"
    binance_ws_url: str = "wss://stream.binance.com:9443/ws"
    recv_window_ms: int = 5000
    http_timeout: float = 10.0

    # Signal delivery
    execution_mode: Literal["webhook", "order"] = "webhook"
    webhook_url: str = "https://wtalerts.com/bot/custom"
    webhook_format: Literal["text", "form"] = "text"
    min_quote_balance: float = 5.0

    # RSI defaults for new monitors
    rsi_period: int = Field(7, ge=1)
    rsi_entry: float = Field(65.0, ge=0.0, le=100.0)
    rsi_exit: float = Field(20.0, ge=0.0, le=100.0)
    seed_margin: int = Field(10, ge=10)

    # Feed
    reconnect_base_delay: float = 5.0
    max_reconnect_attempts: int = 5

    # Symbols registered on startup
    default_symbols: List[Dict[str, Any]] = Field(
        default_factory=lambda: [{"symbol": "ethusdt", "interval": "5m"}]
    )

    store_path: Optional[str] = "symbol_status.db"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    # httpx logs every request at INFO; keep the signal log readable
    logging.getLogger("httpx").setLevel(logging.WARNING)
