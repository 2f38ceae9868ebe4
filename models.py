# models.py
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Kline intervals accepted by the Binance spot API
KLINE_INTERVALS = (
    "1s", "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
)


# --- Domain types ---

@dataclass
class RsiConfig:
    period: int = 7
    entry: float = 65.0
    exit: float = 20.0

    def merged(self, period: Optional[int] = None, entry: Optional[float] = None,
               exit: Optional[float] = None) -> "RsiConfig":
        """Return a copy with the given fields overridden; None keeps the current value."""
        return RsiConfig(
            period=self.period if period is None else int(period),
            entry=self.entry if entry is None else float(entry),
            exit=self.exit if exit is None else float(exit),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Candle:
    """A normalised kline event."""
    symbol: str
    open_time: int     # epoch ms
    close_time: int    # epoch ms
    close: float
    closed: bool


@dataclass
class Alert:
    """Payload handed to the webhook relay on a crossing."""
    symbol: str
    side: str          # "ENTER-LONG" | "EXIT-LONG"
    price: float
    time: int          # candle open time, epoch ms
    comment: str


@dataclass
class Crossing:
    """A detected threshold crossing, as handed to an executor."""
    signal: str        # "ENTER" | "EXIT"
    symbol: str
    price: float
    time: int
    comment: str
    buy_limit: Optional[float] = None


@dataclass
class SymbolInfo:
    symbol: str
    base_asset: str
    quote_asset: str
    step_size: Decimal
    min_qty: Decimal = Decimal("0")


@dataclass
class OrderResult:
    symbol: str
    side: str
    quantity: Decimal
    order_id: Optional[int]
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


class MonitorState(str, Enum):
    CREATED = "CREATED"
    SEEDING = "SEEDING"
    LIVE = "LIVE"
    STOPPED = "STOPPED"


class FeedState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


# --- API schemas ---

class RsiConfigModel(BaseModel):
    period: int = Field(..., ge=1)
    entry: float = Field(..., ge=0.0, le=100.0)
    exit: float = Field(..., ge=0.0, le=100.0)


class RsiConfigPatch(BaseModel):
    period: Optional[int] = Field(None, ge=1)
    entry: Optional[float] = Field(None, ge=0.0, le=100.0)
    exit: Optional[float] = Field(None, ge=0.0, le=100.0)


class SymbolCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(..., min_length=1)
    interval: str
    in_long: bool = Field(False, alias="inLong")
    buy_limit: Optional[float] = Field(None, alias="buyLimit", gt=0)
    rsi_config: Optional[RsiConfigPatch] = Field(None, alias="rsiConfig")
    entry_message: Optional[str] = Field(None, alias="entryMessage")
    exit_message: Optional[str] = Field(None, alias="exitMessage")

    @field_validator("symbol")
    @classmethod
    def _canonical_symbol(cls, v: str) -> str:
        v = v.strip().lower()
        if not v.isalnum():
            raise ValueError("symbol must be alphanumeric, e.g. ethusdt")
        return v

    @field_validator("interval")
    @classmethod
    def _known_interval(cls, v: str) -> str:
        if v not in KLINE_INTERVALS:
            raise ValueError(f"interval must be one of {', '.join(KLINE_INTERVALS)}")
        return v


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    in_long: Optional[bool] = Field(None, alias="inLong")
    buy_limit: Optional[float] = Field(None, alias="buyLimit", gt=0)


class SignalEvent(BaseModel):
    signal: str
    time: int


class SymbolSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str
    interval: str
    in_long: bool = Field(..., alias="inLong")
    buy_limit: Optional[float] = Field(None, alias="buyLimit")
    rsi_config: RsiConfigModel = Field(..., alias="rsiConfig")
    state: MonitorState
    feed_state: Optional[FeedState] = Field(None, alias="feedState")
    rsi: Optional[float] = None
    entry_message: Optional[str] = Field(None, alias="entryMessage")
    exit_message: Optional[str] = Field(None, alias="exitMessage")
    last_signal: Optional[SignalEvent] = Field(None, alias="lastSignal")


class WebhookRequest(BaseModel):
    payload: Dict[str, Any]


class OrderRequest(BaseModel):
    symbol: str = Field(..., min_length=1)
    side: Literal["BUY", "SELL"] = "BUY"
    quantity: Decimal = Field(..., gt=0)
    price: Optional[Decimal] = Field(None, gt=0)

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, v: str) -> str:
        return v.strip().upper()


class MessageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    symbol: Optional[str] = None
    in_long: Optional[bool] = Field(None, alias="inLong")
    rsi_config: Optional[RsiConfigModel] = Field(None, alias="rsiConfig")

