# feed.py
# Closed-kline subscription for one symbol with bounded reconnects.
#
# Usage example:
#   async def on_candle(candle):
#       print(candle)
#   feed = KlineFeed("ethusdt", "5m", on_candle)
#   feed.start()
#   ...
#   await feed.stop()

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, List, Optional

import websockets

from errors import FeedError
from models import Candle, FeedState

logger = logging.getLogger(__name__)

BINANCE_WS_URL = "wss://stream.binance.com:9443/ws"
DEFAULT_BASE_DELAY = 5.0
DEFAULT_MAX_ATTEMPTS = 5

CandleHandler = Callable[[Candle], Awaitable[None]]
FailureHandler = Callable[[FeedError], Any]


def parse_kline_message(raw: Any) -> Optional[Candle]:
    """Normalise a Binance kline frame; None for anything that is not a closed candle."""
    data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    # Combined-stream frames wrap the event in {"stream": ..., "data": ...}
    if "stream" in data and "data" in data:
        data = data["data"]
    if data.get("e") != "kline":
        return None
    k = data["k"]
    if not k.get("x"):
        return None
    return Candle(
        symbol=str(k.get("s", data.get("s", ""))).lower(),
        open_time=int(k["t"]),
        close_time=int(k["T"]),
        close=float(k["c"]),
        closed=True,
    )


class KlineFeed:
    """One durable subscription to closed klines for ``symbol``/``interval``.

    Reconnects after ``attempt * base_delay`` seconds on any disconnect, at most
    ``max_attempts`` times in a row. A successful connect resets the counter;
    running out of attempts leaves the feed ``FAILED``.
    """

    def __init__(
        self,
        symbol: str,
        interval: str,
        on_candle: CandleHandler,
        base_url: str = BINANCE_WS_URL,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        on_failure: Optional[FailureHandler] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.symbol = symbol.lower()
        self.interval = interval
        self.url = f"{base_url.rstrip('/')}/{self.symbol}@kline_{interval}"
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self._on_candle = on_candle
        self._on_failure = on_failure
        self._connect = connect

        self.state = FeedState.DISCONNECTED
        self.reconnect_attempts = 0
        self.connect_count = 0
        self.scheduled_delays: List[float] = []

        self._stopped = False
        self._stop_event = asyncio.Event()
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"kline-feed-{self.symbol}")
        return self._task

    async def stop(self) -> None:
        """Close the stream for good. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        self.state = FeedState.STOPPED
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (websockets.exceptions.WebSocketException, OSError) as exc:
                logger.debug("[%s] error while closing stream: %s", self.symbol, exc)
        logger.info("[%s] Feed stopped", self.symbol)

    async def _run(self) -> None:
        while not self._stopped:
            await self._connect_once()
            if self._stopped:
                break
            self.state = FeedState.DISCONNECTED
            if self.reconnect_attempts >= self.max_attempts:
                await self._fail()
                break
            self.reconnect_attempts += 1
            delay = self.reconnect_attempts * self.base_delay
            self.scheduled_delays.append(delay)
            logger.info("[%s] Reconnecting in %.1fs (attempt %d/%d)",
                        self.symbol, delay, self.reconnect_attempts, self.max_attempts)
            await self._backoff(delay)

    async def _connect_once(self) -> None:
        self.state = FeedState.CONNECTING
        self.connect_count += 1
        logger.info("[%s] Connecting to %s", self.symbol, self.url)
        try:
            async with self._connect(self.url, ping_interval=20) as ws:
                if self._stopped:
                    return
                self._ws = ws
                self.state = FeedState.CONNECTED
                self.reconnect_attempts = 0
                self.scheduled_delays.clear()
                logger.info("[%s] Stream open", self.symbol)
                async for message in ws:
                    if self._stopped:
                        break
                    await self._dispatch(message)
            if not self._stopped:
                logger.warning("[%s] Stream closed by server", self.symbol)
        except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as exc:
            if not self._stopped:
                logger.warning("[%s] Stream error: %s", self.symbol, exc)
        finally:
            self._ws = None

    async def _dispatch(self, message: Any) -> None:
        try:
            candle = parse_kline_message(message)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("[%s] Skipping malformed frame: %s", self.symbol, exc)
            return
        if candle is None:
            return
        try:
            await self._on_candle(candle)
        except Exception:
            # A bad candle must not take the subscription down with it
            logger.exception("[%s] Candle handler failed", self.symbol)

    async def _backoff(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _fail(self) -> None:
        self.state = FeedState.FAILED
        err = FeedError(
            f"{self.symbol}: gave up after {self.max_attempts} reconnect attempts"
        )
        logger.error("[%s] Max reconnection attempts reached; re-register to resume", self.symbol)
        if self._on_failure is not None:
            result = self._on_failure(err)
            if asyncio.iscoroutine(result):
                await result
