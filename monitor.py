# monitor.py
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Optional, Tuple

from errors import ExchangeError, ExecutionError, FeedError, SeedingError
from exchange import BinanceClient
from feed import KlineFeed
from indicators import RsiOscillator, Signal, evaluate_crossing
from models import (
    Candle,
    Crossing,
    MonitorState,
    RsiConfig,
    RsiConfigModel,
    SignalEvent,
    SymbolSummary,
)
from store import SymbolStatusStore

logger = logging.getLogger(__name__)

DEFAULT_SEED_MARGIN = 10

# feed_factory(symbol, interval, on_candle, on_failure) -> KlineFeed
FeedFactory = Callable[..., KlineFeed]


def default_comment(kind: str, symbol: str, interval: str) -> str:
    return f"{kind}-LONG_BINANCE_{symbol.upper()}_BOT-NAME_{interval.upper()}"


class SymbolMonitor:
    """Owns one symbol's RSI pipeline: history, oscillator, feed and position.

    Lifecycle is ``CREATED -> SEEDING -> LIVE -> STOPPED``; a stopped monitor
    is never restarted.
    """

    def __init__(
        self,
        symbol: str,
        interval: str,
        exchange: BinanceClient,
        executor: Any,
        rsi_config: RsiConfig,
        in_long: bool = False,
        buy_limit: Optional[float] = None,
        entry_message: Optional[str] = None,
        exit_message: Optional[str] = None,
        seed_margin: int = DEFAULT_SEED_MARGIN,
        feed_factory: Optional[FeedFactory] = None,
        store: Optional[SymbolStatusStore] = None,
    ):
        self.symbol = symbol.lower()
        self.interval = interval
        self.exchange = exchange
        self.executor = executor
        self.rsi_config = rsi_config
        self.in_long = in_long
        self.buy_limit = buy_limit
        self.entry_message = entry_message or default_comment("ENTER", self.symbol, interval)
        self.exit_message = exit_message or default_comment("EXIT", self.symbol, interval)
        self.seed_margin = seed_margin
        self.store = store
        self._feed_factory = feed_factory or KlineFeed

        self.state = MonitorState.CREATED
        self.window: Deque[float] = deque(maxlen=rsi_config.period + seed_margin)
        self.oscillator = RsiOscillator(rsi_config.period)
        self.previous_value: Optional[float] = None
        self.current_value: Optional[float] = None
        self.last_signal: Optional[Tuple[int, str]] = None
        self.feed: Optional[KlineFeed] = None
        self._reconfigure_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Seed from history, then go live. Raises SeedingError on failure."""
        if self.state is not MonitorState.CREATED:
            raise RuntimeError(f"{self.symbol}: monitor already started")
        self.state = MonitorState.SEEDING
        try:
            seeded = await self._load_history(self.rsi_config.period)
        except SeedingError:
            self.state = MonitorState.STOPPED
            raise
        if self.state is MonitorState.STOPPED:
            return
        self._apply_seed(*seeded)
        logger.info("[%s] Seeded closes=%d, RSI(%d)=%.2f", self.symbol, len(self.window),
                    self.rsi_config.period, self.current_value)

        self.state = MonitorState.LIVE
        self.feed = self._feed_factory(self.symbol, self.interval, self.on_candle,
                                       on_failure=self._on_feed_failure)
        self.feed.start()

    async def stop(self) -> bool:
        """Release the feed and drop all buffers. Safe to call more than once."""
        if self.state is MonitorState.STOPPED:
            return True
        self.state = MonitorState.STOPPED
        feed, self.feed = self.feed, None
        if feed is not None:
            await feed.stop()
        self.window.clear()
        self.oscillator.reset()
        self.previous_value = self.current_value = None
        logger.info("[%s] Stopped", self.symbol)
        return True

    @property
    def live(self) -> bool:
        return self.state is MonitorState.LIVE

    # ------------------------------------------------------------------
    # seeding
    # ------------------------------------------------------------------

    async def _load_history(self, period: int):
        needed = period + self.seed_margin
        try:
            closes = await self.exchange.get_closed_closes(self.symbol, self.interval, needed + 1)
        except ExchangeError as exc:
            raise SeedingError(f"{self.symbol}: historical fetch failed: {exc}") from exc
        if len(closes) < needed:
            raise SeedingError(
                f"{self.symbol}: need {needed} closed candles to seed RSI({period}), got {len(closes)}"
            )
        closes = closes[-needed:]

        oscillator = RsiOscillator(period)
        previous = current = None
        for close in closes:
            previous, current = current, oscillator.next(close)
        if current is None:
            raise SeedingError(f"{self.symbol}: RSI({period}) did not initialise")
        return deque(closes, maxlen=needed), oscillator, previous, current

    def _apply_seed(self, window, oscillator, previous, current) -> None:
        self.window = window
        self.oscillator = oscillator
        self.previous_value = previous
        self.current_value = current

    # ------------------------------------------------------------------
    # hot path
    # ------------------------------------------------------------------

    async def on_candle(self, candle: Candle) -> None:
        if not self.live:
            return
        oscillator = self.oscillator
        config = self.rsi_config
        self.window.append(candle.close)
        value = oscillator.next(candle.close)
        previous = self.current_value

        try:
            signal = evaluate_crossing(previous, value, config, self.in_long)
            if signal is not Signal.NONE:
                await self._handle(signal, candle, previous, value)
                # ENTER flips first; EXIT is then checked on the same pair
                if signal is Signal.ENTER and self.in_long and self.live:
                    if evaluate_crossing(previous, value, config, True) is Signal.EXIT:
                        await self._handle(Signal.EXIT, candle, previous, value)
        finally:
            # readings shift after every sample, unless stopped or re-seeded meanwhile
            if self.live and self.oscillator is oscillator:
                self.previous_value, self.current_value = previous, value
        logger.debug("[%s] close=%s RSI=%.2f position=%s", self.symbol, candle.close,
                     value if value is not None else float("nan"),
                     "LONG" if self.in_long else "FLAT")

    async def _handle(self, signal: Signal, candle: Candle,
                      previous: Optional[float], value: Optional[float]) -> None:
        entering = signal is Signal.ENTER
        crossing = Crossing(
            signal=signal.value,
            symbol=self.symbol,
            price=candle.close,
            time=candle.open_time,
            comment=self.entry_message if entering else self.exit_message,
            buy_limit=self.buy_limit,
        )
        logger.info("[%s] %s LONG: RSI %.2f -> %.2f (close=%s)", self.symbol,
                    "ENTER" if entering else "EXIT", previous, value, candle.close)
        try:
            await self.executor.execute(crossing)
        except ExecutionError as exc:
            logger.error("[%s] %s not executed, position unchanged: %s",
                         self.symbol, signal.value, exc)
            return
        except Exception:
            logger.exception("[%s] %s failed unexpectedly, position unchanged",
                             self.symbol, signal.value)
            return

        if not self.live:
            logger.info("[%s] %s completed after stop; state left untouched", self.symbol, signal.value)
            return
        self.in_long = entering
        self.last_signal = (candle.open_time, signal.value)
        await self._persist("BUY" if entering else "SELL")

    async def _on_feed_failure(self, exc: FeedError) -> None:
        logger.error("[%s] Feed failed: %s", self.symbol, exc)

    async def _persist(self, status: str) -> None:
        if self.store is not None:
            await self.store.record(self.symbol, status, self.in_long)

    # ------------------------------------------------------------------
    # reconfiguration
    # ------------------------------------------------------------------

    async def reconfigure(self, period: Optional[int] = None, entry: Optional[float] = None,
                          exit: Optional[float] = None) -> RsiConfig:
        """Patch thresholds in place; a new period re-seeds the oscillator.

        Calls are serialised, so each patch merges onto the result of the
        previous one.
        """
        async with self._reconfigure_lock:
            new_config = self.rsi_config.merged(period=period, entry=entry, exit=exit)
            if new_config.period != self.rsi_config.period:
                seeded = await self._load_history(new_config.period)
                if self.state is MonitorState.STOPPED:
                    return self.rsi_config
                self._apply_seed(*seeded)
                logger.info("[%s] Re-seeded for RSI(%d)=%.2f", self.symbol, new_config.period,
                            self.current_value)
            self.rsi_config = new_config
            logger.info("[%s] RSI config now %s", self.symbol, new_config)
            return new_config

    async def set_status(self, in_long: Optional[bool] = None,
                         buy_limit: Optional[float] = None) -> None:
        if buy_limit is not None:
            self.buy_limit = buy_limit
        if in_long is not None and in_long != self.in_long:
            self.in_long = in_long
            await self._persist("LONG" if in_long else "FLAT")

    def summary(self) -> SymbolSummary:
        return SymbolSummary(
            symbol=self.symbol,
            interval=self.interval,
            in_long=self.in_long,
            buy_limit=self.buy_limit,
            rsi_config=RsiConfigModel(**self.rsi_config.to_dict()),
            state=self.state,
            feed_state=self.feed.state if self.feed is not None else None,
            rsi=self.current_value,
            entry_message=self.entry_message,
            exit_message=self.exit_message,
            last_signal=(
                SignalEvent(time=self.last_signal[0], signal=self.last_signal[1])
                if self.last_signal is not None else None
            ),
        )
