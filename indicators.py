"""RSI oscillator and threshold-crossing detection.

The monitor keeps one ``RsiOscillator`` per symbol and feeds it one close at a
time, so every update is O(1):

1) The first ``period`` deltas are averaged with a simple mean.
2) Every later delta updates the averages via Wilder's smoothing:
   avg_gain = (prev_avg_gain*(period-1) + gain) / period
   avg_loss = (prev_avg_loss*(period-1) + loss) / period

``calculate_rsi`` walks a whole price sequence with the same arithmetic and is
kept for one-off computations and cross-checks.
"""

from enum import Enum
from typing import Iterable, Optional

from models import RsiConfig


class Signal(str, Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"
    NONE = "NONE"


def _to_rsi(avg_gain: float, avg_loss: float) -> float:
    # No losses in the window (flat included) reads as fully overbought
    if avg_loss == 0.0:
        return 100.0
    rs = avg_gain / avg_loss
    rsi = 100.0 - 100.0 / (1.0 + rs)
    return min(max(rsi, 0.0), 100.0)


class RsiOscillator:
    """Incremental Wilder RSI.

    ``next`` returns None until ``period`` deltas (``period + 1`` prices) have
    been observed. Seeding is just streaming from an empty state, so a seeded
    oscillator and a streamed one agree exactly on the same input.
    """

    def __init__(self, period: int = 14):
        if period <= 0:
            raise ValueError("period must be > 0")
        self.period = period
        self.reset()

    def reset(self) -> None:
        self._last_price: Optional[float] = None
        self._deltas_seen = 0
        self._gain_sum = 0.0
        self._loss_sum = 0.0
        self.avg_gain: Optional[float] = None
        self.avg_loss: Optional[float] = None
        self.value: Optional[float] = None

    @property
    def ready(self) -> bool:
        return self.value is not None

    def seed(self, closes: Iterable[float]) -> Optional[float]:
        self.reset()
        for price in closes:
            self.next(price)
        return self.value

    def next(self, price: float) -> Optional[float]:
        price = float(price)
        last, self._last_price = self._last_price, price
        if last is None:
            return None

        delta = price - last
        gain = max(delta, 0.0)
        loss = max(-delta, 0.0)
        self._deltas_seen += 1

        if self.avg_gain is None:
            self._gain_sum += gain
            self._loss_sum += loss
            if self._deltas_seen < self.period:
                return None
            self.avg_gain = self._gain_sum / self.period
            self.avg_loss = self._loss_sum / self.period
        else:
            n = self.period
            self.avg_gain = (self.avg_gain * (n - 1) + gain) / n
            self.avg_loss = (self.avg_loss * (n - 1) + loss) / n

        self.value = _to_rsi(self.avg_gain, self.avg_loss)
        return self.value


def calculate_rsi(prices: Iterable[float], period: int = 14) -> Optional[float]:
    """Compute the RSI of a full price sequence; None if fewer than ``period+1`` prices."""
    return RsiOscillator(period).seed(prices)


def evaluate_crossing(previous: Optional[float], current: Optional[float],
                      config: RsiConfig, in_long: bool) -> Signal:
    """Classify one pair of consecutive RSI readings.

    ENTER is checked before EXIT. Both cannot hold for the same pair: that
    would need ``exit <= previous <= entry`` and ``entry < current < exit``.
    """
    if previous is None or current is None:
        return Signal.NONE
    if not in_long and previous <= config.entry and current > config.entry:
        return Signal.ENTER
    if in_long and previous >= config.exit and current < config.exit:
        return Signal.EXIT
    return Signal.NONE
