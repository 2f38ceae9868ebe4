# tests/conftest.py
# Shared fakes: no test touches the network.

from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from errors import ExchangeError, ExecutionError
from models import Candle, FeedState, SymbolInfo


def seesaw(n: int, low: float = 100.0, high: float = 101.0) -> List[float]:
    """Alternating closes; RSI settles near 50."""
    return [high if i % 2 else low for i in range(n)]


def candle(close: float, t: int = 0, symbol: str = "ethusdt") -> Candle:
    return Candle(symbol=symbol, open_time=t, close_time=t + 299_999, close=close, closed=True)


class FakeExchange:
    def __init__(self, closes: Optional[List[float]] = None, fail: bool = False):
        self.closes = list(closes if closes is not None else seesaw(40))
        self.fail = fail
        self.kline_calls: List[tuple] = []
        self.balances: Dict[str, Decimal] = {"USDT": Decimal("100"), "ETH": Decimal("0")}
        self.step_size = Decimal("0.001")
        self.orders: List[dict] = []
        self.order_status = "FILLED"
        self.order_error: Optional[Exception] = None
        self.balance_calls = 0
        # get_balances raises once this many calls have succeeded
        self.balances_fail_after: Optional[int] = None

    async def get_closed_closes(self, symbol, interval, limit, now_ms=None):
        self.kline_calls.append((symbol, interval, limit))
        if self.fail:
            raise ExchangeError("klines unavailable", status_code=503)
        return self.closes[-limit:]

    async def get_symbol_info(self, symbol):
        return SymbolInfo(symbol=symbol.upper(), base_asset=symbol.upper()[:-4],
                          quote_asset="USDT", step_size=self.step_size)

    async def get_balances(self):
        if self.balances_fail_after is not None and self.balance_calls >= self.balances_fail_after:
            raise ExchangeError("account endpoint unavailable", status_code=503)
        self.balance_calls += 1
        return dict(self.balances)

    async def place_order(self, symbol, side, quantity, price=None):
        if self.order_error is not None:
            raise self.order_error
        order = {"symbol": symbol, "side": side, "origQty": str(quantity),
                 "orderId": len(self.orders) + 1, "status": self.order_status}
        if price is not None:
            order["price"] = str(price)
        self.orders.append(order)
        return order

    async def market_buy(self, symbol, quantity):
        return await self.place_order(symbol, "BUY", quantity)

    async def market_sell(self, symbol, quantity):
        return await self.place_order(symbol, "SELL", quantity)


class FakeFeed:
    instances: List["FakeFeed"] = []

    def __init__(self, symbol, interval, on_candle, on_failure=None, **kwargs):
        self.symbol = symbol
        self.interval = interval
        self.on_candle = on_candle
        self.on_failure = on_failure
        self.state = FeedState.DISCONNECTED
        self.started = 0
        self.stop_calls = 0
        FakeFeed.instances.append(self)

    def start(self):
        self.started += 1
        self.state = FeedState.CONNECTED

    async def stop(self):
        self.stop_calls += 1
        self.state = FeedState.STOPPED


class RecordingExecutor:
    """Records crossings; optionally fails them like a rejected order."""

    mode = "test"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.crossings = []

    async def execute(self, crossing):
        self.crossings.append(crossing)
        if self.fail:
            raise ExecutionError("order rejected")
        return None


class FakeNotifier:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.comments: List[str] = []
        self.alerts = []

    async def deliver(self, comment):
        self.comments.append(comment)
        return self.ok

    async def send(self, alert):
        self.alerts.append(alert)
        return await self.deliver(alert.comment)


@pytest.fixture(autouse=True)
def _reset_fake_feeds():
    FakeFeed.instances.clear()
    yield
    FakeFeed.instances.clear()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def executor():
    return RecordingExecutor()
