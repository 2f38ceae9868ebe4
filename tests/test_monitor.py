"""SymbolMonitor lifecycle, crossing handling and reconfiguration."""

import asyncio
import math

import pytest

from conftest import FakeExchange, FakeFeed, FakeNotifier, RecordingExecutor, candle, seesaw
from errors import SeedingError
from executor import WebhookExecutor
from indicators import RsiOscillator, calculate_rsi
from models import MonitorState, RsiConfig
from monitor import SymbolMonitor
from store import SymbolStatusStore

CFG = RsiConfig(period=7, entry=65.0, exit=20.0)


def make_monitor(exchange=None, executor=None, config=CFG, **kwargs):
    return SymbolMonitor(
        "ETHUSDT", "5m",
        exchange=exchange or FakeExchange(),
        executor=executor or RecordingExecutor(),
        rsi_config=config,
        feed_factory=FakeFeed,
        **kwargs,
    )


def first_crossing(seed, stream, period, test):
    """Index of the first streamed close whose (previous, current) RSI pair satisfies ``test``."""
    ref = RsiOscillator(period)
    ref.seed(seed)
    for i, price in enumerate(stream):
        previous = ref.value
        current = ref.next(price)
        if test(previous, current):
            return i
    raise AssertionError("stream never crosses")


async def drive(monitor, prices, t0=0):
    for i, p in enumerate(prices):
        await monitor.on_candle(candle(p, t=t0 + i))


@pytest.mark.asyncio
async def test_start_seeds_then_goes_live():
    ex = FakeExchange(closes=seesaw(40))
    monitor = make_monitor(ex)
    await monitor.start()

    assert monitor.state is MonitorState.LIVE
    assert ex.kline_calls == [("ethusdt", "5m", 7 + 10 + 1)]
    assert len(monitor.window) == 17
    assert math.isclose(monitor.current_value, calculate_rsi(seesaw(40)[-17:], 7))
    assert monitor.previous_value is not None
    assert len(FakeFeed.instances) == 1 and FakeFeed.instances[0].started == 1


@pytest.mark.asyncio
async def test_seeding_failure_is_fatal():
    monitor = make_monitor(FakeExchange(fail=True))
    with pytest.raises(SeedingError):
        await monitor.start()
    assert monitor.state is MonitorState.STOPPED
    assert FakeFeed.instances == []


@pytest.mark.asyncio
async def test_seeding_requires_full_margin():
    monitor = make_monitor(FakeExchange(closes=seesaw(16)))
    with pytest.raises(SeedingError):
        await monitor.start()


@pytest.mark.asyncio
async def test_enter_then_exit_scenario():
    seed = seesaw(40)
    ex = FakeExchange(closes=seed)
    executor = RecordingExecutor()
    monitor = make_monitor(ex, executor)
    await monitor.start()

    rising = [101.0 + i for i in range(1, 15)]
    enter_at = first_crossing(seed[-17:], rising, 7, lambda p, c: p <= 65.0 < c)
    await drive(monitor, rising[:enter_at])
    assert monitor.in_long is False and executor.crossings == []

    await drive(monitor, [rising[enter_at]], t0=enter_at)
    assert monitor.in_long is True
    assert [c.signal for c in executor.crossings] == ["ENTER"]
    assert executor.crossings[0].comment == "ENTER-LONG_BINANCE_ETHUSDT_BOT-NAME_5M"

    await drive(monitor, rising[enter_at + 1:], t0=100)
    assert len(executor.crossings) == 1

    falling = [rising[-1] - 3.0 * i for i in range(1, 20)]
    exit_at = first_crossing(seed[-17:] + rising, falling, 7, lambda p, c: p >= 20.0 > c)
    await drive(monitor, falling[: exit_at + 1], t0=200)
    assert monitor.in_long is False
    assert [c.signal for c in executor.crossings] == ["ENTER", "EXIT"]
    assert monitor.last_signal == (200 + exit_at, "EXIT")
    summary = monitor.summary().model_dump(by_alias=True)
    assert summary["lastSignal"] == {"signal": "EXIT", "time": 200 + exit_at}


@pytest.mark.asyncio
async def test_failed_execution_keeps_position_and_stays_live():
    executor = RecordingExecutor(fail=True)
    monitor = make_monitor(executor=executor)
    await monitor.start()

    await drive(monitor, [101.0 + i for i in range(1, 15)])
    assert executor.crossings and executor.crossings[0].signal == "ENTER"
    assert monitor.in_long is False
    assert monitor.state is MonitorState.LIVE
    # readings still advance
    assert monitor.current_value == monitor.oscillator.value


@pytest.mark.asyncio
async def test_unexpected_executor_error_fires_once_and_advances_readings():
    class BrokenExecutor(RecordingExecutor):
        async def execute(self, crossing):
            self.crossings.append(crossing)
            raise RuntimeError("client has been closed")

    executor = BrokenExecutor()
    monitor = make_monitor(executor=executor)
    await monitor.start()

    await drive(monitor, [101.0 + i for i in range(1, 15)])
    assert [c.signal for c in executor.crossings] == ["ENTER"]
    assert monitor.in_long is False
    assert monitor.state is MonitorState.LIVE
    assert monitor.current_value == monitor.oscillator.value


@pytest.mark.asyncio
async def test_webhook_mode_flips_even_when_delivery_fails():
    notifier = FakeNotifier(ok=False)
    monitor = make_monitor(executor=WebhookExecutor(notifier), entry_message="ENTER-LONG_CUSTOM")
    await monitor.start()

    await drive(monitor, [101.0 + i for i in range(1, 15)])
    assert monitor.in_long is True
    assert notifier.comments == ["ENTER-LONG_CUSTOM"]
    assert notifier.alerts[0].side == "ENTER-LONG"
    assert notifier.alerts[0].symbol == "ETHUSDT"


@pytest.mark.asyncio
async def test_in_long_override_skips_entry():
    executor = RecordingExecutor()
    monitor = make_monitor(executor=executor, in_long=True)
    await monitor.start()

    await drive(monitor, [101.0 + i for i in range(1, 15)])
    assert executor.crossings == []
    await drive(monitor, [114.0 - 3.0 * i for i in range(1, 20)], t0=50)
    assert [c.signal for c in executor.crossings] == ["EXIT"]
    assert monitor.in_long is False


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_final():
    monitor = make_monitor()
    await monitor.start()
    feed = monitor.feed

    assert await monitor.stop() is True
    assert await monitor.stop() is True
    assert feed.stop_calls == 1
    assert monitor.state is MonitorState.STOPPED
    assert monitor.feed is None
    assert len(monitor.window) == 0

    await monitor.on_candle(candle(500.0))
    assert monitor.current_value is None


@pytest.mark.asyncio
async def test_order_completing_after_stop_does_not_mutate():
    release = asyncio.Event()

    class SlowExecutor(RecordingExecutor):
        async def execute(self, crossing):
            self.crossings.append(crossing)
            await release.wait()

    executor = SlowExecutor()
    monitor = make_monitor(executor=executor)
    await monitor.start()

    rising = [101.0 + i for i in range(1, 15)]
    enter_at = first_crossing(seesaw(40)[-17:], rising, 7, lambda p, c: p <= 65.0 < c)
    await drive(monitor, rising[:enter_at])
    pending = asyncio.create_task(monitor.on_candle(candle(rising[enter_at], t=99)))
    while not executor.crossings:
        await asyncio.sleep(0)

    await monitor.stop()
    release.set()
    await pending

    assert monitor.in_long is False
    assert monitor.current_value is None


@pytest.mark.asyncio
async def test_threshold_change_does_not_reseed():
    ex = FakeExchange()
    monitor = make_monitor(ex)
    await monitor.start()

    config = await monitor.reconfigure(entry=70.0)
    assert config == RsiConfig(period=7, entry=70.0, exit=20.0)
    assert monitor.rsi_config.entry == 70.0
    assert len(ex.kline_calls) == 1
    # the shared default object is untouched
    assert CFG.entry == 65.0


@pytest.mark.asyncio
async def test_period_change_reseeds():
    ex = FakeExchange(closes=seesaw(60))
    monitor = make_monitor(ex)
    await monitor.start()

    await monitor.reconfigure(period=14)
    assert ex.kline_calls[-1] == ("ethusdt", "5m", 14 + 10 + 1)
    assert monitor.oscillator.period == 14
    assert monitor.window.maxlen == 24
    assert math.isclose(monitor.current_value, calculate_rsi(seesaw(60)[-24:], 14))


@pytest.mark.asyncio
async def test_threshold_patch_during_reseed_is_kept():
    gate = asyncio.Event()

    class GatedExchange(FakeExchange):
        async def get_closed_closes(self, symbol, interval, limit, now_ms=None):
            # initial seeding passes straight through, re-seeds wait
            if self.kline_calls:
                await gate.wait()
            return await super().get_closed_closes(symbol, interval, limit, now_ms)

    monitor = make_monitor(GatedExchange(closes=seesaw(60)))
    await monitor.start()

    reseed = asyncio.create_task(monitor.reconfigure(period=14))
    await asyncio.sleep(0)
    thresholds = asyncio.create_task(monitor.reconfigure(entry=70.0))
    await asyncio.sleep(0)
    assert not thresholds.done()

    gate.set()
    assert await reseed == RsiConfig(period=14, entry=65.0, exit=20.0)
    assert await thresholds == RsiConfig(period=14, entry=70.0, exit=20.0)
    assert monitor.rsi_config == RsiConfig(period=14, entry=70.0, exit=20.0)
    assert monitor.oscillator.period == 14


@pytest.mark.asyncio
async def test_failed_reseed_keeps_old_config():
    ex = FakeExchange()
    monitor = make_monitor(ex)
    await monitor.start()
    oscillator = monitor.oscillator

    ex.fail = True
    with pytest.raises(SeedingError):
        await monitor.reconfigure(period=14, entry=50.0)
    assert monitor.rsi_config == CFG
    assert monitor.oscillator is oscillator
    assert monitor.state is MonitorState.LIVE


@pytest.mark.asyncio
async def test_status_changes_are_persisted(tmp_path):
    store = SymbolStatusStore(str(tmp_path / "status.db"))
    await store.init()
    monitor = make_monitor(store=store)
    await monitor.start()

    await monitor.set_status(in_long=True, buy_limit=50.0)
    assert monitor.buy_limit == 50.0
    row = await store.get_status("ethusdt")
    assert row["in_long"] is True and row["status"] == "LONG"

    await drive(monitor, [114.0 - 3.0 * i for i in range(1, 20)])
    row = await store.get_status("ethusdt")
    assert row["status"] == "SELL" and row["in_long"] is False
    assert row["sell_time"] is not None


@pytest.mark.asyncio
async def test_summary_shape():
    monitor = make_monitor(buy_limit=25.0)
    await monitor.start()
    data = monitor.summary().model_dump(by_alias=True, mode="json")
    assert data["symbol"] == "ethusdt"
    assert data["interval"] == "5m"
    assert data["inLong"] is False
    assert data["buyLimit"] == 25.0
    assert data["rsiConfig"] == {"period": 7, "entry": 65.0, "exit": 20.0}
    assert data["state"] == "LIVE"
    assert data["feedState"] == "CONNECTED"
    assert data["entryMessage"] == "ENTER-LONG_BINANCE_ETHUSDT_BOT-NAME_5M"
    assert data["exitMessage"] == "EXIT-LONG_BINANCE_ETHUSDT_BOT-NAME_5M"
    assert data["lastSignal"] is None
