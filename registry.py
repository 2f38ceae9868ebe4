# registry.py
import logging
from typing import Callable, Dict, List, Optional, Set

from errors import ConflictError, SeedingError, SymbolNotFoundError
from models import RsiConfig
from monitor import SymbolMonitor

logger = logging.getLogger(__name__)

# factory(symbol=..., interval=..., rsi_config=..., in_long=..., buy_limit=...,
#         entry_message=..., exit_message=...) -> SymbolMonitor
MonitorFactory = Callable[..., SymbolMonitor]


class MonitorRegistry:
    """Symbol -> live monitor, at most one per symbol.

    A symbol whose monitor is still seeding counts as registered, so two
    concurrent registrations can never both reach LIVE.
    """

    def __init__(self, monitor_factory: MonitorFactory, defaults: Optional[RsiConfig] = None):
        self._factory = monitor_factory
        self._monitors: Dict[str, SymbolMonitor] = {}
        self._pending: Set[str] = set()
        self.defaults = defaults or RsiConfig()

    def __contains__(self, symbol: str) -> bool:
        return symbol.lower() in self._monitors

    def __len__(self) -> int:
        return len(self._monitors)

    async def register(
        self,
        symbol: str,
        interval: str,
        in_long: bool = False,
        buy_limit: Optional[float] = None,
        rsi_config: Optional[Dict[str, Optional[float]]] = None,
        entry_message: Optional[str] = None,
        exit_message: Optional[str] = None,
    ) -> SymbolMonitor:
        key = symbol.lower()
        if key in self._monitors or key in self._pending:
            raise ConflictError(f"Symbol {key} already exists")

        self._pending.add(key)
        try:
            config = self.defaults.merged(**(rsi_config or {}))
            monitor = self._factory(
                symbol=key,
                interval=interval,
                rsi_config=config,
                in_long=in_long,
                buy_limit=buy_limit,
                entry_message=entry_message,
                exit_message=exit_message,
            )
            try:
                await monitor.start()
            except Exception:
                await monitor.stop()
                raise
            if not monitor.live:
                raise SeedingError(f"{key}: monitor stopped while seeding")
            self._monitors[key] = monitor
        finally:
            self._pending.discard(key)

        logger.info("[%s] Registered (%s, RSI %s, inLong=%s)", key, interval, config, in_long)
        return monitor

    async def unregister(self, symbol: str) -> bool:
        monitor = self._monitors.pop(symbol.lower(), None)
        if monitor is None:
            return False
        await monitor.stop()
        logger.info("[%s] Unregistered", monitor.symbol)
        return True

    def get(self, symbol: str) -> Optional[SymbolMonitor]:
        return self._monitors.get(symbol.lower())

    def require(self, symbol: str) -> SymbolMonitor:
        monitor = self.get(symbol)
        if monitor is None:
            raise SymbolNotFoundError(f"Symbol {symbol.lower()} not found")
        return monitor

    def list(self) -> List[SymbolMonitor]:
        return list(self._monitors.values())

    async def update_status(self, symbol: str, in_long: Optional[bool] = None,
                            buy_limit: Optional[float] = None) -> SymbolMonitor:
        monitor = self.require(symbol)
        await monitor.set_status(in_long=in_long, buy_limit=buy_limit)
        return monitor

    async def update_rsi_config(self, symbol: str, period: Optional[int] = None,
                                entry: Optional[float] = None,
                                exit: Optional[float] = None) -> RsiConfig:
        monitor = self.require(symbol)
        return await monitor.reconfigure(period=period, entry=entry, exit=exit)

    def update_defaults(self, period: Optional[int] = None, entry: Optional[float] = None,
                        exit: Optional[float] = None) -> RsiConfig:
        # New object: monitors already hold their own copies
        self.defaults = self.defaults.merged(period=period, entry=entry, exit=exit)
        logger.info("Default RSI config now %s", self.defaults)
        return self.defaults

    async def stop_all(self) -> None:
        for key in list(self._monitors):
            await self.unregister(key)
