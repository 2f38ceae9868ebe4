"""Side effects of a crossing: webhook alerts or direct market orders.

Exactly one executor is active per process, chosen by ``execution_mode``:

- ``WebhookExecutor`` hands an alert to the relay. Delivery is a notification,
  not the source of truth, so it never fails the crossing.
- ``DirectOrderExecutor`` sizes and submits a market order. Any failure raises
  ``ExecutionError`` and the monitor keeps its previous position.
"""

import logging
import time
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional, Union

import httpx

from errors import ExchangeError, ExecutionError, InsufficientBalanceError
from exchange import BinanceClient
from models import Alert, Crossing, OrderResult

logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]


def floor_to_step(quantity: Number, step: Number) -> Decimal:
    """Round ``quantity`` down to a multiple of ``step``; never rounds up."""
    q = Decimal(str(quantity))
    s = Decimal(str(step))
    if q <= 0:
        return Decimal("0")
    if s <= 0:
        return q
    steps = (q / s).to_integral_value(rounding=ROUND_DOWN)
    return (steps * s).quantize(s, rounding=ROUND_DOWN)


# --- Webhook mode ---

class WebhookNotifier:
    """Posts comment tokens to the alert relay.

    ``fmt="text"`` sends the comment as a ``text/plain`` body; ``fmt="form"``
    sends it as the form field ``code``.
    """

    def __init__(self, http: httpx.AsyncClient, url: str, fmt: str = "text"):
        self.http = http
        self.url = url
        self.fmt = fmt

    async def deliver(self, comment: str) -> bool:
        try:
            if self.fmt == "form":
                resp = await self.http.post(self.url, data={"code": comment})
            else:
                resp = await self.http.post(
                    self.url, content=comment.encode(), headers={"Content-Type": "text/plain"}
                )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Webhook delivery to %s failed: %s", self.url, exc)
            return False
        logger.info("Webhook sent: status=%s body=%s", resp.status_code, resp.text[:200])
        return True

    async def send(self, alert: Alert) -> bool:
        logger.info("[%s] %s @ %s", alert.symbol, alert.side, alert.price)
        return await self.deliver(alert.comment)


class WebhookExecutor:
    mode = "webhook"

    def __init__(self, notifier: WebhookNotifier):
        self.notifier = notifier

    async def execute(self, crossing: Crossing) -> Optional[OrderResult]:
        alert = Alert(
            symbol=crossing.symbol.upper(),
            side="ENTER-LONG" if crossing.signal == "ENTER" else "EXIT-LONG",
            price=crossing.price,
            time=crossing.time,
            comment=crossing.comment,
        )
        await self.notifier.send(alert)
        return None


# --- Direct-order mode ---

class BalanceCache:
    """Free balances shared by every monitor in the process."""

    def __init__(self, client: BinanceClient):
        self.client = client
        self.balances: Dict[str, Decimal] = {}
        self.updated_at: Optional[float] = None

    async def refresh(self) -> Dict[str, Decimal]:
        self.balances = await self.client.get_balances()
        self.updated_at = time.time()
        return self.balances

    def free(self, asset: str) -> Decimal:
        return self.balances.get(asset, Decimal("0"))


class DirectOrderExecutor:
    mode = "order"

    def __init__(self, client: BinanceClient, balances: BalanceCache,
                 min_quote_balance: float = 5.0):
        self.client = client
        self.balances = balances
        self.min_quote_balance = Decimal(str(min_quote_balance))

    async def execute(self, crossing: Crossing) -> Optional[OrderResult]:
        try:
            if crossing.signal == "ENTER":
                return await self.buy(crossing)
            return await self.sell(crossing)
        except ExecutionError:
            raise
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise ExchangeError(f"{crossing.symbol}: unusable exchange response: {exc}") from exc

    async def buy(self, crossing: Crossing) -> OrderResult:
        symbol = crossing.symbol.upper()
        info = await self.client.get_symbol_info(symbol)
        await self.balances.refresh()
        available = self.balances.free(info.quote_asset)
        if available < self.min_quote_balance:
            raise InsufficientBalanceError(
                f"{symbol}: {info.quote_asset} balance {available} below minimum {self.min_quote_balance}"
            )

        spend = available
        if crossing.buy_limit is not None:
            spend = min(spend, Decimal(str(crossing.buy_limit)))
        price = Decimal(str(crossing.price))
        if price <= 0:
            raise ExecutionError(f"{symbol}: invalid reference price {crossing.price}")
        quantity = floor_to_step(spend / price, info.step_size)
        if quantity <= 0 or quantity < info.min_qty:
            raise InsufficientBalanceError(
                f"{symbol}: spend {spend} {info.quote_asset} too small for step {info.step_size}"
            )

        logger.info("[%s] BUY %s (spend %s %s @ %s)", symbol, quantity, spend, info.quote_asset, price)
        order = await self.client.market_buy(symbol, quantity)
        result = self._to_result(symbol, "BUY", quantity, order)
        await self._refresh_after(symbol)
        return result

    async def sell(self, crossing: Crossing) -> OrderResult:
        symbol = crossing.symbol.upper()
        info = await self.client.get_symbol_info(symbol)
        await self.balances.refresh()
        held = self.balances.free(info.base_asset)
        quantity = floor_to_step(held, info.step_size)
        if quantity <= 0 or quantity < info.min_qty:
            raise ExecutionError(f"{symbol}: no sellable {info.base_asset} balance ({held})")

        logger.info("[%s] SELL %s %s", symbol, quantity, info.base_asset)
        order = await self.client.market_sell(symbol, quantity)
        result = self._to_result(symbol, "SELL", quantity, order)
        await self._refresh_after(symbol)
        return result

    def _to_result(self, symbol: str, side: str, quantity: Decimal, order: dict) -> OrderResult:
        if not isinstance(order, dict) or "orderId" not in order:
            raise ExchangeError(f"{symbol}: order response without orderId", payload=order)
        status = str(order.get("status", "UNKNOWN"))
        if status != "FILLED":
            logger.warning("[%s] %s order %s not fully filled (status=%s)",
                           symbol, side, order["orderId"], status)
        return OrderResult(
            symbol=symbol, side=side, quantity=quantity,
            order_id=order["orderId"], status=status, raw=order,
        )

    async def _refresh_after(self, symbol: str) -> None:
        # The order is already placed; a stale cache must not undo the position flip
        try:
            await self.balances.refresh()
        except ExecutionError as exc:
            logger.warning("[%s] Balance refresh after order failed: %s", symbol, exc)
