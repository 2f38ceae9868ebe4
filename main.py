# main.py
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Settings, configure_logging
from errors import (
    ConflictError,
    ExecutionError,
    MonitorError,
    SymbolNotFoundError,
)
from exchange import BinanceClient
from executor import BalanceCache, DirectOrderExecutor, WebhookExecutor, WebhookNotifier
from feed import KlineFeed
from models import (
    MessageResponse,
    OrderRequest,
    RsiConfig,
    RsiConfigModel,
    RsiConfigPatch,
    StatusUpdateRequest,
    SymbolCreateRequest,
    SymbolSummary,
    WebhookRequest,
)
from monitor import SymbolMonitor
from registry import MonitorRegistry
from store import SymbolStatusStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    registry: MonitorRegistry
    exchange: BinanceClient
    notifier: WebhookNotifier
    store: Optional[SymbolStatusStore] = None
    http: Optional[httpx.AsyncClient] = None


# --- SERVICE WIRING ---

def build_registry(settings: Settings, exchange: BinanceClient, notifier: WebhookNotifier,
                   store: Optional[SymbolStatusStore] = None) -> MonitorRegistry:
    if settings.execution_mode == "order":
        executor: Any = DirectOrderExecutor(exchange, BalanceCache(exchange),
                                            min_quote_balance=settings.min_quote_balance)
    else:
        executor = WebhookExecutor(notifier)

    feed_factory = partial(
        KlineFeed,
        base_url=settings.binance_ws_url,
        base_delay=settings.reconnect_base_delay,
        max_attempts=settings.max_reconnect_attempts,
    )
    monitor_factory = partial(
        SymbolMonitor,
        exchange=exchange,
        executor=executor,
        seed_margin=settings.seed_margin,
        feed_factory=feed_factory,
        store=store,
    )
    defaults = RsiConfig(period=settings.rsi_period, entry=settings.rsi_entry, exit=settings.rsi_exit)
    return MonitorRegistry(monitor_factory, defaults)


async def build_services(settings: Settings) -> Services:
    http = httpx.AsyncClient(timeout=settings.http_timeout)
    exchange = BinanceClient(
        http,
        api_key=settings.binance_api_key,
        api_secret=settings.binance_api_secret,
        base_url=settings.binance_rest_url,
        recv_window_ms=settings.recv_window_ms,
    )
    notifier = WebhookNotifier(http, settings.webhook_url, settings.webhook_format)
    store = None
    if settings.store_path:
        store = SymbolStatusStore(settings.store_path)
        await store.init()
    registry = build_registry(settings, exchange, notifier, store)
    return Services(registry=registry, exchange=exchange, notifier=notifier, store=store, http=http)


async def register_default_symbols(services: Services, symbols: List[Dict[str, Any]]) -> None:
    """Start the configured symbols; a failure is logged and the rest still start."""
    for entry in symbols:
        try:
            req = SymbolCreateRequest.model_validate(entry)
        except ValueError as exc:
            logger.error("Skipping invalid default symbol %r: %s", entry, exc)
            continue
        in_long = req.in_long
        if "inLong" not in entry and "in_long" not in entry and services.store is not None:
            saved = await services.store.get_status(req.symbol)
            if saved is not None:
                in_long = saved["in_long"]
                logger.info("[%s] Restored inLong=%s from store", req.symbol, in_long)
        try:
            await services.registry.register(
                req.symbol, req.interval, in_long=in_long, buy_limit=req.buy_limit,
                rsi_config=req.rsi_config.model_dump() if req.rsi_config else None,
                entry_message=req.entry_message, exit_message=req.exit_message,
            )
        except MonitorError as exc:
            logger.error("[%s] Default symbol failed to start: %s", req.symbol, exc)


# --- APPLICATION ---

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        owned = app.state.services is None
        if owned:
            app.state.services = await build_services(settings)
        await register_default_symbols(app.state.services, settings.default_symbols)
        try:
            yield
        finally:
            await app.state.services.registry.stop_all()
            if owned and app.state.services.http is not None:
                await app.state.services.http.aclose()
                app.state.services = None

    app = FastAPI(title="RSI Signal Monitor", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(MonitorError)
    async def _monitor_error(request: Request, exc: MonitorError):
        if isinstance(exc, ConflictError):
            code = status.HTTP_409_CONFLICT
        elif isinstance(exc, SymbolNotFoundError):
            code = status.HTTP_404_NOT_FOUND
        elif isinstance(exc, ExecutionError):
            code = status.HTTP_502_BAD_GATEWAY
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(status_code=code, content={"error": str(exc)})

    register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def register_routes(app: FastAPI) -> None:

    @app.post("/symbols", status_code=status.HTTP_201_CREATED,
              response_model=MessageResponse, response_model_exclude_none=True, tags=["Symbols"])
    async def add_symbol(body: SymbolCreateRequest, services: Services = Depends(get_services)):
        """Seed and start a monitor; returns once it is live (or seeding failed)."""
        logger.info("Received request to add symbol: %s", body.symbol)
        monitor = await services.registry.register(
            body.symbol,
            body.interval,
            in_long=body.in_long,
            buy_limit=body.buy_limit,
            rsi_config=body.rsi_config.model_dump() if body.rsi_config else None,
            entry_message=body.entry_message,
            exit_message=body.exit_message,
        )
        return MessageResponse(message="Symbol added", symbol=monitor.symbol, in_long=monitor.in_long)

    @app.delete("/symbols/{symbol}", response_model=MessageResponse,
                response_model_exclude_none=True, tags=["Symbols"])
    async def remove_symbol(symbol: str, services: Services = Depends(get_services)):
        if not await services.registry.unregister(symbol):
            raise SymbolNotFoundError(f"Symbol {symbol.lower()} not found")
        return MessageResponse(message="Symbol removed", symbol=symbol.lower())

    @app.get("/symbols", response_model=List[SymbolSummary], tags=["Symbols"])
    async def list_symbols(services: Services = Depends(get_services)):
        return [m.summary() for m in services.registry.list()]

    @app.get("/symbols/{symbol}", response_model=SymbolSummary, tags=["Symbols"])
    async def get_symbol(symbol: str, services: Services = Depends(get_services)):
        return services.registry.require(symbol).summary()

    @app.patch("/symbols/{symbol}/status", response_model=SymbolSummary, tags=["Symbols"])
    async def update_status(symbol: str, body: StatusUpdateRequest,
                            services: Services = Depends(get_services)):
        monitor = await services.registry.update_status(
            symbol, in_long=body.in_long, buy_limit=body.buy_limit
        )
        return monitor.summary()

    @app.patch("/symbols/{symbol}/rsi-config", response_model=MessageResponse,
               response_model_exclude_none=True, tags=["RSI"])
    async def update_symbol_rsi_config(symbol: str, body: RsiConfigPatch,
                                       services: Services = Depends(get_services)):
        config = await services.registry.update_rsi_config(
            symbol, period=body.period, entry=body.entry, exit=body.exit
        )
        return MessageResponse(
            message="RSI configuration updated successfully",
            symbol=symbol.lower(),
            rsi_config=RsiConfigModel(**config.to_dict()),
        )

    @app.get("/rsi-config", response_model=RsiConfigModel, tags=["RSI"])
    async def get_rsi_config(services: Services = Depends(get_services)):
        return RsiConfigModel(**services.registry.defaults.to_dict())

    @app.patch("/rsi-config", response_model=MessageResponse,
               response_model_exclude_none=True, tags=["RSI"])
    async def update_rsi_config(body: RsiConfigPatch, services: Services = Depends(get_services)):
        config = services.registry.update_defaults(period=body.period, entry=body.entry, exit=body.exit)
        return MessageResponse(message="RSI config updated",
                               rsi_config=RsiConfigModel(**config.to_dict()))

    @app.post("/webhook/{symbol}", tags=["Manual"])
    async def trigger_webhook(symbol: str, body: WebhookRequest,
                              services: Services = Depends(get_services)):
        """Push an arbitrary payload's ``comment`` through the alert relay."""
        monitor = services.registry.require(symbol)
        comment = body.payload.get("comment")
        if not isinstance(comment, str) or not comment:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                                content={"error": "payload.comment must be a non-empty string"})
        if not await services.notifier.deliver(comment):
            return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY,
                                content={"error": "Webhook delivery failed", "symbol": monitor.symbol})
        return {"message": "Webhook triggered", "symbol": monitor.symbol, "payload": body.payload}

    @app.post("/order", tags=["Manual"])
    async def place_order(body: OrderRequest, services: Services = Depends(get_services)):
        """Place an order directly, bypassing the signal pipeline."""
        response = await services.exchange.place_order(body.symbol, body.side, body.quantity, body.price)
        logger.info("Manual %s order for %s: id=%s", body.side, body.symbol, response.get("orderId"))
        return response


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
