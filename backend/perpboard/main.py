"""Main application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager

# Configure logging FIRST, before any other imports
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)

# Reduce noise from third-party libraries (must be set before importing them)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)
logging.getLogger("picows").setLevel(logging.WARNING)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

# Try to use uvloop for better performance (Unix only)
try:
    import uvloop
    uvloop.install()
    _UVLOOP_ENABLED = True
except ImportError:
    _UVLOOP_ENABLED = False

from perpboard import __version__
from perpboard.api import build_status, hub, router, websocket_endpoint
from perpboard.clients import CoinGeckoClient, OkxRestClient, TickerFeed
from perpboard.config import get_settings
from perpboard.services import FundamentalsService, IndicatorScheduler, TickerPoller, UnifiedStore
from perpboard.storage import PersistentIndicatorCache, open_store

logger = logging.getLogger(__name__)


async def _periodic_broadcast(app: FastAPI, interval: float):
    """Push composite records and status to websocket clients."""
    while True:
        try:
            await asyncio.sleep(interval)
            if hub.subscribers("records"):
                records = await app.state.store.records()
                await hub.publish_records([r.model_dump() for r in records])
            if hub.subscribers("status"):
                status = build_status(app.state.feed, app.state.scheduler, app.state.store)
                await hub.publish_status(status.model_dump())
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Broadcast error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()

    logger.info("Starting Perp Board market-data engine...")
    logger.info(f"Event loop: {'uvloop' if _UVLOOP_ENABLED else 'asyncio'}")

    store = await open_store(settings.redis_url)
    cache = PersistentIndicatorCache(store)

    okx = OkxRestClient(
        base_url=settings.okx_rest_base,
        max_attempts=settings.fetch_max_attempts,
        backoff_base=settings.backoff_base,
        backoff_cap=settings.backoff_cap,
    )
    coingecko = CoinGeckoClient(base_url=settings.coingecko_base)

    feed = TickerFeed(
        url=settings.okx_ws_public,
        inst_type=settings.inst_type,
        reconnect_delay=settings.reconnect_delay,
    )
    feed.on_state_change(lambda state: logger.info(f"Ticker feed: {state.value}"))
    poller = TickerPoller(
        okx, feed, inst_type=settings.inst_type, interval=settings.ticker_poll_interval
    )

    fundamentals = FundamentalsService(
        okx,
        coingecko,
        quote=settings.quote_currency,
        interval=settings.fundamentals_interval,
    )
    unified = UnifiedStore(
        feed,
        cache,
        fundamentals,
        quote=settings.quote_currency,
        priority_n=settings.priority_n,
        priority_criterion=settings.priority_criterion,
    )
    scheduler = IndicatorScheduler(
        okx,
        cache,
        ttl=settings.indicator_ttl,
        initial_delay=settings.scheduler_initial_delay,
        interval=settings.scheduler_interval,
        item_delay=settings.item_delay,
        failure_cooldown=settings.failure_cooldown,
        request_delay=settings.request_delay,
        daily_limit=settings.daily_candle_limit,
        weekly_limit=settings.weekly_candle_limit,
        hourly_limit=settings.hourly_candle_limit,
    )

    app.state.feed = feed
    app.state.store = unified
    app.state.scheduler = scheduler
    app.state.fundamentals = fundamentals
    app.state.poller = poller

    broadcast_task: asyncio.Task | None = None
    try:
        # REST snapshot first so records exist before the push feed opens
        seeded = await poller.poll()
        logger.info(f"Seeded {seeded} tickers from REST")
        await feed.start()
        await poller.start()
        await fundamentals.start()
        scheduler.start(unified.priority_list)
        broadcast_task = asyncio.create_task(_periodic_broadcast(app, settings.stream_interval))
        logger.info("Services started")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        await scheduler.stop()
        await fundamentals.stop()
        await poller.stop()
        await feed.stop()
        await okx.close()
        await coingecko.close()
        await store.close()
        raise

    yield

    # Shutdown
    logger.info("Shutting down...")

    if broadcast_task:
        broadcast_task.cancel()
        try:
            await broadcast_task
        except asyncio.CancelledError:
            pass

    # Scheduler first: no cache writes after this
    await scheduler.stop()
    await fundamentals.stop()
    await poller.stop()
    await feed.stop()

    await okx.close()
    await coingecko.close()
    await store.close()

    logger.info("Shutdown complete")


# Create FastAPI app with orjson for faster JSON serialization
app = FastAPI(
    title="Perp Board",
    description="OKX perpetual swap market data and indicators",
    version=__version__,
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include REST routes
app.include_router(router, prefix="/api")

# WebSocket endpoint
app.websocket("/ws")(websocket_endpoint)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Perp Board",
        "version": __version__,
        "docs": "/docs",
        "event_loop": "uvloop" if _UVLOOP_ENABLED else "asyncio",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


def main():
    """Run the application."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "perpboard.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
