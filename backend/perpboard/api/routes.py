"""REST API routes.

Services are wired onto ``app.state`` by the lifespan in ``perpboard.main``
(tests attach their own).
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from perpboard import __version__
from perpboard.clients.okx_ws_ticker import TickerFeed
from perpboard.core.models import CompositeRecord
from perpboard.services import IndicatorScheduler, UnifiedStore, ViewPage, ViewQuery

logger = logging.getLogger(__name__)

router = APIRouter()


# Response models
class PassSummary(BaseModel):
    """Outcome of the last indicator pass."""

    total: int
    refreshed: int
    skipped_fresh: int
    failed: int
    aborted: bool
    started_at: float
    finished_at: float


class SystemStatus(BaseModel):
    """System status response."""

    status: str
    version: str
    feed_state: str
    tickers: int
    messages_received: int
    last_message_at: Optional[float] = None
    scheduler_status: str
    scheduler_progress: str
    last_pass: Optional[PassSummary] = None
    priority_n: int
    priority_criterion: str


class MoversResponse(BaseModel):
    window: str
    gainers: list[CompositeRecord]
    losers: list[CompositeRecord]


class InvalidateRequest(BaseModel):
    """Instruments to force stale; omit to invalidate everything."""

    inst_ids: Optional[list[str]] = None


class InvalidateResponse(BaseModel):
    invalidated: int
    pass_requested: bool


class PriorityRequest(BaseModel):
    top_n: int = Field(ge=1, le=1000)


class PriorityResponse(BaseModel):
    top_n: int
    instruments: list[str]


def get_store(request: Request) -> UnifiedStore:
    return request.app.state.store


def get_scheduler(request: Request) -> IndicatorScheduler:
    return request.app.state.scheduler


def get_feed(request: Request) -> TickerFeed:
    return request.app.state.feed


def build_status(feed: TickerFeed, scheduler: IndicatorScheduler, store: UnifiedStore) -> SystemStatus:
    """Status snapshot shared by the REST endpoint and the websocket stream."""
    last = scheduler.last_result
    last_pass = None
    if last is not None:
        last_pass = PassSummary(
            total=last.total,
            refreshed=len(last.refreshed),
            skipped_fresh=len(last.skipped_fresh),
            failed=len(last.failed),
            aborted=last.aborted,
            started_at=last.started_at,
            finished_at=last.finished_at,
        )

    return SystemStatus(
        status="running",
        version=__version__,
        feed_state=feed.state.value,
        tickers=len(feed.tickers),
        messages_received=feed.messages_received,
        last_message_at=feed.last_message_at,
        scheduler_status=scheduler.status.value,
        scheduler_progress=scheduler.progress,
        last_pass=last_pass,
        priority_n=store.priority_n,
        priority_criterion=store.priority_criterion,
    )


@router.get("/status", response_model=SystemStatus)
async def get_status(request: Request):
    """Get feed, scheduler and priority status."""
    return build_status(get_feed(request), get_scheduler(request), get_store(request))


@router.get("/instruments", response_model=ViewPage)
async def list_instruments(
    request: Request,
    search: Optional[str] = Query(None, description="Substring of the instrument ID"),
    favorites: Optional[list[str]] = Query(None, description="Restrict to these instruments"),
    rank_tier: Optional[Literal["1-20", "21-50", "51-100", "101-500", ">500"]] = Query(None),
    rsi14: Optional[str] = Query(None, description='e.g. "30~70", "<30", ">70"'),
    rsi7: Optional[str] = Query(None, description='e.g. "30~70", "<30", ">70"'),
    funding: Optional[Literal["positive", "negative"]] = Query(None),
    sort_by: str = Query("volume_quote_24h"),
    descending: bool = Query(True),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Composite records with filters, sorting and pagination."""
    query = ViewQuery(
        search=search,
        favorites=favorites,
        rank_tier=rank_tier,
        rsi14=rsi14,
        rsi7=rsi7,
        funding=funding,
        sort_by=sort_by,
        descending=descending,
        limit=limit,
        offset=offset,
    )
    try:
        return await get_store(request).view(query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/instruments/{inst_id}", response_model=CompositeRecord)
async def get_instrument(request: Request, inst_id: str):
    """One composite record."""
    record = await get_store(request).get(inst_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown instrument: {inst_id}")
    return record


@router.get("/movers", response_model=MoversResponse)
async def get_movers(
    request: Request,
    window: Literal["1h", "4h", "24h", "7d"] = Query("24h"),
    limit: int = Query(5, ge=1, le=50),
):
    """Top gainers and losers over a window."""
    movers = await get_store(request).top_movers(window, limit)
    return MoversResponse(window=window, **movers)


@router.get("/tiers")
async def get_tiers(request: Request):
    """Per market-cap tier statistics."""
    return await get_store(request).tier_stats()


@router.get("/stats/rsi")
async def get_rsi_stats(request: Request, top: int = Query(100, ge=1, le=1000)):
    """RSI averages over the top instruments by market cap, plus quick-filter counts."""
    store = get_store(request)
    averages = await store.rsi_averages(top)
    counts = await store.quick_filter_counts()
    return {**averages, **counts}


@router.post("/indicators/invalidate", response_model=InvalidateResponse)
async def invalidate_indicators(request: Request, body: InvalidateRequest):
    """Force cached indicators stale, then ask for a refresh pass."""
    removed = await get_store(request).invalidate(body.inst_ids)
    requested = get_scheduler(request).request_pass()
    logger.info(f"Invalidated {removed} entries via API (pass requested: {requested})")
    return InvalidateResponse(invalidated=removed, pass_requested=requested)


@router.put("/priority", response_model=PriorityResponse)
async def set_priority(request: Request, body: PriorityRequest):
    """Change how many instruments each indicator pass covers."""
    store = get_store(request)
    store.set_priority_n(body.top_n)
    return PriorityResponse(top_n=store.priority_n, instruments=store.priority_list())
