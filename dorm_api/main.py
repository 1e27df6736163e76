"""Dormitory Electricity Dashboard API."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dorm_collector import aggregation
from dorm_collector.config import settings as collector_settings
from dorm_collector.errors import StoreError, UnknownEntityError, ValidationError
from dorm_collector.main import Collector, build_collector
from dorm_collector.models import (
    ComparisonEntry,
    DailyConsumption,
    EntitySummary,
    HourlyBucket,
    MonitoredEntity,
    MonthlyStats,
    RunResult,
    Snapshot,
    SummaryStats,
)

from .config import settings
from .models import Envelope, HealthStatus, RegisterDormitoryRequest, ScrapeRequest

logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str) -> JSONResponse:
    """Failure envelope; never carries internals."""
    return JSONResponse(
        status_code=status_code,
        content=Envelope(success=False, message=message).model_dump(exclude_none=True),
    )


def get_collector(request: Request) -> Collector:
    return request.app.state.collector


def require_entity(collector: Collector, entity_id: str) -> MonitoredEntity:
    entity = collector.registry.get(entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail="Dormitory not found")
    return entity


router = APIRouter(prefix="/api")


# =============================================================================
# Health
# =============================================================================

@router.get("/health", response_model=Envelope[HealthStatus], tags=["Info"])
async def health(request: Request):
    """Check API health status."""
    collector = get_collector(request)
    return Envelope(
        message="Service is running",
        data=HealthStatus(
            version=settings.api_version,
            dormitories=len(collector.registry),
            collector_state=collector.state.value,
            scheduler_running=collector.running,
            active_runs=collector.active_runs,
        ),
    )


# =============================================================================
# Dormitory Endpoints
# =============================================================================

@router.get("/dormitories", response_model=Envelope[List[EntitySummary]], tags=["Dormitories"])
async def list_dormitories(request: Request):
    """Get list of all monitored dormitories."""
    collector = get_collector(request)
    return Envelope(data=[e.public() for e in collector.registry.list()])


@router.post("/dormitories", response_model=Envelope[RunResult], tags=["Dormitories"])
async def register_dormitory(request: Request, body: RegisterDormitoryRequest):
    """Register a dormitory and collect its first reading immediately.

    The response is sent after the first collection finishes. A failed first
    collection does not undo the registration; the run result reports it.
    """
    collector = get_collector(request)
    run = await collector.register_entity(body.to_entity())
    first = run.results[0] if run.results else None
    if first is not None and first.success:
        message = "Dormitory added"
    else:
        reason = first.message if first is not None else "no result"
        message = f"Dormitory added, first collection failed: {reason}"
    return Envelope(data=run, message=message)


@router.get("/dormitories/{dormitory_id}/latest", response_model=Envelope[Snapshot], tags=["Dormitories"])
async def get_latest(request: Request, dormitory_id: str):
    """Get the most recent reading for a dormitory."""
    collector = get_collector(request)
    require_entity(collector, dormitory_id)
    snapshot = collector.store.latest(dormitory_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No data recorded for this dormitory yet")
    return Envelope(data=snapshot)


@router.get("/dormitories/{dormitory_id}/history", response_model=Envelope[List[Snapshot]], tags=["Dormitories"])
async def get_history(
    request: Request,
    dormitory_id: str,
    days: int = Query(default=30, ge=1, le=366, description="Window in days"),
):
    """Get readings for the last N days, oldest first."""
    collector = get_collector(request)
    require_entity(collector, dormitory_id)
    return Envelope(data=collector.store.history(dormitory_id, days))


@router.get("/dormitories/{dormitory_id}/daily", response_model=Envelope[List[DailyConsumption]], tags=["Analysis"])
async def get_daily(
    request: Request,
    dormitory_id: str,
    days: int = Query(default=30, ge=1, le=366, description="Window in days"),
):
    """Get daily consumption and cost for the last N days."""
    collector = get_collector(request)
    require_entity(collector, dormitory_id)
    history = collector.store.history(dormitory_id, days)
    return Envelope(data=aggregation.daily_consumption(history))


@router.get("/dormitories/{dormitory_id}/hourly", response_model=Envelope[List[HourlyBucket]], tags=["Analysis"])
async def get_hourly(
    request: Request,
    dormitory_id: str,
    days: int = Query(default=7, ge=1, le=366, description="Window in days"),
):
    """Get the hour-of-day balance/consumption profile."""
    collector = get_collector(request)
    require_entity(collector, dormitory_id)
    history = collector.store.history(dormitory_id, days)
    return Envelope(data=aggregation.hourly_profile(history))


@router.get("/dormitories/{dormitory_id}/monthly", response_model=Envelope[MonthlyStats], tags=["Analysis"])
async def get_monthly(request: Request, dormitory_id: str):
    """Get rolling 30-day statistics, including rank among all dormitories."""
    collector = get_collector(request)
    require_entity(collector, dormitory_id)
    history = collector.store.history(dormitory_id, aggregation.MONTHLY_WINDOW_DAYS)
    ranking = aggregation.comparison(collector.registry.list(), collector.store)
    return Envelope(data=aggregation.monthly_stats(dormitory_id, history, ranking))


# =============================================================================
# Cross-Dormitory Endpoints
# =============================================================================

@router.get("/comparison", response_model=Envelope[List[ComparisonEntry]], tags=["Analysis"])
async def get_comparison(request: Request):
    """Compare dormitories, sorted by current balance (rank = position)."""
    collector = get_collector(request)
    return Envelope(data=aggregation.comparison(collector.registry.list(), collector.store))


@router.get("/stats", response_model=Envelope[SummaryStats], tags=["Analysis"])
async def get_stats(request: Request):
    """Get summary statistics across all dormitories."""
    collector = get_collector(request)
    stats = aggregation.summary_stats(
        collector.registry.list(),
        collector.store,
        low_balance_threshold=collector_settings.low_balance_threshold,
    )
    return Envelope(data=stats)


# =============================================================================
# Collection Endpoints
# =============================================================================

@router.post("/scrape", response_model=Envelope[RunResult], tags=["Collection"])
async def trigger_scrape(request: Request, body: Optional[ScrapeRequest] = Body(default=None)):
    """Trigger a collection run for one dormitory or for all of them."""
    collector = get_collector(request)
    dormitory_id = body.dormitory_id if body else None
    if dormitory_id:
        try:
            run = await collector.run_entity(dormitory_id, trigger="manual")
        except UnknownEntityError:
            raise HTTPException(status_code=404, detail="Dormitory not found")
    else:
        run = await collector.run_all(trigger="manual")
    return Envelope(data=run, message=f"{run.succeeded}/{len(run.results)} dormitories collected")


@router.get("/runs/last", response_model=Envelope[RunResult], tags=["Collection"])
async def get_last_run(request: Request):
    """Get the summary of the most recent collection run."""
    collector = get_collector(request)
    if collector.last_run is None:
        return Envelope(message="No collection run yet")
    return Envelope(data=collector.last_run)


# =============================================================================
# App Factory
# =============================================================================

def create_app(collector: Optional[Collector] = None, scheduler_enabled: Optional[bool] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        collector: Pre-built collector (tests); built from settings on startup otherwise
        scheduler_enabled: Run the periodic loop in-process (default from settings)
    """
    if scheduler_enabled is None:
        scheduler_enabled = settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.api_title} v{settings.api_version}")
        if getattr(app.state, "collector", None) is None:
            app.state.collector = build_collector()
        collector_task = None
        if scheduler_enabled:
            collector_task = asyncio.create_task(app.state.collector.run_forever())
        try:
            yield
        finally:
            logger.info("Shutting down API")
            await app.state.collector.stop()
            if collector_task is not None:
                collector_task.cancel()
                try:
                    await collector_task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="REST API for dormitory electricity balance data",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.collector = collector

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        message = "Missing or invalid parameters"
        if fields:
            message += ": " + ", ".join(fields)
        return error_response(400, message)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return error_response(400, str(exc))

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Store error on {request.url.path}: {exc}")
        return error_response(500, "Stored data could not be read")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return error_response(500, "Internal server error")

    app.include_router(router)
    return app


app = create_app()


def run():
    """Serve the API with uvicorn."""
    import uvicorn

    from dorm_collector.main import configure_logging

    configure_logging()
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
