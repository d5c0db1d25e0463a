"""
FastAPI server — event intake and read API over the scoring engine.

POST /events scores one categorized event (routed through the per-user
worker pool). The GET routes expose profiles, history, confidence,
anomalies for review, profile analytics and engine status. The engine and
worker pool are app-scoped and started/stopped by the lifespan handler.
"""

from __future__ import annotations

import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from backend_credit.agent_worker.worker import EventWorkerPool, WorkerConfig
from backend_credit.analysis_engine.anomaly import AnomalyDetector
from backend_credit.analysis_engine.models import CategorizedEvent, Dimension
from backend_credit.analysis_engine.scorer import ScoreCalculator
from backend_credit.analysis_engine.trend import TrendAnalyzer
from backend_credit.config.settings import EngineSettings, get_settings
from backend_credit.core.exceptions import (
    EngineNotRunningError,
    EventValidationError,
    StoreError,
    StoreTimeoutError,
)
from backend_credit.credit_logging import get_logger
from backend_credit.database.store import get_store
from backend_credit.scheduler.models import UpdatePriority
from backend_credit.scoring_engine.service import ScoringEngineService

logger = get_logger(__name__)

EVENT_RESULT_TIMEOUT_SEC = 30.0


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------

class EventRequest(BaseModel):
    """POST /events body: one pre-categorized on-chain event."""

    model_config = ConfigDict(allow_inf_nan=False)

    tx_hash: str = Field(..., min_length=1, description="Transaction hash")
    user_address: str = Field(..., min_length=1, description="User (wallet) address")
    impacts: dict[str, float] = Field(..., description="Dimension key -> impact weight in [0, 1]")
    risk_score: float = Field(..., ge=0, le=1, description="Event risk in [0, 1]")
    data_weight: float = Field(1.0, ge=0, description="Evidence weight of the event")
    protocol: str | None = Field(None, max_length=128, description="Protocol name, e.g. 'Aave V2'")
    timestamp: float | None = Field(None, ge=0, description="Unix seconds; defaults to receipt time")
    value_eth: float = Field(0.0, ge=0, description="Transaction value in native units")
    priority: UpdatePriority = Field(UpdatePriority.NORMAL, description="Scheduling priority hint")


class DimensionResponse(BaseModel):
    score: int = Field(..., ge=0, le=1000)
    confidence: int = Field(..., ge=0, le=100)
    data_points: int = Field(..., ge=0)
    trend: str
    last_calculated: float
    trend_strength: float
    volatility: float
    momentum: float
    projected_score: int


class ProfileResponse(BaseModel):
    """GET /profile/{address} response: all five dimensions."""

    user_address: str
    dimensions: dict[str, DimensionResponse]
    last_updated: float


class HistoryEntryResponse(BaseModel):
    timestamp: float
    dimension: str
    score: int
    confidence: int
    trigger: str


class ConfidenceResponse(BaseModel):
    """GET /confidence/{address}/{dimension} response."""

    user_address: str
    dimension: str
    confidence: int = Field(..., ge=0, le=100)
    interval: dict[str, int]
    sufficiency: str
    factors: dict[str, int]


class AnomalyResponse(BaseModel):
    type: str
    severity: str
    description: str
    affected_transactions: list[str]
    timestamp: float
    user_address: str


class ScoreUpdateResponse(BaseModel):
    """POST /events response."""

    user_address: str
    updated_dimensions: list[str]
    old_scores: dict[str, int]
    new_scores: dict[str, int]
    anomalies: list[AnomalyResponse]
    latency_sec: float
    confidence: int
    priority: str
    sla_class: str | None
    update_id: str | None
    updates: list[dict[str, Any]] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------

def get_engine(request: Request) -> ScoringEngineService:
    return request.app.state.engine


def get_pool(request: Request) -> EventWorkerPool:
    return request.app.state.pool


def _parse_dimension(raw: str) -> Dimension:
    try:
        return Dimension.parse(raw)
    except EventValidationError as e:
        raise HTTPException(status_code=404, detail=f"Unknown dimension: {raw}") from e


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------

def build_engine(settings: EngineSettings) -> ScoringEngineService:
    """Engine wired from settings: store backend, weights, thresholds, SLAs."""
    return ScoringEngineService(
        config=settings.engine_config(),
        store=get_store(settings.db_path, timeout_sec=settings.store_timeout_sec),
        calculator=ScoreCalculator(settings.calculator_config()),
        trend=TrendAnalyzer(settings.trend_config()),
        anomaly=AnomalyDetector(settings.anomaly_config()),
        scheduler_config=settings.scheduler_config(),
    )


def create_app(
    engine_factory: Callable[[], ScoringEngineService] | None = None,
    worker_config: WorkerConfig | None = None,
    event_timeout_sec: float = EVENT_RESULT_TIMEOUT_SEC,
) -> FastAPI:
    """
    Build the API app. engine_factory defaults to an engine configured from
    the environment (see backend_credit.config.get_settings). event_timeout_sec
    bounds how long POST /events waits for its worker; past it the client gets 504.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the engine and worker pool; drain in-flight events on shutdown."""
        if engine_factory is not None:
            engine = engine_factory()
            pool_config = worker_config or WorkerConfig()
        else:
            settings = get_settings()
            engine = build_engine(settings)
            pool_config = worker_config or WorkerConfig(worker_count=settings.worker_count)
        pool = EventWorkerPool(engine, pool_config)
        engine.start()
        pool.start()
        app.state.engine = engine
        app.state.pool = pool
        logger.info("api_engine_started", workers=pool.worker_count)

        yield

        pool.shutdown(wait=True)
        engine.close()
        logger.info("api_engine_stopped")

    app = FastAPI(
        title="Credit Scoring Engine API",
        description="Real-time multi-dimensional credit scoring from categorized on-chain events.",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(EventValidationError)
    def validation_error_handler(request: Request, exc: EventValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.to_dict()})

    @app.exception_handler(StoreError)
    def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        status = 504 if isinstance(exc, StoreTimeoutError) else 503
        logger.error("api_store_error", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=status, content={"detail": exc.to_dict()})

    @app.exception_handler(EngineNotRunningError)
    def not_running_handler(request: Request, exc: EngineNotRunningError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": exc.to_dict()})

    @app.exception_handler(HTTPException)
    def http_exception_handler(request: Any, exc: HTTPException) -> JSONResponse:
        """Consistent JSON error response for HTTPException."""
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.post("/events", response_model=ScoreUpdateResponse)
    def post_event(body: EventRequest, pool: EventWorkerPool = Depends(get_pool)) -> dict[str, Any]:
        """Score one event. Validation errors return 422 with nothing applied."""
        event = CategorizedEvent(
            tx_hash=body.tx_hash,
            user_address=body.user_address,
            impacts=body.impacts,
            risk_score=body.risk_score,
            data_weight=body.data_weight,
            protocol=body.protocol,
            timestamp=body.timestamp if body.timestamp is not None else time.time(),
            value_eth=body.value_eth,
        )
        future = pool.submit(body.user_address, event, body.priority)
        try:
            result = future.result(timeout=event_timeout_sec)
        except FutureTimeoutError as e:
            logger.error("api_event_timeout", tx_hash=body.tx_hash, timeout_sec=event_timeout_sec)
            raise HTTPException(
                status_code=504,
                detail={
                    "code": "event_timeout",
                    "message": f"Event not processed within {event_timeout_sec:.2f}s",
                    "details": {"tx_hash": body.tx_hash},
                },
            ) from e
        return result.to_dict()

    @app.get("/profile/{address}", response_model=ProfileResponse)
    def get_profile(address: str, engine: ScoringEngineService = Depends(get_engine)) -> dict[str, Any]:
        """Current profile; unknown users get the neutral default profile."""
        address = address.strip()
        if not address:
            raise HTTPException(status_code=400, detail="address must be non-empty")
        return engine.get_profile(address).to_dict()

    @app.get("/history/{address}", response_model=list[HistoryEntryResponse])
    def get_history(
        address: str,
        dimension: str | None = Query(None, description="Dimension key filter"),
        since: float | None = Query(None, ge=0, description="Unix seconds, inclusive"),
        until: float | None = Query(None, ge=0, description="Unix seconds, inclusive"),
        engine: ScoringEngineService = Depends(get_engine),
    ) -> list[dict[str, Any]]:
        dim = _parse_dimension(dimension) if dimension else None
        return [h.to_dict() for h in engine.get_history(address, dim, since, until)]

    @app.get("/confidence/{address}/{dimension}", response_model=ConfidenceResponse)
    def get_confidence(
        address: str,
        dimension: str,
        engine: ScoringEngineService = Depends(get_engine),
    ) -> dict[str, Any]:
        result = engine.get_confidence_details(address, _parse_dimension(dimension))
        return {"user_address": address, **result.to_dict()}

    @app.get("/anomalies", response_model=list[AnomalyResponse])
    def get_anomalies(
        window_sec: float = Query(24 * 3600, gt=0, description="Look-back window in seconds"),
        engine: ScoringEngineService = Depends(get_engine),
    ) -> list[dict[str, Any]]:
        """Recent anomaly reports for manual review."""
        return [a.to_dict() for a in engine.get_anomalies(window_sec)]

    @app.get("/analytics/{address}")
    def get_analytics(address: str, engine: ScoringEngineService = Depends(get_engine)) -> dict[str, Any]:
        return engine.get_profile_analytics(address)

    @app.get("/status")
    def get_status(request: Request, engine: ScoringEngineService = Depends(get_engine)) -> dict[str, Any]:
        """Engine, scheduler and worker counters."""
        return {**engine.get_status(), "workers": request.app.state.pool.state()}

    @app.get("/health")
    def health() -> dict[str, str]:
        """Liveness check: API is up."""
        return {"status": "ok"}

    return app


app = create_app()
