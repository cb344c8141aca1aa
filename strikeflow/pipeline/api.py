"""
Strikeflow REST API

Provides HTTP endpoints for:
1. Signal ingestion (webhook, batch, queued)
2. Market data push (context, positioning, prices)
3. Position inspection and manual close
4. Exit alerts, failures, decisions and analytics
5. Health and configuration

Usage:
    uvicorn strikeflow.pipeline.api:app --host 0.0.0.0 --port 8010
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from strikeflow.analytics.performance import performance_summary
from strikeflow.errors import (
    BatchAbortedError,
    ExecutionError,
    InvalidCloseError,
    PositionClaimError,
    StoreUnavailableError,
)
from strikeflow.market_data.provider import InMemoryMarketDataProvider
from strikeflow.market_data.schemas import GexSignal, MarketContext, Positioning, Regime, Trend
from strikeflow.position_manager.schemas import PositionStatus
from strikeflow.runtime import TradingRuntime, build_runtime
from strikeflow.signals.schemas import PipelineStage, utcnow

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================================================
# Pydantic Models for API
# ============================================================================

class BatchRequest(BaseModel):
    """Batch of raw signal payloads"""
    signals: List[Dict[str, Any]] = Field(..., description="Raw webhook payloads")
    deadline_seconds: Optional[float] = Field(None, gt=0.0, description="Abandon items not started by then")
    max_workers: Optional[int] = Field(None, ge=1, le=32, description="Parallel workers")


class MarketContextRequest(BaseModel):
    """Base market context push"""
    vix: float = Field(..., gt=0.0, description="Current VIX level")
    trend: Trend = Field(Trend.NEUTRAL, description="BULLISH, BEARISH or NEUTRAL")
    regime: Regime = Field(Regime.NORMAL, description="LOW_VOL, NORMAL or HIGH_VOL")
    bias: float = Field(0.0, ge=-1.0, le=1.0, description="Directional bias (-1..1)")
    timestamp: Optional[datetime] = None


class GexRequest(BaseModel):
    strength: float = Field(..., ge=0.0, le=1.0)
    direction: str = Field(..., description="CALL or PUT")
    timeframe: Optional[str] = None
    flipped: bool = False
    timestamp: Optional[datetime] = None


class PositioningRequest(BaseModel):
    """Options positioning push for one symbol"""
    symbol: str
    gex: Optional[GexRequest] = None
    put_call_ratio: Optional[float] = Field(None, ge=0.0)
    support: Optional[float] = Field(None, gt=0.0)
    resistance: Optional[float] = Field(None, gt=0.0)
    max_pain: Optional[float] = Field(None, gt=0.0)
    timestamp: Optional[datetime] = None


class PriceUpdateRequest(BaseModel):
    price: float = Field(..., gt=0.0)


class ClosePositionRequest(BaseModel):
    """Manual close; omit exit_price to fill through the execution adapter"""
    exit_price: Optional[float] = Field(None, gt=0.0)
    quantity: Optional[float] = Field(None, gt=0.0, description="Partial close quantity")


# ============================================================================
# Runtime
# ============================================================================

_runtime: Optional[TradingRuntime] = None


def get_runtime() -> TradingRuntime:
    """Get or create the process-wide runtime"""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
        logger.info("Strikeflow runtime initialized")
    return _runtime


def _runtime_of(request: Request) -> TradingRuntime:
    runtime = getattr(request.app.state, 'runtime', None)
    return runtime if runtime is not None else get_runtime()


def _push_provider(runtime: TradingRuntime) -> InMemoryMarketDataProvider:
    if not isinstance(runtime.market_data, InMemoryMarketDataProvider):
        raise HTTPException(status_code=409, detail="Market data provider does not accept pushed data")
    return runtime.market_data


router = APIRouter()


# ============================================================================
# Signal ingestion
# ============================================================================

@router.post("/webhook", tags=["Signals"])
def receive_signal(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    queue: bool = Query(False, description="Enqueue for a worker instead of processing inline"),
):
    """
    Receive one raw signal.

    Inline processing returns the PipelineResult. Normalization failures
    return 400; all other stage failures return 200 with success=false.
    """
    runtime = _runtime_of(request)
    if queue:
        queue_id = runtime.store.enqueue_raw_signal(payload)
        return JSONResponse(status_code=202, content={'queued': True, 'queue_id': queue_id})

    result = runtime.pipeline.process_signal(payload)
    status_code = 400 if (not result.success and result.stage is PipelineStage.NORMALIZATION) else 200
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/webhook/batch", tags=["Signals"])
def receive_batch(request: Request, batch: BatchRequest):
    runtime = _runtime_of(request)
    try:
        results = runtime.pipeline.process_signal_batch(
            batch.signals,
            deadline_seconds=batch.deadline_seconds,
            max_workers=batch.max_workers,
        )
    except BatchAbortedError as e:
        return JSONResponse(status_code=503, content={
            'error': str(e),
            'submitted': len(batch.signals),
            'processed': len(e.results),
            'results': [r.to_dict() for r in e.results],
        })

    return {
        'submitted': len(batch.signals),
        'processed': len(results),
        'abandoned': len(batch.signals) - len(results),
        'succeeded': sum(1 for r in results if r.success),
        'failed': sum(1 for r in results if not r.success),
        'results': [r.to_dict() for r in results],
    }


# ============================================================================
# Market data push
# ============================================================================

@router.post("/context", tags=["Market Data"])
def update_context(request: Request, body: MarketContextRequest):
    provider = _push_provider(_runtime_of(request))
    context = MarketContext(
        vix=body.vix,
        trend=body.trend,
        regime=body.regime,
        bias=body.bias,
        timestamp=body.timestamp or utcnow(),
    )
    provider.update_context(context)
    return {'updated': True, 'context': context.to_dict()}


@router.post("/positioning", tags=["Market Data"])
def update_positioning(request: Request, body: PositioningRequest):
    provider = _push_provider(_runtime_of(request))
    symbol = body.symbol.strip().upper()
    gex = None
    if body.gex is not None:
        gex = GexSignal(
            symbol=symbol,
            strength=body.gex.strength,
            direction=body.gex.direction.strip().upper(),
            timeframe=body.gex.timeframe,
            flipped=body.gex.flipped,
            timestamp=body.gex.timestamp or utcnow(),
        )
    positioning = Positioning(
        symbol=symbol,
        gex=gex,
        put_call_ratio=body.put_call_ratio,
        support=body.support,
        resistance=body.resistance,
        max_pain=body.max_pain,
        timestamp=body.timestamp or utcnow(),
    )
    provider.update_positioning(positioning)
    return {'updated': True, 'positioning': positioning.to_dict()}


@router.post("/prices/{symbol}", tags=["Market Data"])
def update_price(request: Request, symbol: str, body: PriceUpdateRequest):
    provider = _push_provider(_runtime_of(request))
    provider.update_price(symbol.strip().upper(), body.price)
    return {'updated': True, 'symbol': symbol.strip().upper(), 'price': body.price}


# ============================================================================
# Positions
# ============================================================================

@router.get("/positions", tags=["Positions"])
def list_positions(request: Request, status: Optional[PositionStatus] = Query(None)):
    runtime = _runtime_of(request)
    positions = runtime.store.get_positions(status)
    return {
        'count': len(positions),
        'total_exposure': runtime.position_manager.total_exposure(),
        'total_unrealized_pnl': runtime.position_manager.total_unrealized_pnl(),
        'positions': [p.to_dict() for p in positions],
    }


@router.get("/positions/{position_id}", tags=["Positions"])
def get_position(request: Request, position_id: str):
    runtime = _runtime_of(request)
    position = runtime.position_manager.get_position(position_id)
    if position is None:
        raise HTTPException(status_code=404, detail=f"Position {position_id} not found")
    return {
        'position': position.to_dict(),
        'lots': [lot.to_dict() for lot in runtime.position_manager.get_lots(position_id)],
    }


@router.post("/positions/{position_id}/close", tags=["Positions"])
def close_position(request: Request, position_id: str, body: Optional[ClosePositionRequest] = None):
    runtime = _runtime_of(request)
    body = body or ClosePositionRequest()
    position = runtime.position_manager.get_position(position_id)
    if position is None:
        raise HTTPException(status_code=404, detail=f"Position {position_id} not found")

    try:
        result = runtime.position_manager.close_position(
            position, exit_price=body.exit_price, exit_quantity=body.quantity
        )
    except (InvalidCloseError, PositionClaimError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ExecutionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.to_dict()


# ============================================================================
# Exit monitoring
# ============================================================================

@router.get("/exit-alerts", tags=["Exit Monitor"])
def exit_alerts(request: Request):
    """Evaluate open positions without closing anything"""
    alerts = _runtime_of(request).exit_monitor.scan()
    return {'count': len(alerts), 'alerts': [a.to_dict() for a in alerts]}


@router.post("/exit-monitor/run", tags=["Exit Monitor"])
def run_exit_monitor(request: Request):
    return _runtime_of(request).exit_monitor.run_once().to_dict()


# ============================================================================
# Audit
# ============================================================================

@router.get("/failures", tags=["Audit"])
def list_failures(
    request: Request,
    tracking_id: Optional[str] = None,
    stage: Optional[PipelineStage] = None,
    since_hours: Optional[float] = Query(None, gt=0.0),
):
    failures = _runtime_of(request).pipeline.get_failures(tracking_id, stage, since_hours)
    return {'count': len(failures), 'failures': [f.to_dict() for f in failures]}


@router.get("/decisions", tags=["Audit"])
def list_decisions(request: Request, signal_id: Optional[str] = None, position_id: Optional[str] = None):
    decisions = _runtime_of(request).store.get_decisions(signal_id=signal_id, position_id=position_id)
    return {'count': len(decisions), 'decisions': decisions}


@router.get("/analytics", tags=["Audit"])
def analytics(request: Request):
    runtime = _runtime_of(request)
    summary = performance_summary(runtime.store.get_positions())
    return {
        'realized': summary.to_dict(),
        'open_positions': len(runtime.position_manager.get_open_positions()),
        'total_unrealized_pnl': runtime.position_manager.total_unrealized_pnl(),
    }


# ============================================================================
# Health & configuration
# ============================================================================

@router.get("/health", tags=["Health"])
def health_check(request: Request):
    runtime = _runtime_of(request)
    status = runtime.pipeline.get_pipeline_status()
    status['timestamp'] = utcnow().isoformat()
    status['exit_monitor_running'] = runtime.exit_monitor.is_running
    status['worker'] = runtime.worker.get_stats()
    if runtime.event_bus is not None:
        status['events'] = runtime.event_bus.get_metrics()
    return status


@router.get("/config", tags=["Configuration"])
def get_config(request: Request):
    runtime = _runtime_of(request)
    return {
        'config': runtime.config.to_dict(),
        'config_hash': runtime.config_hash,
    }


# ============================================================================
# Application
# ============================================================================

def create_app(runtime: Optional[TradingRuntime] = None, start_background: bool = False) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        runtime: Runtime to serve (the process-wide one if None)
        start_background: Start exit monitor, queue worker and event
            dispatcher on startup
    """
    application = FastAPI(
        title="Strikeflow API",
        description="Options signal ingestion, decisioning and position management",
        version="1.0.0"
    )
    application.state.runtime = runtime
    application.include_router(router)

    @application.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error(f"Store unavailable: {exc}")
        return JSONResponse(status_code=503, content={'detail': f"Store unavailable: {exc}"})

    @application.on_event("startup")
    async def startup_event():
        active = _runtime_of_app(application)
        if start_background:
            active.start_background()
        logger.info(f"Strikeflow API started (config {active.config_hash})")

    @application.on_event("shutdown")
    async def shutdown_event():
        logger.info("Strikeflow API shutting down")
        if start_background:
            _runtime_of_app(application).shutdown()

    return application


def _runtime_of_app(application: FastAPI) -> TradingRuntime:
    runtime = application.state.runtime
    return runtime if runtime is not None else get_runtime()


app = create_app(start_background=True)
