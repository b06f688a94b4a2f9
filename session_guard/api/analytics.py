"""Analytics API: aggregates, live metrics, timing, prediction and comparison."""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query

from session_guard.api.deps import get_runtime
from session_guard.engine.runtime import Runtime
from session_guard.schemas.session import PredictRequest
from session_guard.services.analytics import PERIOD_DAYS
from session_guard.utils.time import as_utc, utcnow

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.post("/refresh")
def refresh_cache(user_id: str | None = None, runtime: Runtime = Depends(get_runtime)):
    removed = runtime.analytics.refresh_analytics_cache(user_id)
    return {"status": "ok", "invalidated": removed}


@router.get("/{user_id}")
def session_analytics(
    user_id: str,
    period_type: str = "monthly",
    start: datetime | None = None,
    end: datetime | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    end = as_utc(end) if end else utcnow()
    start = as_utc(start) if start else end - timedelta(days=PERIOD_DAYS.get(period_type, 30))
    return runtime.analytics.get_session_analytics(user_id, period_type, start, end)


@router.get("/{user_id}/realtime")
def realtime_metrics(user_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.analytics.get_real_time_metrics(user_id)


@router.get("/{user_id}/timing")
def optimal_timing(user_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.analytics.get_optimal_session_timing(user_id)


@router.post("/{user_id}/predict")
def predict_outcome(user_id: str, data: PredictRequest, runtime: Runtime = Depends(get_runtime)):
    return runtime.analytics.predict_session_outcome(user_id, data.duration_minutes, data.loss_limit_amount)


@router.get("/{user_id}/compare")
def compare_performance(
    user_id: str,
    comparison_type: str = Query(default="self_historical"),
    timeframe: str = Query(default="monthly"),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.analytics.compare_performance(user_id, comparison_type, timeframe)
