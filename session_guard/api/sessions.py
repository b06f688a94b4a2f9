"""Sessions API: create, start, stop and inspect trading sessions."""

from fastapi import APIRouter, Depends, Query

from session_guard.api.deps import get_runtime
from session_guard.engine.runtime import Runtime
from session_guard.schemas.session import (
    PerformanceUpdate,
    SessionAction,
    SessionCreate,
    SessionRead,
    SessionStop,
)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.post("", response_model=SessionRead, status_code=201)
def create_session(data: SessionCreate, runtime: Runtime = Depends(get_runtime)):
    return runtime.sessions.create_session(
        data.user_id, data.duration_minutes, data.loss_limit_amount, data.account_balance
    )


@router.get("/stats")
def session_stats(user_id: str | None = None, runtime: Runtime = Depends(get_runtime)):
    return runtime.sessions.get_session_stats(user_id)


@router.get("/active/{user_id}", response_model=SessionRead | None)
def active_session(user_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.sessions.get_active_session(user_id)


@router.get("/history/{user_id}", response_model=list[SessionRead])
def session_history(
    user_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.sessions.get_session_history(user_id, limit=limit, offset=offset)


@router.get("/{session_id}", response_model=SessionRead)
def get_session(session_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.sessions.get_session(session_id)


@router.post("/{session_id}/start", response_model=SessionRead)
def start_session(session_id: str, data: SessionAction, runtime: Runtime = Depends(get_runtime)):
    return runtime.sessions.start_session(session_id, data.user_id)


@router.post("/{session_id}/stop", response_model=SessionRead)
async def stop_session(session_id: str, data: SessionStop, runtime: Runtime = Depends(get_runtime)):
    return await runtime.sessions.stop_session(session_id, data.user_id, data.reason)


@router.post("/{session_id}/emergency-stop", response_model=SessionRead)
async def emergency_stop_session(session_id: str, data: SessionAction, runtime: Runtime = Depends(get_runtime)):
    return await runtime.sessions.emergency_stop_session(session_id, data.user_id)


@router.put("/{session_id}/performance", response_model=SessionRead)
def update_performance(session_id: str, data: PerformanceUpdate, runtime: Runtime = Depends(get_runtime)):
    return runtime.sessions.update_performance(session_id, data.realized_pnl, data.trade_count)
