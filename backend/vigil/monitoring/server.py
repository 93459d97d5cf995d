"""
Monitoring server endpoints.

Read-only HTTP API over the sessions directory and, when one is running
in-process, the live harness. Observation only, no control operations.

Application state used:
    app.state.session_manager   SessionManager (required)
    app.state.harness           HarnessOrchestrator or None
"""

from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request

from ..persistence.errors import SessionNotFoundError
from ..persistence.models import Session
from ..persistence.sessions import SessionManager
from .models import (
    HarnessStatusResponse,
    HealthResponse,
    MonitorListResponse,
    SessionListResponse,
)


router = APIRouter(prefix="/monitor", tags=["monitoring"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Returns:
        Simple status indicator
    """
    return HealthResponse(status="ok")


@router.get("/status", response_model=HarnessStatusResponse)
async def harness_status(request: Request):
    """
    Status of the in-process harness.

    Reports inactive when no harness is attached to the application.
    """
    harness = getattr(request.app.state, "harness", None)
    if harness is None:
        return HarnessStatusResponse(active=False)
    return HarnessStatusResponse(**harness.get_status())


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request):
    """
    List all sessions on disk, newest first.
    """
    manager: SessionManager = request.app.state.session_manager
    sessions = manager.list_sessions()
    return SessionListResponse(sessions=sessions, total_count=len(sessions))


@router.get("/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str, request: Request):
    """
    Retrieve metadata for one session.

    Raises:
        404: Session not found
    """
    manager: SessionManager = request.app.state.session_manager
    try:
        return manager.get_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/monitors", response_model=MonitorListResponse)
async def list_monitors(request: Request):
    """
    Current state of every workflow monitor of the live harness.

    Empty when no harness is attached.
    """
    harness = getattr(request.app.state, "harness", None)
    if harness is None:
        return MonitorListResponse(monitors=[])
    return MonitorListResponse(monitors=harness.monitor_states())


def create_app(session_manager: SessionManager, harness: Optional[object] = None) -> FastAPI:
    """Build a FastAPI application serving the monitoring router."""
    app = FastAPI(title="Vigil Monitor", docs_url=None, redoc_url=None)
    app.state.session_manager = session_manager
    app.state.harness = harness
    app.include_router(router)
    return app
