"""
MongoRole Management API

FastAPI management plane for one instance.
Provides health and status for operators and load balancer probes.

Endpoints:
- GET /health: Liveness of the managed mongod
- GET /status: Identity, live configuration, replica set and volume
- GET /events: Recent lifecycle events from the role database
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["mgmt"])

# Will be injected by service.py
_role = None


def set_role(role):
    """Set the supervised role (called by service.py)"""
    global _role
    _role = role


def _require_role():
    if _role is None:
        raise HTTPException(status_code=503, detail="Role not initialized")
    return _role


class HealthResponse(BaseModel):
    """Health check response"""
    status: str  # 'healthy', 'starting', 'unhealthy'
    component: str
    timestamp: datetime
    ordinal: Optional[int] = None
    is_leader: bool = False
    process_alive: bool


class StatusResponse(BaseModel):
    started: bool
    process_alive: bool
    identity: Optional[Dict[str, Any]] = None
    configuration: Optional[Dict[str, Any]] = None
    replica_set: Optional[Dict[str, Any]] = None
    volume: Optional[Dict[str, Any]] = None


class EventInfo(BaseModel):
    event_type: str
    message: str
    ordinal: Optional[int] = None
    created_at: Optional[datetime] = None


@router.get("/health", response_model=HealthResponse)
def health_check():
    role = _require_role()
    status = role.status()
    identity = status.get("identity") or {}

    if status["process_alive"]:
        health = "healthy"
    elif not status["started"]:
        health = "starting"
    else:
        health = "unhealthy"

    return HealthResponse(
        status=health,
        component="mongorole",
        timestamp=datetime.utcnow(),
        ordinal=identity.get("ordinal"),
        is_leader=bool(identity.get("is_leader", False)),
        process_alive=status["process_alive"],
    )


@router.get("/status", response_model=StatusResponse)
def get_status():
    return StatusResponse(**_require_role().status())


@router.get("/events", response_model=List[EventInfo])
def get_events(limit: int = 50):
    role = _require_role()
    if role.recorder is None:
        return []
    return [
        EventInfo(
            event_type=event.event_type,
            message=event.message,
            ordinal=event.ordinal,
            created_at=event.created_at,
        )
        for event in role.recorder.recent_events(limit=limit)
    ]


def create_mgmt_app() -> FastAPI:
    """Create management plane FastAPI app"""
    app = FastAPI(title="MongoRole Management Plane", version="1.0.0")
    app.include_router(router)

    @app.get("/")
    def root():
        return {
            "service": "mongorole_mgmt",
            "timestamp": datetime.utcnow().isoformat(),
        }

    return app
