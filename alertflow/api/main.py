"""
FastAPI application for alertflow.

Provides REST API and WebSocket endpoints for:
- Sensor event ingestion
- Incident query and operator actions
- Playbook run query and cancellation
- Real-time lifecycle notifications
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from alertflow import __version__
from alertflow.config import Settings, get_settings
from alertflow.errors import (
    AlertflowError,
    IncidentContention,
    IncidentNotFound,
    InvalidStatusTransition,
    NormalizationError,
    RunNotFound,
    UnknownPlaybook,
)
from alertflow.models import IncidentStatus, Indicator, Severity
from alertflow.notifications import NotificationHub
from alertflow.orchestrator import Orchestrator
from alertflow.pipeline.sources import SourceManager

logger = structlog.get_logger()


# ============================================================================
# Request/Response Models
# ============================================================================

class EventAccepted(BaseModel):
    event_id: UUID
    incident_id: UUID | None = None


class OperatorAction(BaseModel):
    """Body for close, reopen and cancel."""

    actor: str = "operator"
    reason: str | None = None


class PlaybookRequest(BaseModel):
    actor: str = "operator"
    indicators: list[Indicator] | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    queues: dict[str, int] = Field(default_factory=dict)
    stats: dict[str, int] = Field(default_factory=dict)
    playbooks: list[str] = Field(default_factory=list)
    websocket_clients: int = 0


# ============================================================================
# Dependencies
# ============================================================================

def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


router = APIRouter()


# ============================================================================
# Health
# ============================================================================

@router.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "alertflow"}


@router.get("/health/detailed", response_model=HealthResponse, tags=["Health"])
async def detailed_health_check(
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> HealthResponse:
    return HealthResponse(
        status="healthy" if orchestrator.running else "stopped",
        version=__version__,
        environment=orchestrator.settings.environment,
        queues=orchestrator.queue_depths(),
        stats=orchestrator.stats,
        playbooks=orchestrator.registry.names(),
        websocket_clients=len(request.app.state.ws_manager.active_connections),
    )


# ============================================================================
# Events
# ============================================================================

@router.post(
    "/api/v1/events/{sensor_kind}",
    response_model=EventAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Events"],
)
async def ingest_event(
    sensor_kind: str,
    payload: Any = Body(...),
    wait: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> EventAccepted:
    """
    Submit one raw sensor payload.

    With ``wait=true`` the response is sent after correlation and carries
    the owning incident.
    """
    event_id = await orchestrator.ingest(sensor_kind, payload, wait=wait)
    incident_id = await orchestrator.store.owner_of(event_id) if wait else None
    return EventAccepted(event_id=event_id, incident_id=incident_id)


# ============================================================================
# Incidents
# ============================================================================

@router.get("/api/v1/incidents", tags=["Incidents"])
async def list_incidents(
    status: IncidentStatus | None = None,
    min_severity: Severity | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    incidents = await orchestrator.list_incidents(
        status=status,
        min_severity=min_severity,
        since=since,
        until=until,
    )
    return {
        "incidents": [i.model_dump(mode="json") for i in incidents],
        "total": len(incidents),
    }


@router.get("/api/v1/incidents/{incident_id}", tags=["Incidents"])
async def get_incident(
    incident_id: UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    incident = await orchestrator.get_incident(incident_id)
    return incident.model_dump(mode="json")


@router.get("/api/v1/incidents/{incident_id}/runs", tags=["Incidents"])
async def list_incident_runs(
    incident_id: UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    await orchestrator.get_incident(incident_id)
    runs = orchestrator.runs_for(incident_id)
    return {"runs": [r.model_dump(mode="json") for r in runs], "total": len(runs)}


@router.post("/api/v1/incidents/{incident_id}/close", tags=["Incidents"])
async def close_incident(
    incident_id: UUID,
    action: OperatorAction | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    action = action or OperatorAction()
    incident = await orchestrator.close_incident(incident_id, actor=action.actor, reason=action.reason)
    return incident.model_dump(mode="json")


@router.post("/api/v1/incidents/{incident_id}/reopen", tags=["Incidents"])
async def reopen_incident(
    incident_id: UUID,
    action: OperatorAction | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    action = action or OperatorAction()
    incident = await orchestrator.reopen_incident(incident_id, actor=action.actor, reason=action.reason)
    return incident.model_dump(mode="json")


@router.post(
    "/api/v1/incidents/{incident_id}/playbooks/{playbook}",
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Playbooks"],
)
async def trigger_playbook(
    incident_id: UUID,
    playbook: str,
    body: PlaybookRequest | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    body = body or PlaybookRequest()
    run = await orchestrator.trigger_playbook(
        incident_id,
        playbook,
        indicators=body.indicators,
        actor=body.actor,
    )
    return run.model_dump(mode="json")


# ============================================================================
# Runs
# ============================================================================

@router.get("/api/v1/runs/{run_id}", tags=["Playbooks"])
async def get_run(
    run_id: UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return orchestrator.get_run(run_id).model_dump(mode="json")


@router.post("/api/v1/runs/{run_id}/cancel", tags=["Playbooks"])
async def cancel_run(
    run_id: UUID,
    action: OperatorAction | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    action = action or OperatorAction()
    return orchestrator.cancel_run(run_id, actor=action.actor).model_dump(mode="json")


# ============================================================================
# WebSocket Endpoints
# ============================================================================

class ConnectionManager:
    """Manage WebSocket connections and their notification subscriptions."""

    def __init__(self, hub: NotificationHub):
        self.hub = hub
        self.active_connections: list[WebSocket] = []

    async def serve(self, websocket: WebSocket) -> None:
        subscription = self.hub.subscribe()
        await websocket.accept()
        self.active_connections.append(websocket)

        async def forward() -> None:
            async for notification in subscription:
                try:
                    await websocket.send_json({
                        "type": "notification",
                        **notification.model_dump(mode="json"),
                    })
                finally:
                    subscription.task_done()

        forwarder = asyncio.create_task(forward())
        try:
            while True:
                data = await websocket.receive_json()
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
        except (WebSocketDisconnect, asyncio.CancelledError):
            # Client went away or the server is shutting the connection down
            pass
        except Exception as e:
            logger.warning("WebSocket closed with error", error=repr(e))
        finally:
            subscription.close()
            forwarder.cancel()
            with suppress(asyncio.CancelledError):
                await asyncio.gather(forwarder, return_exceptions=True)
            self.active_connections.remove(websocket)


@router.websocket("/ws/notifications")
async def websocket_notifications(websocket: WebSocket):
    """
    Stream incident status changes and playbook run completions.

    Clients may send ``{"type": "ping"}`` and receive ``{"type": "pong"}``.
    """
    await websocket.app.state.ws_manager.serve(websocket)


# ============================================================================
# Error mapping
# ============================================================================

_STATUS_FOR_ERROR: list[tuple[type[AlertflowError], int]] = [
    (NormalizationError, status.HTTP_400_BAD_REQUEST),
    (IncidentNotFound, status.HTTP_404_NOT_FOUND),
    (RunNotFound, status.HTTP_404_NOT_FOUND),
    (UnknownPlaybook, status.HTTP_404_NOT_FOUND),
    (InvalidStatusTransition, status.HTTP_409_CONFLICT),
    (IncidentContention, status.HTTP_409_CONFLICT),
]


async def alertflow_error_handler(request: Request, exc: AlertflowError) -> JSONResponse:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, error_code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            code = error_code
            break
    if code >= 500:
        logger.error("Request failed", path=request.url.path, error=repr(exc))
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


# ============================================================================
# Application
# ============================================================================

def create_app(settings: Settings | None = None, orchestrator: Orchestrator | None = None) -> FastAPI:
    """Build the API around an orchestrator (built from settings if not given)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting alertflow API", environment=settings.environment)

        engine = orchestrator if orchestrator is not None else Orchestrator(settings)
        sources = SourceManager(settings, engine)
        sources.register_default_sources()

        app.state.orchestrator = engine
        app.state.ws_manager = ConnectionManager(engine.hub)

        await engine.start()
        await sources.start()
        logger.info("API startup complete")

        yield

        logger.info("Shutting down API")
        await sources.stop()
        await engine.stop()

    app = FastAPI(
        title="alertflow",
        description="Alert correlation and automated response orchestration",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AlertflowError, alertflow_error_handler)
    app.include_router(router)
    return app
