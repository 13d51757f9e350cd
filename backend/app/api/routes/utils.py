from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse, PlainTextResponse

from app.api.deps import ManagerDep
from app.core.health import liveness_check, readiness_check
from app.models import ConnectionStatus

router = APIRouter(prefix="/utils", tags=["utils"])

# Unversioned probes kept at the root for load balancers and uptime monitors.
root_router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@root_router.get("/ping", response_class=PlainTextResponse)
async def ping() -> str:
    return "Server is live"


@root_router.get("/health", response_model=None)
async def health(manager: ManagerDep) -> dict[str, str] | JSONResponse:
    """Probe the database now and report the result."""
    if await manager.health_check(recover=False):
        return {"status": "healthy", "database": "connected", "timestamp": _now()}
    return JSONResponse(
        status_code=503,
        content={
            "status": "unhealthy",
            "database": "disconnected",
            "timestamp": _now(),
        },
    )


@router.get("/liveness/", response_model=None)
async def liveness() -> bool | JSONResponse:
    """
    Liveness probe: is the process alive and responsive?

    Lightweight: no DB I/O.  If this fails the container should be
    restarted by the orchestrator.
    """
    ok, failures = liveness_check()
    if not ok:
        return JSONResponse(
            status_code=503,
            content={"success": False, "message": "Process unhealthy", "data": failures},
        )
    return True


@router.get("/health-check/", response_model=None)
async def health_check() -> bool | JSONResponse:
    """
    Readiness probe: can the service handle traffic?

    Returns 200 with true if the database answers; 503 otherwise.
    """
    ok, failures = await readiness_check()
    if not ok:
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "message": "Service Unavailable",
                "data": failures,
            },
        )
    return True


@router.get("/db-status/", response_model=ConnectionStatus)
async def db_status(manager: ManagerDep) -> ConnectionStatus:
    """Last known connection state, without touching the database."""
    state = manager.state
    return ConnectionStatus(
        connected=state.connected,
        reconnect_attempts=state.reconnect_attempts,
        max_reconnect_attempts=manager.policy.max_attempts,
        reconnect_in_progress=manager.reconnect_in_progress,
        shutting_down=manager.shutting_down,
    )
