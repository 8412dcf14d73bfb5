import logging
from typing import Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest
from pydantic import Field, ValidationError

from livetrack.config import settings
from livetrack.models import ChannelIdentity, StoredModel
from livetrack.reporter import reporter
from livetrack.store import StoreError, store
from livetrack.tracker import tracker

logger = logging.getLogger(__name__)

router = APIRouter()

HEARTBEATS = Counter("livetrack_heartbeats", "Heartbeats received")
END_SIGNALS = Counter("livetrack_end_signals", "Explicit end-watch signals received")
ACTIVE_WATCHERS = Gauge("livetrack_active_watchers", "Live watch states")

T = TypeVar("T", bound=StoredModel)


class HeartbeatRequest(ChannelIdentity):
    session_id: str = Field(min_length=1, pattern=r"^[^:]+$")

    def channel(self) -> ChannelIdentity:
        return ChannelIdentity(**self.model_dump(exclude={"session_id"}))


class EndWatchRequest(StoredModel):
    session_id: str = Field(min_length=1, pattern=r"^[^:]+$")


def current_user(x_forwarded_user: Optional[str] = Header(default=None)) -> str:
    """Username asserted by the authenticating proxy in front of the API."""
    if not x_forwarded_user:
        raise HTTPException(status_code=401, detail="Not logged in")
    return x_forwarded_user


def admin_user(username: str = Depends(current_user)) -> str:
    if username not in settings.admin_users_list:
        raise HTTPException(status_code=403, detail="Admin access required")
    return username


async def _parse(request: Request, model: type[T]) -> T:
    # Beacons arrive as text/plain, so the body is parsed regardless of content type
    body = await request.body()
    try:
        return model.model_validate_json(body or b"{}")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Missing or invalid parameters: {e}")


def _failure(message: str, error: Exception) -> JSONResponse:
    return JSONResponse({"error": message, "details": str(error)}, status_code=500)


@router.post("/api/live/heartbeat")
async def heartbeat(request: Request, username: str = Depends(current_user)):
    """Record a heartbeat for the channel a browser tab is watching."""
    payload = await _parse(request, HeartbeatRequest)
    HEARTBEATS.inc()
    try:
        await tracker.record_heartbeat(username, payload.session_id, payload.channel())
    except StoreError as e:
        logger.error(f"Heartbeat processing failed for {username}: {e}")
        return _failure("Heartbeat processing failed", e)
    return {"success": True}


@router.post("/api/live/heartbeat/end")
async def end_watch(request: Request, username: str = Depends(current_user)):
    """Settle the tab's watch state when the viewer leaves the page."""
    payload = await _parse(request, EndWatchRequest)
    END_SIGNALS.inc()
    try:
        await tracker.end_watch(username, payload.session_id)
    except StoreError as e:
        logger.error(f"End-watch processing failed for {username}: {e}")
        return _failure("End-watch processing failed", e)
    return {"success": True}


@router.get("/api/admin/live-stats")
async def live_stats(refresh: bool = False, _admin: str = Depends(admin_user)):
    """Site-wide live watching report."""
    try:
        report = await reporter.build_report(force_refresh=refresh)
    except StoreError as e:
        logger.error(f"Failed to build live stats report: {e}")
        return _failure("Failed to build live stats report", e)
    return report.to_store()


@router.get("/health")
async def health():
    """Basic health check."""
    try:
        _ = store.conn
        store_connected = True
    except RuntimeError:
        store_connected = False
    return {"status": "ok", "store_connected": store_connected}


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    ACTIVE_WATCHERS.set(await tracker.count_watching())
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
