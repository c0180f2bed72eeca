import logging
import time
import httpx
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
from ..config import settings
from ..models import strip_abs_prefix

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"  # try the next endpoint
    FATAL = "fatal"          # stop negotiating


@dataclass(frozen=True)
class ProgressUpdate:
    item_id: str
    current_time: float
    duration: float
    progress: float
    is_finished: bool
    last_update_ms: int
    started_at_ms: int

    @classmethod
    def build(cls, item_id: str, current_time: float, total_duration: float,
              now_ms: int, started_at_ms: Optional[int] = None) -> "ProgressUpdate":
        progress = current_time / total_duration if total_duration > 0 else 0.0
        is_finished = total_duration > 0 and current_time >= settings.FINISHED_THRESHOLD * total_duration
        return cls(
            item_id=strip_abs_prefix(item_id),
            current_time=current_time,
            duration=total_duration,
            progress=progress,
            is_finished=is_finished,
            last_update_ms=now_ms,
            started_at_ms=started_at_ms or now_ms,
        )

    def media_progress(self) -> Dict[str, Any]:
        return {
            "libraryItemId": self.item_id,
            "episodeId": None,
            "duration": self.duration,
            "progress": self.progress,
            "currentTime": self.current_time,
            "isFinished": self.is_finished,
            "hideFromContinueListening": False,
            "lastUpdate": self.last_update_ms,
            "startedAt": self.started_at_ms,
            "finishedAt": None,
        }

    def simple_progress(self) -> Dict[str, Any]:
        return {
            "currentTime": self.current_time,
            "duration": self.duration,
            "progress": self.progress,
            "deviceInfo": {
                "clientName": settings.ABS_CLIENT_NAME,
                "deviceId": settings.ABS_DEVICE_ID,
            },
            "isFinished": self.is_finished,
        }


@dataclass(frozen=True)
class ProgressEndpoint:
    name: str
    method: str
    path: Callable[[ProgressUpdate], str]
    payload: Callable[[ProgressUpdate], Any]


# Newest API shape first. Older servers answer 404 for the ones they lack.
PROGRESS_ENDPOINTS: Tuple[ProgressEndpoint, ...] = (
    ProgressEndpoint(
        name="batch-update",
        method="PATCH",
        path=lambda u: "/api/me/progress/batch/update",
        payload=lambda u: [u.media_progress()],
    ),
    ProgressEndpoint(
        name="sync-local-progress",
        method="POST",
        path=lambda u: "/api/me/sync-local-progress",
        payload=lambda u: {"localMediaProgress": [u.media_progress()]},
    ),
    ProgressEndpoint(
        name="me-progress",
        method="POST",
        path=lambda u: f"/api/me/progress/{u.item_id}",
        payload=lambda u: u.simple_progress(),
    ),
    ProgressEndpoint(
        name="item-progress",
        method="POST",
        path=lambda u: f"/api/items/{u.item_id}/progress",
        payload=lambda u: u.simple_progress(),
    ),
)


def classify_status(status_code: int) -> Outcome:
    if 200 <= status_code < 300:
        return Outcome.SUCCESS
    if status_code in (401, 403):
        return Outcome.FATAL
    return Outcome.RETRYABLE


class ProgressSyncClient:
    """
    Best-effort progress push to ABS. Tries each known endpoint shape in turn
    until one accepts the update. Never raises.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None,
                 endpoints: Tuple[ProgressEndpoint, ...] = PROGRESS_ENDPOINTS):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS)
        self.endpoints = endpoints
        self.started_at: Dict[str, int] = {}  # item_id -> first push (ms)

    async def attempt(self, endpoint: ProgressEndpoint, base_url: str, token: str,
                      update: ProgressUpdate) -> Outcome:
        url = f"{base_url.rstrip('/')}{endpoint.path(update)}"
        try:
            resp = await self.http.request(
                endpoint.method,
                url,
                json=endpoint.payload(update),
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Progress endpoint {endpoint.name} failed for {update.item_id}: {e!r}")
            return Outcome.RETRYABLE

        outcome = classify_status(resp.status_code)
        if outcome is Outcome.SUCCESS:
            return outcome
        if outcome is Outcome.FATAL:
            logger.error(f"ABS rejected credentials ({resp.status_code}) on {endpoint.name}, aborting progress sync")
        elif resp.status_code == 404:
            logger.debug(f"Progress endpoint {endpoint.name} not available on this server")
        else:
            logger.warning(f"Progress endpoint {endpoint.name} returned {resp.status_code} for {update.item_id}")
        return outcome

    async def push_progress(self, base_url: Optional[str], token: Optional[str], item_id: str,
                            current_time: float, total_duration: float) -> None:
        if not base_url or not token:
            logger.error("Missing ABS credentials, progress not synced")
            return

        try:
            now_ms = int(time.time() * 1000)
            key = strip_abs_prefix(item_id)
            started = self.started_at.setdefault(key, now_ms)
            update = ProgressUpdate.build(item_id, current_time, total_duration, now_ms, started)

            if settings.DRY_RUN:
                logger.info(f"[DRY RUN] Would update ABS item {update.item_id} to {current_time:.1f}s")
                return

            for endpoint in self.endpoints:
                outcome = await self.attempt(endpoint, base_url, token, update)
                if outcome is Outcome.SUCCESS:
                    logger.debug(f"Synced {update.item_id} at {current_time:.1f}s via {endpoint.name}")
                    return
                if outcome is Outcome.FATAL:
                    return

            logger.warning(f"No progress endpoint accepted the update for {update.item_id}")
        except Exception as e:
            logger.error(f"Failed to sync progress for {item_id}: {e}", exc_info=True)

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()
