import logging
import httpx
import asyncio
from typing import Any, Dict, Iterable, List, Optional
from ..config import settings
from ..models import ABSItem, Credentials, ProgressSnapshot, strip_abs_prefix, ABS_ID_PREFIX

logger = logging.getLogger(__name__)


def format_time_left(duration: float, current_time: float, is_finished: bool) -> str:
    if is_finished:
        return "Finished"
    seconds_left = duration - current_time
    if abs(seconds_left) < 60:
        return "<1min"
    hours = int(seconds_left // 3600)
    minutes = int((seconds_left % 3600) // 60)
    if hours > 0:
        return f"{hours}h {minutes}min"
    return f"{minutes}min"


class ABSClient:
    """Read side of the Audiobookshelf API used by the player."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS)

    def _headers(self, creds: Credentials) -> Dict[str, str]:
        return {"Authorization": f"Bearer {creds.token}"}

    def stream_url(self, creds: Credentials, item_id: str, ino: str) -> str:
        return f"{creds.base_url}/api/items/{strip_abs_prefix(item_id)}/file/{ino}?token={creds.token}"

    def cover_url(self, creds: Credentials, item_id: str) -> str:
        return f"{creds.base_url}/api/items/{strip_abs_prefix(item_id)}/cover?token={creds.token}"

    async def fetch_item(self, creds: Credentials, item_id: str) -> ABSItem:
        """
        Fetch the authoritative library item, including the user's progress.
        Raises httpx.HTTPError on failure; callers decide how to recover.
        """
        resp = await self.http.get(
            f"{creds.base_url}/api/items/{strip_abs_prefix(item_id)}",
            params={"expanded": 1, "include": "progress"},
            headers=self._headers(creds),
        )
        resp.raise_for_status()
        return ABSItem.model_validate(resp.json())

    async def fetch_me(self, creds: Credentials) -> Optional[Dict[str, Any]]:
        try:
            resp = await self.http.get(f"{creds.base_url}/api/me", headers=self._headers(creds))
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch ABS user: {e}")
            return None

        # Usually wrapped in 'user' object or at root depending on version
        if isinstance(data, dict):
            if isinstance(data.get("user"), dict):
                return data["user"]
            if data.get("id"):
                return data
        logger.warning("/api/me response did not contain a user object")
        return None

    async def _shelf_entry(self, creds: Credentials, prog: Dict[str, Any]) -> Optional[ABSItem]:
        item_id = prog.get("libraryItemId")
        try:
            item = await self.fetch_item(creds, item_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to fetch details for ABS item {item_id}: {e}")
            return None

        duration = prog.get("duration") or 0.0
        current_time = prog.get("currentTime") or 0.0
        is_finished = bool(prog.get("isFinished"))
        snapshot = ProgressSnapshot(
            percentage=(current_time / duration) * 100 if duration > 0 else 0.0,
            time_left=format_time_left(duration, current_time, is_finished),
            duration=duration,
            current_time=current_time,
            is_finished=is_finished,
        )
        return item.model_copy(update={"id": f"{ABS_ID_PREFIX}{item.id}", "abs_progress": snapshot})

    async def get_in_progress(self, creds: Credentials, read_ids: Iterable[str] = ()) -> List[ABSItem]:
        """
        Continue-listening shelf: started items, newest first. Finished items
        are kept only when they are not already in read_ids ("abs-<id>").
        """
        user = await self.fetch_me(creds)
        if not user:
            return []

        read = set(read_ids)
        candidates = []
        for prog in user.get("mediaProgress", []) or []:
            if not prog.get("libraryItemId") or not (prog.get("progress") or 0) > 0:
                continue
            if prog.get("isFinished") and f"{ABS_ID_PREFIX}{prog['libraryItemId']}" in read:
                continue
            candidates.append(prog)

        candidates.sort(key=lambda p: p.get("lastUpdate") or 0, reverse=True)

        results: List[ABSItem] = []
        chunk_size = max(1, settings.IN_PROGRESS_FETCH_CHUNK)
        for i in range(0, len(candidates), chunk_size):
            chunk = candidates[i:i+chunk_size]
            entries = await asyncio.gather(*[self._shelf_entry(creds, p) for p in chunk])
            results.extend(e for e in entries if e is not None)
        return results

    async def get_finished_dates(self, creds: Credentials) -> Dict[str, int]:
        """Map of "abs-<id>" -> finishedAt (ms) for every finished item."""
        user = await self.fetch_me(creds)
        if not user:
            return {}
        finished = {}
        for prog in user.get("mediaProgress", []) or []:
            if prog.get("isFinished") and prog.get("finishedAt") is not None and prog.get("libraryItemId"):
                finished[f"{ABS_ID_PREFIX}{prog['libraryItemId']}"] = prog["finishedAt"]
        return finished

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()
