"""
Media engine capability consumed by the playback controller.

The controller never polls: engines push EngineStatus snapshots to their
subscribers after every state change and periodically while playing.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Protocol, runtime_checkable
from .config import settings
from .models import EngineStatus

logger = logging.getLogger(__name__)

StatusHandler = Callable[[EngineStatus], Awaitable[None]]


class MediaEngine(Protocol):
    @property
    def status(self) -> EngineStatus: ...

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]: ...

    async def load(self, url: str, duration_hint: float = 0.0) -> None: ...

    async def play(self) -> None: ...

    async def pause(self) -> None: ...

    async def seek(self, seconds: float) -> None: ...


@runtime_checkable
class SupportsRate(Protocol):
    """Optional capability: variable playback speed."""

    async def set_rate(self, rate: float) -> None: ...


class SimulatedEngine:
    """
    Headless engine driven by a virtual clock. Nothing is decoded; the
    position simply advances at the playback rate until the duration hint of
    the loaded source is reached.
    """

    def __init__(self, tick_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.SIMULATED_TICK_SECONDS
        self.clock = clock
        self.source: Optional[str] = None
        self.rate = 1.0
        self._handlers: List[StatusHandler] = []
        self._playing = False
        self._duration = 0.0
        self._base = 0.0
        self._anchor = 0.0
        self._ticker: Optional[asyncio.Task] = None
        self._status = EngineStatus()

    @property
    def status(self) -> EngineStatus:
        return self._status

    def subscribe(self, handler: StatusHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)
        return unsubscribe

    def _position(self) -> float:
        pos = self._base
        if self._playing:
            pos += (self.clock() - self._anchor) * self.rate
        if self._duration > 0:
            pos = min(pos, self._duration)
        return max(0.0, pos)

    def _rebase(self):
        self._base = self._position()
        self._anchor = self.clock()

    async def _emit(self):
        self._status = EngineStatus(
            playing=self._playing,
            current_time=self._position(),
            duration=self._duration,
        )
        for handler in list(self._handlers):
            await handler(self._status)

    def _stop_ticker(self):
        task, self._ticker = self._ticker, None
        # A handler running inside the ticker may stop it; the loop notices and exits
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _tick(self):
        me = asyncio.current_task()
        while self._ticker is me and self._playing:
            await asyncio.sleep(self.tick_seconds)
            if self._ticker is not me or not self._playing:
                return
            if self._duration > 0 and self._position() >= self._duration:
                self._base = self._duration
                self._playing = False
                self._ticker = None
                logger.debug(f"Reached end of {self.source}")
            await self._emit()

    async def load(self, url: str, duration_hint: float = 0.0) -> None:
        self._stop_ticker()
        self.source = url
        self._playing = False
        self._duration = max(0.0, duration_hint)
        self._base = 0.0
        self._anchor = self.clock()
        await self._emit()

    async def play(self) -> None:
        if self.source is None or self._playing:
            return
        self._anchor = self.clock()
        self._playing = True
        self._ticker = asyncio.create_task(self._tick())
        await self._emit()

    async def pause(self) -> None:
        if not self._playing:
            return
        self._rebase()
        self._playing = False
        self._stop_ticker()
        await self._emit()

    async def seek(self, seconds: float) -> None:
        target = max(0.0, seconds)
        if self._duration > 0:
            target = min(target, self._duration)
        self._base = target
        self._anchor = self.clock()
        await self._emit()

    async def set_rate(self, rate: float) -> None:
        self._rebase()
        self.rate = rate

    async def shutdown(self):
        self._playing = False
        self._stop_ticker()
