import asyncio
import logging
from typing import Callable, List, Optional, Set
from .config import settings
from .clients.abs_client import ABSClient
from .clients.progress_sync import ProgressSyncClient
from .media import MediaEngine, SupportsRate
from .models import ABSItem, AudioFile, Credentials, EngineStatus, LocalPosition, PlaybackSessionState
from . import timeline

logger = logging.getLogger(__name__)


def resolve_resume_time(book: ABSItem, book_input: ABSItem) -> float:
    """
    Pick where playback should start, first non-zero wins:
    server progress on the refreshed book, the shelf snapshot carried by the
    input, then any progress embedded in the input itself.
    """
    candidates = (
        ("server", book.user_media.current_time if book.user_media else 0.0),
        ("shelf", book_input.abs_progress.current_time if book_input.abs_progress else 0.0),
        ("input", book_input.user_media.current_time if book_input.user_media else 0.0),
    )
    for source, value in candidates:
        if value and value > 0:
            logger.debug(f"Resume point for {book.id} from {source}: {value:.1f}s")
            return value
    return 0.0


class PlaybackController:
    """
    Owns the active book and drives a single media engine. Treats the book's
    audio files as one timeline, advances between them, and pushes global
    progress to ABS periodically while playing and whenever playback stops.
    """

    def __init__(self, engine: MediaEngine, abs_client: ABSClient,
                 sync_client: ProgressSyncClient, credentials: Optional[Credentials] = None):
        self.engine = engine
        self.abs = abs_client
        self.sync = sync_client
        self.credentials = credentials or Credentials.from_settings()

        self.current_book: Optional[ABSItem] = None
        self.current_file_index = 0
        self.playback_rate = settings.DEFAULT_PLAYBACK_RATE
        self.is_loading = False
        self.is_player_visible = False

        self._loading_id: Optional[str] = None
        self._switching = False
        self._status = EngineStatus()
        self._sync_timer: Optional[asyncio.Task] = None
        self._pending_syncs: Set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] = engine.subscribe(self.handle_status)

    # --- Exposed state ---

    @property
    def is_playing(self) -> bool:
        return self._status.playing

    @property
    def position(self) -> float:
        return self._status.current_time

    @property
    def duration(self) -> float:
        return self._status.duration

    @property
    def computed_total_duration(self) -> float:
        if self.current_book is None:
            return 0.0
        return self.current_book.known_duration

    @property
    def is_busy(self) -> bool:
        return self.is_loading or self._status.is_buffering

    def state(self) -> PlaybackSessionState:
        return PlaybackSessionState(
            current_book=self.current_book,
            current_file_index=self.current_file_index,
            is_playing=self.is_playing,
            position=self.position,
            duration=self.duration,
            computed_total_duration=self.computed_total_duration,
            playback_rate=self.playback_rate,
            is_loading=self.is_busy,
            is_player_visible=self.is_player_visible,
        )

    def open_player(self):
        self.is_player_visible = True

    def hide_player(self):
        # Visibility only, playback is untouched
        self.is_player_visible = False

    # --- Loading ---

    async def load_book(self, book_input: ABSItem) -> None:
        creds = self.credentials
        if not creds.is_complete:
            logger.error("Missing ABS credentials, cannot load book")
            return

        requested_id = book_input.library_item_id
        if self.is_loading and self._loading_id == requested_id:
            logger.debug(f"Already loading {requested_id}, ignoring")
            return

        if self.current_book is not None and self.current_book.library_item_id == requested_id:
            if not self._status.playing:
                await self.engine.play()
            return

        await self._retire_current_book()

        self.is_loading = True
        self._loading_id = requested_id
        if book_input.has_metadata:
            # Let the UI show title and cover while details load
            self.current_book = book_input

        book = book_input
        try:
            try:
                book = await self.abs.fetch_item(creds, requested_id)
            except Exception as e:
                logger.warning(f"Failed to refresh book details for {requested_id}, using cached version: {e}")
                book = book_input

            if self._superseded(requested_id):
                return

            files = book.sorted_files()
            if not files:
                logger.error(f"No audio files available for book {requested_id}")
                self.current_book = None
                return

            resume_time = resolve_resume_time(book, book_input)
            start = timeline.local_position(resume_time, files) if resume_time > 0 else LocalPosition(0, 0.0)
            if resume_time > 0:
                logger.info(f"Resuming {requested_id} at {resume_time:.1f}s -> file {start.file_index} @ {start.position:.1f}s")

            await self._switch_file(book, files, start.file_index, start.position)
            if self._superseded(requested_id):
                await self._abandon_engine()
                return

            self.current_book = book
            await self.engine.play()
        except Exception as e:
            logger.error(f"Failed to load book {requested_id}: {e}", exc_info=True)
            if self._loading_id == requested_id:
                self.current_book = None
                self.current_file_index = 0
        finally:
            if self._loading_id == requested_id:
                self.is_loading = False
                self._loading_id = None

    def _superseded(self, requested_id: str) -> bool:
        """True once a newer load or a close has taken over from this load."""
        if self._loading_id == requested_id:
            return False
        logger.info(f"Load of {requested_id} superseded by {self._loading_id or 'close'}")
        return True

    async def _abandon_engine(self):
        # The engine holds the abandoned book's file; a newer load will replace it
        self.current_file_index = 0
        self._status = EngineStatus()
        if self.is_loading:
            return
        self._switching = True
        try:
            await self.engine.pause()
        finally:
            self._switching = False

    async def _switch_file(self, book: ABSItem, files: List[AudioFile], index: int, position: float = 0.0):
        """Point the engine at files[index]. Engine snapshots are ignored until done."""
        audio_file = files[index]
        url = self.abs.stream_url(self.credentials, book.id, audio_file.ino)
        self._switching = True
        try:
            await self.engine.load(url, audio_file.duration)
            self.current_file_index = index
            if position > 0:
                await self.engine.seek(position)
            self._status = EngineStatus(current_time=position, duration=audio_file.duration)
        finally:
            self._switching = False
        await self._apply_rate()

    async def _retire_current_book(self):
        if self.current_book is None:
            return
        self._stop_sync_timer()
        self.sync_now()
        self._switching = True
        try:
            await self.engine.pause()
        finally:
            self._switching = False
        self.current_book = None
        self.current_file_index = 0
        self._status = EngineStatus()

    # --- Transport ---

    async def toggle_play(self):
        if self._status.playing:
            await self.engine.pause()
        else:
            await self.engine.play()

    async def seek(self, seconds: float):
        await self.engine.seek(seconds)

    async def skip(self, seconds: float):
        target = max(0.0, min(self._status.current_time + seconds, self._status.duration or 0.0))
        await self.engine.seek(target)

    async def set_rate(self, rate: float):
        clamped = max(settings.MIN_PLAYBACK_RATE, min(rate, settings.MAX_PLAYBACK_RATE))
        if clamped != rate:
            logger.warning(f"Playback rate {rate} out of range, using {clamped}")
        self.playback_rate = clamped
        await self._apply_rate()

    async def _apply_rate(self):
        if not isinstance(self.engine, SupportsRate):
            logger.debug("Media engine has no rate control, ignoring playback rate")
            return
        try:
            await self.engine.set_rate(self.playback_rate)
        except NotImplementedError:
            logger.debug("Media engine has no rate control, ignoring playback rate")

    async def close_player(self):
        """Stop playback and drop the active book. Not the same as hide_player()."""
        self._stop_sync_timer()
        # A load still in flight sees this and gives up
        self.is_loading = False
        self._loading_id = None
        await self._retire_current_book()

    # --- Engine events ---

    async def handle_status(self, status: EngineStatus):
        if self._switching:
            return

        was_playing = self._status.playing
        self._status = status

        if status.playing and not was_playing:
            self._start_sync_timer()
        elif was_playing and not status.playing:
            self._stop_sync_timer()
            if status.current_time > 0:
                self.sync_now()

        if self._track_finished(status):
            await self._advance()

    def _track_finished(self, status: EngineStatus) -> bool:
        return (
            self.current_book is not None
            and not self.is_loading
            and not status.playing
            and status.duration > 0
            and abs(status.current_time - status.duration) < settings.TRACK_END_TOLERANCE_SECONDS
        )

    async def _advance(self):
        book = self.current_book
        files = book.sorted_files()
        next_index = self.current_file_index + 1
        if next_index >= len(files):
            logger.debug(f"Reached the end of {book.id}")
            return
        logger.info(f"Finished track {self.current_file_index} of {book.id}, advancing to {next_index}")
        try:
            await self._switch_file(book, files, next_index)
            await self.engine.play()
        except Exception as e:
            logger.error(f"Failed to advance {book.id} to track {next_index}: {e}", exc_info=True)

    # --- Progress sync ---

    def sync_now(self) -> bool:
        """
        Push the current global position in the background. Reads the latest
        engine snapshot now; the network call completes on its own.
        """
        book = self.current_book
        creds = self.credentials
        # While loading, the engine position may still belong to another book
        if book is None or self.is_loading or not creds.is_complete:
            return False
        position = self._status.current_time
        if position <= 0:
            return False
        files = book.sorted_files()
        if not files:
            return False

        index = min(self.current_file_index, len(files) - 1)
        global_seconds = timeline.global_time(index, position, files)
        total = timeline.total_duration(files)

        task = asyncio.create_task(
            self.sync.push_progress(creds.base_url, creds.token, book.id, global_seconds, total)
        )
        self._pending_syncs.add(task)
        task.add_done_callback(self._pending_syncs.discard)
        return True

    async def _periodic_sync(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            self.sync_now()

    def _start_sync_timer(self):
        if self._sync_timer is not None:
            return
        self._sync_timer = asyncio.create_task(self._periodic_sync(settings.SYNC_INTERVAL_SECONDS))

    def _stop_sync_timer(self):
        timer, self._sync_timer = self._sync_timer, None
        if timer is not None:
            timer.cancel()

    async def wait_for_sync(self):
        """Wait for every progress push started so far."""
        while self._pending_syncs:
            tasks = list(self._pending_syncs)
            await asyncio.gather(*tasks, return_exceptions=True)
            self._pending_syncs.difference_update(tasks)

    async def aclose(self):
        self._stop_sync_timer()
        if self.current_book is not None and self._status.playing:
            self.sync_now()
        self._unsubscribe()
        await self.wait_for_sync()
