import asyncio
import logging
import signal
import sys
import httpx
import uvicorn

from .config import settings
from .clients.abs_client import ABSClient
from .clients.progress_sync import ProgressSyncClient
from .controller import PlaybackController
from .media import SimulatedEngine
from .models import ABSItem, Credentials
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class PlayerService:
    def __init__(self):
        self.credentials = Credentials.from_settings()
        self.http = httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS)
        self.abs = ABSClient(self.http)
        self.sync = ProgressSyncClient(self.http)
        self.engine = SimulatedEngine()
        self.controller = PlaybackController(self.engine, self.abs, self.sync, self.credentials)

        # Link controller to server module
        server.controller = self.controller
        server.abs_client = self.abs

    async def autoplay(self):
        if not settings.AUTOPLAY_ITEM_ID:
            return
        logger.info(f"Autoplaying ABS item {settings.AUTOPLAY_ITEM_ID}")
        await self.controller.load_book(ABSItem(id=settings.AUTOPLAY_ITEM_ID))

    async def start(self):
        if not self.credentials.is_complete:
            logger.error("ABS_BASE_URL and ABS_TOKEN must be set; books cannot be loaded")

        await self.autoplay()

        try:
            if settings.HTTP_SERVER_ENABLED:
                config = uvicorn.Config(server.app, host=settings.HTTP_SERVER_HOST, port=settings.HTTP_SERVER_PORT, log_level="warning")
                await uvicorn.Server(config).serve()
            else:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.shutdown()

    async def shutdown(self):
        await self.controller.aclose()
        await self.engine.shutdown()
        await self.http.aclose()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = PlayerService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
