from fastapi import FastAPI, Depends, HTTPException, Header
from pydantic import BaseModel
from typing import Dict, List, Optional
from .clients.abs_client import ABSClient
from .controller import PlaybackController
from .config import settings
from .models import ABSItem, PlaybackSessionState

app = FastAPI(title="ABS Player")
controller: Optional[PlaybackController] = None
abs_client: Optional[ABSClient] = None


class SeekRequest(BaseModel):
    seconds: float


class RateRequest(BaseModel):
    rate: float


def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_controller() -> PlaybackController:
    if not controller:
        raise HTTPException(status_code=503, detail="Player not ready")
    return controller


def require_book(player: PlaybackController = Depends(get_controller)) -> PlaybackController:
    if player.current_book is None:
        raise HTTPException(status_code=409, detail="No active book")
    return player


@app.get("/healthz")
def healthz():
    if not controller:
        return {"status": "starting"}
    return {"status": "ok", "playing": controller.is_playing}


@app.get("/status", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
def status(player: PlaybackController = Depends(get_controller)):
    return player.state()


@app.get("/in-progress", dependencies=[Depends(get_token)], response_model=List[ABSItem])
async def in_progress(player: PlaybackController = Depends(get_controller)):
    if not abs_client or not player.credentials.is_complete:
        return []
    return await abs_client.get_in_progress(player.credentials)


@app.get("/finished", dependencies=[Depends(get_token)])
async def finished(player: PlaybackController = Depends(get_controller)) -> Dict[str, int]:
    if not abs_client or not player.credentials.is_complete:
        return {}
    return await abs_client.get_finished_dates(player.credentials)


@app.post("/play", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
async def play(book: ABSItem, player: PlaybackController = Depends(get_controller)):
    await player.load_book(book)
    return player.state()


@app.post("/toggle", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
async def toggle(player: PlaybackController = Depends(require_book)):
    await player.toggle_play()
    return player.state()


@app.post("/seek", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
async def seek(req: SeekRequest, player: PlaybackController = Depends(require_book)):
    await player.seek(req.seconds)
    return player.state()


@app.post("/skip", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
async def skip(req: SeekRequest, player: PlaybackController = Depends(require_book)):
    await player.skip(req.seconds)
    return player.state()


@app.post("/rate", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
async def rate(req: RateRequest, player: PlaybackController = Depends(get_controller)):
    await player.set_rate(req.rate)
    return player.state()


@app.post("/open", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
def open_player(player: PlaybackController = Depends(get_controller)):
    player.open_player()
    return player.state()


@app.post("/hide", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
def hide_player(player: PlaybackController = Depends(get_controller)):
    player.hide_player()
    return player.state()


@app.post("/close", dependencies=[Depends(get_token)], response_model=PlaybackSessionState)
async def close(player: PlaybackController = Depends(get_controller)):
    await player.close_player()
    return player.state()
