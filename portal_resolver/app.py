# app.py – HTTP front for the resolution engine
# ---------------------------------------------------------------------------
#   POST /connect            probe + session/panel login, catalogue in memory
#   POST /playlist           raw M3U body, or ?url= to fetch one
#   POST /refresh            re-fetch (ignored while one is running)
#   GET  /channels /groups   catalogue views
#   GET  /playlist.m3u8      catalogue as M3U pointing at /play/{id}
#   GET  /play/{id}          307 → resolved playable URL
# ---------------------------------------------------------------------------

from __future__ import annotations
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel
from starlette.responses import JSONResponse, PlainTextResponse, Response

from .config import LISTEN_HOST, LISTEN_PORT, OP_TIMEOUT
from .engine import Engine
from .errors import (ChannelNotFound, InvalidBaseUrl, InvalidCredential, MalformedPlaylist,
                     PortalError, SessionStateError)
from .models import Credential
from .playlist import dump

log = logging.getLogger("portal_resolver")


class ConnectBody(BaseModel):
    base_url: str
    mac: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def credential(self) -> Credential:
        mac = Credential.from_mac(self.mac).mac if self.mac else None
        return Credential(mac=mac, username=self.username or None, password=self.password or None)


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, asyncio.TimeoutError):
        return HTTPException(504, "upstream timed out")
    if isinstance(e, ChannelNotFound):
        return HTTPException(404, str(e))
    if isinstance(e, (InvalidBaseUrl, InvalidCredential, MalformedPlaylist)):
        return HTTPException(400, str(e))
    if isinstance(e, SessionStateError):
        return HTTPException(409, str(e))
    return HTTPException(502, f"{type(e).__name__}: {e}")


def create_app(engine: Optional[Engine] = None, *, op_timeout: Optional[float] = OP_TIMEOUT) -> FastAPI:
    engine = engine or Engine()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await engine.aclose()

    app = FastAPI(title="portal-resolver", lifespan=lifespan)
    app.state.engine = engine

    def summary() -> dict:
        return {"source": engine.source, "channels": len(engine.catalog),
                "groups": engine.catalog.group_names()}

    @app.get("/")
    async def root():
        return JSONResponse({"status": "ok", "connected": engine.connected,
                             "channels": len(engine.catalog)})

    @app.post("/connect")
    async def connect(body: ConnectBody):
        try:
            credential = body.credential()
            await engine.connect(body.base_url, credential, timeout=op_timeout)
        except (PortalError, asyncio.TimeoutError) as e:
            log.warning("connect %s failed: %s", body.base_url, e)
            raise _http_error(e)
        return summary()

    @app.post("/playlist")
    async def load_playlist(request: Request, url: Optional[str] = Query(None)):
        try:
            if url:
                await engine.load_playlist_url(url, timeout=op_timeout)
            else:
                engine.load_playlist(await request.body())
        except (PortalError, asyncio.TimeoutError) as e:
            raise _http_error(e)
        return summary()

    @app.post("/refresh")
    async def refresh():
        try:
            await engine.refresh_catalog(timeout=op_timeout)
        except (PortalError, asyncio.TimeoutError) as e:
            raise _http_error(e)
        return summary()

    @app.post("/disconnect")
    async def disconnect():
        engine.disconnect()
        return {"status": "ok"}

    @app.get("/channels")
    async def channels(group: Optional[str] = None, q: Optional[str] = None,
                       favorites: bool = False):
        found = engine.catalog.filter(group=group, query=q, favorites_only=favorites)
        return [ch.as_dict() for ch in found]

    @app.get("/groups")
    async def groups():
        return engine.catalog.groups

    @app.post("/channels/{channel_id}/favorite")
    async def favorite(channel_id: str, value: bool = True):
        try:
            return engine.catalog.set_favorite(channel_id, value).as_dict()
        except PortalError as e:
            raise _http_error(e)

    @app.get("/playlist.m3u8")
    async def playlist(request: Request):
        base = str(request.base_url).rstrip("/")
        body = dump(engine.catalog, url_for=lambda ch: f"{base}/play/{quote(ch.id, safe='')}")
        return Response(body, media_type="application/vnd.apple.mpegurl")

    @app.get("/play/{channel_id}")
    async def play(channel_id: str):
        try:
            res = await engine.resolve_stream_url(channel_id, timeout=op_timeout)
        except (PortalError, asyncio.TimeoutError) as e:
            log.warning("play %s failed: %s", channel_id, e)
            raise _http_error(e)
        return PlainTextResponse(status_code=307, headers={"Location": res.url})

    return app


app = create_app()

# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(format="%(asctime)s [%(levelname)s] %(message)s",
                        datefmt="%H:%M:%S", level=logging.INFO)
    port = int(sys.argv[1]) if len(sys.argv) > 1 else LISTEN_PORT
    log.info("Resolver ready on %s:%s", LISTEN_HOST, port)
    uvicorn.run("portal_resolver.app:app", host=LISTEN_HOST, port=port)
