# engine.py – portal resolution engine
# ---------------------------------------------------------------------------
#   connect():   probe → (Xtream | Stalker session | REST channel list)
#   load_playlist() / load_playlist_url():  M3U text → catalogue
#   refresh_catalog():  re-fetch with the live source, favorites preserved
#   resolve_stream_url():  create_link if needed, then transport chain
#
#   Every public operation takes an optional timeout; a timeout or an outside
#   cancel() tears down the in-flight request and fails the portal session.
# ---------------------------------------------------------------------------

from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

import httpx

from .catalog import Catalog
from .config import (HTTP_TIMEOUT, RELAY_URL, REST_CHANNEL_VARIANTS, STALKER,
                     STB_USER_AGENT, XTREAM)
from .errors import (AuthRejected, EmptyCatalog, EndpointUnreachable, HandshakeFailed,
                     PortalError, SessionStateError, UnrecognizedFormat)
from .models import Channel, Credential, normalize_base_url
from .normalize import normalize
from .playlist import parse
from .prober import EndpointProber, ProbeResult
from .relay import HttpRelay
from .session import PortalSession, State
from .transport import Resolution, TransportResolver
from .xtream import XtreamClient

log = logging.getLogger(__name__)

T = TypeVar("T")

REST = "rest"
PLAYLIST = "playlist"


class Engine:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, *,
                 relay_url: str = RELAY_URL, remember_proxy: bool = False):
        self._own_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=HTTP_TIMEOUT, headers={"User-Agent": STB_USER_AGENT}, follow_redirects=True)
        self.prober = EndpointProber(self.client, headers={"User-Agent": STB_USER_AGENT})
        relay = HttpRelay(self.client, relay_url) if relay_url else None
        self.transport = TransportResolver(self.client, relay=relay, remember=remember_proxy)
        self.catalog = Catalog()
        self.session: Optional[PortalSession] = None
        self.xtream: Optional[XtreamClient] = None
        self.source: Optional[str] = None
        self.probe_result: Optional[ProbeResult] = None
        self.credential: Optional[Credential] = None
        self._rest_url: Optional[str] = None
        self._rest_stream_url: Optional[Callable[[str], str]] = None
        self._playlist_url: Optional[str] = None
        self._refresh_lock = asyncio.Lock()

    async def aclose(self) -> None:
        if self._own_client:
            await self.client.aclose()

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    @property
    def connected(self) -> bool:
        return self.source is not None

    # -- helpers ----------------------------------------------------------------
    async def _bounded(self, coro: Awaitable[T], timeout: Optional[float]) -> T:
        try:
            if timeout is None:
                return await coro
            return await asyncio.wait_for(coro, timeout)
        finally:
            if self.session is not None and self.session.state is State.FAILED:
                log.info("dropping failed portal session %s", self.session.endpoint)
                self.session = None
                if self.source == STALKER:
                    self.source = None

    def _reset(self) -> None:
        self.session = None
        self.xtream = None
        self.source = None
        self.probe_result = None
        self.credential = None
        self._rest_url = self._rest_stream_url = self._playlist_url = None
        self.catalog.clear()

    # -- connect ------------------------------------------------------------------
    async def connect(self, base_url: str, credential: Credential, *,
                      timeout: Optional[float] = None) -> Catalog:
        return await self._bounded(self._connect(base_url, credential), timeout)

    async def _connect(self, base_url: str, credential: Credential) -> Catalog:
        base = normalize_base_url(base_url)
        self._reset()
        probe = await self.prober.probe(base)
        self.probe_result, self.credential = probe, credential
        if probe.convention.dialect == XTREAM:
            channels = await self._connect_xtream(probe, credential)
        else:
            channels = await self._connect_stalker(probe, credential)
        self.catalog.replace(channels)
        log.info("connected to %s via %s – %s channels", base, self.source, len(self.catalog))
        return self.catalog

    async def _connect_xtream(self, probe: ProbeResult, credential: Credential) -> List[Channel]:
        if not credential.has_login:
            raise AuthRejected("Xtream panel needs username and password", step="authenticate")
        xtream = XtreamClient(self.client, probe.base_url, credential)
        channels = await xtream.fetch_channels()
        self.xtream, self.source = xtream, XTREAM
        return channels

    async def _connect_stalker(self, probe: ProbeResult, credential: Credential) -> List[Channel]:
        session = PortalSession(self.client, probe.endpoint, credential)
        self.session = session
        try:
            await session.open()
        except HandshakeFailed as e:
            self.session = None
            log.warning("%s does not speak the handshake (%s), trying REST channel lists",
                        probe.endpoint, e)
            return await self._connect_rest(probe, credential, e)
        channels = await session.fetch_channels()
        self.source = STALKER
        return channels

    async def _connect_rest(self, probe: ProbeResult, credential: Credential,
                            cause: PortalError) -> List[Channel]:
        who = credential.mac or credential.username

        def stream_url(sid: str) -> str:
            return f"{probe.base_url}/live/{who}/{sid}.m3u8"

        empty: Optional[EmptyCatalog] = None
        for variant in REST_CHANNEL_VARIANTS:
            url = (probe.endpoint if variant.startswith("?") else probe.endpoint.rstrip("/")) + variant
            try:
                channels = await self._rest_fetch(url, stream_url, credential)
            except EmptyCatalog as e:
                empty = empty or e
                continue
            except PortalError as e:
                log.warning("REST variant %s: %s", url, e)
                continue
            self._rest_url, self._rest_stream_url = url, stream_url
            self.source = REST
            return channels
        raise empty or cause

    async def _rest_fetch(self, url: str, stream_url: Callable[[str], str],
                          credential: Optional[Credential] = None) -> List[Channel]:
        headers = {"User-Agent": STB_USER_AGENT}
        if credential is not None and credential.mac:
            headers["MAC"] = credential.mac
        try:
            r = await self.client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise EndpointUnreachable(str(e) or type(e).__name__, step="fetch_channels") from e
        if r.status_code >= 400:
            raise EndpointUnreachable(f"HTTP {r.status_code}", step="fetch_channels")
        try:
            data = r.json()
        except ValueError as e:
            raise UnrecognizedFormat("not JSON", step="fetch_channels") from e
        try:
            return normalize(data, stream_url_for=stream_url)
        except PortalError as e:
            e.step = "fetch_channels"
            raise

    # -- playlists ----------------------------------------------------------------
    def load_playlist(self, text) -> Catalog:
        try:
            channels = parse(text)
        except PortalError as e:
            e.step = e.step or "parse"
            raise
        self._reset()
        self.source = PLAYLIST
        self.catalog.replace(channels)
        log.info("playlist loaded – %s channels", len(self.catalog))
        return self.catalog

    async def load_playlist_url(self, url: str, *, timeout: Optional[float] = None) -> Catalog:
        text = await self._bounded(self.transport.fetch_text(url), timeout)
        self.load_playlist(text)
        self._playlist_url = url
        return self.catalog

    # -- refresh ------------------------------------------------------------------
    async def refresh_catalog(self, *, timeout: Optional[float] = None) -> Catalog:
        if self._refresh_lock.locked():
            log.info("refresh already in flight, request ignored")
            return self.catalog
        async with self._refresh_lock:
            channels = await self._bounded(self._refetch(), timeout)
            self.catalog.replace(channels)
            log.info("catalogue refreshed – %s channels", len(self.catalog))
        return self.catalog

    async def _refetch(self) -> List[Channel]:
        if self.source == STALKER and self.session is not None:
            return await self.session.fetch_channels()
        if self.source == XTREAM and self.xtream is not None:
            return await self.xtream.fetch_channels()
        if self.source == REST and self._rest_url:
            return await self._rest_fetch(self._rest_url, self._rest_stream_url, self.credential)
        if self.source == PLAYLIST and self._playlist_url:
            return parse(await self.transport.fetch_text(self._playlist_url))
        raise SessionStateError("nothing to refresh: not connected or no refreshable source",
                                step="refresh")

    # -- playback -----------------------------------------------------------------
    async def resolve_stream_url(self, channel_id: str, *,
                                 timeout: Optional[float] = None) -> Resolution:
        return await self._bounded(self._resolve(channel_id), timeout)

    async def _resolve(self, channel_id: str) -> Resolution:
        ch = self.catalog.get(channel_id)
        if ch.stream.is_direct:
            url = ch.stream.value
        else:
            if self.session is None:
                raise SessionStateError("portal command needs a live session", step="create_link")
            url = await self.session.resolve_stream_link(ch.stream.value)
        return await self.transport.resolve(url)

    def disconnect(self) -> None:
        log.info("disconnect (%s)", self.source)
        self._reset()
