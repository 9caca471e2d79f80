# session.py – Stalker/MAG portal session
# ---------------------------------------------------------------------------
#   New → HandshakeInFlight → Handshaked → TokenInFlight → Authenticated
#       → ProfileFetched → CatalogFetched,   terminal Failed(reason)
#
#   • every request carries the MAC header/cookie and the MAG User-Agent;
#   • 401/403 or an "invalid token" body after Authenticated triggers exactly
#     one handshake+authenticate per step, then the request is retried once;
#   • concurrent requests rejected for the same token share one re-login;
#   • cancellation leaves the session Failed.
# ---------------------------------------------------------------------------

from __future__ import annotations
import asyncio
import functools
import hashlib
import logging
from enum import IntEnum
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

import httpx

from .config import (AUTH_FAILURE_MARKERS, DEFAULT_LANG, DEFAULT_TZ, HTTP_TIMEOUT,
                     STB_TYPE, STB_USER_AGENT, STB_VERSION, STB_X_USER_AGENT)
from .errors import (AuthRejected, EndpointUnreachable, HandshakeFailed, PortalError,
                     SessionStateError, StreamLinkUnavailable, TokenMissing, UnrecognizedFormat)
from .models import Channel, Credential, Session
from .normalize import normalize

log = logging.getLogger(__name__)


class State(IntEnum):
    FAILED              = -1
    NEW                 = 0
    HANDSHAKE_IN_FLIGHT = 1
    HANDSHAKED          = 2
    TOKEN_IN_FLIGHT     = 3
    AUTHENTICATED       = 4
    PROFILE_FETCHED     = 5
    CATALOG_FETCHED     = 6


PLAYABLE_SCHEMES = ("http://", "https://", "rtmp://", "rtsp://", "udp://")


def clean_stream_link(link: Any) -> Optional[str]:
    """``"ffmpeg http://h/x.ts"`` -> ``"http://h/x.ts"``; None if nothing playable."""
    if not link or not isinstance(link, str):
        return None
    for tok in link.split():
        if tok[:12].lower().startswith(("http%3a", "https%3a")):
            tok = unquote(tok)
        if tok.startswith("://"):
            tok = "http" + tok
        elif tok.startswith("//"):
            tok = "http:" + tok
        if tok.lower().startswith(PLAYABLE_SCHEMES):
            return tok
    return None


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__


def _step(name: str):
    """Stamp errors with the step name; a cancelled step fails the session."""
    def deco(fn):
        @functools.wraps(fn)
        async def wrapper(self: "PortalSession", *a, **kw):
            if self.state is State.FAILED:
                raise SessionStateError(f"session failed earlier: {self.failure}", step=name)
            try:
                return await fn(self, *a, **kw)
            except asyncio.CancelledError:
                self._fail(PortalError("operation cancelled", step=name))
                raise
            except PortalError as e:
                if e.step is None:
                    e.step = name
                raise
        return wrapper
    return deco


class Allowance:
    """One re-authentication shared by every request of a single step."""
    __slots__ = ("spent",)

    def __init__(self):
        self.spent = False


class PortalSession:
    def __init__(self, client: httpx.AsyncClient, endpoint: str, credential: Credential, *,
                 timezone: str = DEFAULT_TZ, timeout: float = HTTP_TIMEOUT):
        self.client = client
        self.endpoint = endpoint
        self.timezone = timezone
        self.timeout = timeout
        self.session = Session(base_url=endpoint, credential=credential)
        self.state = State.NEW
        self.failure: Optional[PortalError] = None
        self.profile: Optional[dict] = None
        self._marker: Optional[str] = None      # token-ish value from the handshake
        self._auth_lock = asyncio.Lock()
        self._generation = 0                    # bumped on every issued token

    # -- identity / headers --------------------------------------------------
    @property
    def credential(self) -> Credential:
        return self.session.credential

    @property
    def token(self) -> Optional[str]:
        return self.session.token

    @property
    def mac(self) -> str:
        return self.credential.mac or ""

    @property
    def identity(self) -> Dict[str, str]:
        mac = self.mac.encode()
        sn = hashlib.md5(mac).hexdigest().upper()[:13]
        device_id = hashlib.sha256(mac).hexdigest().upper()
        sig = hashlib.sha256(mac + sn.encode() + device_id.encode() * 2).hexdigest().upper()
        return {"sn": sn, "device_id": device_id, "device_id2": device_id, "signature": sig}

    def _headers(self) -> Dict[str, str]:
        p = urlparse(self.endpoint)
        h = {
            "User-Agent": STB_USER_AGENT,
            "X-User-Agent": STB_X_USER_AGENT,
            "Referer": f"{p.scheme}://{p.netloc}/c/",
            "Accept": "*/*",
        }
        if self.mac:
            h["MAC"] = self.mac
            h["Cookie"] = f"mac={self.mac}; stb_lang={DEFAULT_LANG}; timezone={self.timezone}"
        bearer = self.session.token or self._marker
        if bearer:
            h["Authorization"] = f"Bearer {bearer}"
        return h

    # -- plumbing -------------------------------------------------------------
    def _fail(self, err: PortalError) -> PortalError:
        self.state = State.FAILED
        self.failure = err
        log.error("portal session %s failed: %s", self.endpoint, err)
        return err

    def _require(self, step: str, *states: State) -> None:
        if self.state not in states:
            raise SessionStateError(
                f"{step} not allowed in state {self.state.name}", step=step)

    async def _send(self, step: str, params: Dict[str, str]) -> httpx.Response:
        params = {**params, "JsHttpRequest": "1-xml"}
        log.debug("%s <= %s %s", step, self.endpoint, params.get("action"))
        try:
            return await self.client.get(self.endpoint, params=params,
                                         headers=self._headers(), timeout=self.timeout)
        except httpx.HTTPError as e:
            raise EndpointUnreachable(f"{step}: {_describe(e)}", step=step) from e

    @staticmethod
    def _rejected(r: httpx.Response) -> bool:
        if r.status_code in (401, 403):
            return True
        head = r.text[:512]
        return any(m in head for m in AUTH_FAILURE_MARKERS)

    @staticmethod
    def _envelope(r: httpx.Response) -> Any:
        try:
            data = r.json()
        except ValueError:
            return None
        return data.get("js") if isinstance(data, dict) else None

    async def _settled(self) -> None:
        """Wait out a re-authentication another request has in flight."""
        if self._auth_lock.locked():
            async with self._auth_lock:
                pass

    async def _call(self, step: str, params: Dict[str, str],
                    allowance: Optional[Allowance] = None) -> httpx.Response:
        """Authorized request; a rejection spends the step's one re-authentication."""
        allowance = allowance if allowance is not None else Allowance()
        generation = self._generation
        r = await self._send(step, params)
        if not self._rejected(r):
            return r
        if allowance.spent:
            raise self._fail(AuthRejected(
                f"rejected again after re-authentication (HTTP {r.status_code})", step=step))
        allowance.spent = True
        log.warning("%s rejected (HTTP %s), re-authenticating once", step, r.status_code)
        await self._recover(generation)
        r = await self._send(step, params)
        if self._rejected(r):
            raise self._fail(AuthRejected(
                f"still rejected after re-authentication (HTTP {r.status_code})", step=step))
        return r

    async def _recover(self, generation: int) -> None:
        async with self._auth_lock:
            if self._generation != generation:
                log.info("token already renewed for %s", self.endpoint)
                return
            resume = self.state
            self.session.token = None
            self._marker = None
            self.state = State.NEW
            await self.handshake()
            await self.authenticate()
            if resume > State.AUTHENTICATED:
                self.state = resume

    # -- protocol steps -------------------------------------------------------
    @_step("handshake")
    async def handshake(self) -> None:
        self._require("handshake", State.NEW)
        self.state = State.HANDSHAKE_IN_FLIGHT
        try:
            r = await self._send("handshake", {"type": "stb", "action": "handshake", "token": ""})
        except EndpointUnreachable as e:
            raise self._fail(HandshakeFailed(str(e), step="handshake")) from e
        if r.status_code >= 400:
            raise self._fail(HandshakeFailed(f"HTTP {r.status_code}", step="handshake"))
        js = self._envelope(r)
        if js is None:
            raise self._fail(HandshakeFailed("response is not a portal envelope", step="handshake"))
        self._marker = (js.get("token") or None) if isinstance(js, dict) else None
        self.state = State.HANDSHAKED
        log.info("handshake OK – %s", self.endpoint)

    @_step("authenticate")
    async def authenticate(self, credential: Optional[Credential] = None) -> str:
        self._require("authenticate", State.HANDSHAKED)
        if credential is not None:
            self.session.credential = credential
        cred = self.credential
        self.state = State.TOKEN_IN_FLIGHT
        if cred.has_login:
            params = {"type": "stb", "action": "do_auth", "login": cred.username,
                      "password": cred.password, "device_id": self.identity["device_id"],
                      "device_id2": self.identity["device_id2"]}
        else:
            params = {"type": "stb", "action": "handshake", "token": self._marker or "",
                      "mac": self.mac}
        try:
            r = await self._send("authenticate", params)
        except EndpointUnreachable as e:
            raise self._fail(e)
        if self._rejected(r) or r.status_code >= 400:
            raise self._fail(AuthRejected(f"credential rejected (HTTP {r.status_code})",
                                          step="authenticate"))
        js = self._envelope(r)
        if js is False:
            raise self._fail(AuthRejected("portal refused the login", step="authenticate"))
        token = js.get("token") if isinstance(js, dict) else None
        if not token and js is True:
            token = self._marker            # do_auth answers {"js": true}
        if not token:
            raise self._fail(TokenMissing("response envelope carries no js.token",
                                          step="authenticate"))
        self.session.issue(token)
        self._generation += 1
        self.state = State.AUTHENTICATED
        log.info("authenticated – %s", self.endpoint)
        return token

    @_step("fetch_profile")
    async def fetch_profile(self) -> Optional[dict]:
        """Metadata only: anything but a failed session is logged and ignored."""
        self._require("fetch_profile", State.AUTHENTICATED)
        params = {
            "type": "stb", "action": "get_profile", "hd": "1", "ver": STB_VERSION,
            "num_banks": "2", "stb_type": STB_TYPE, "image_version": "218",
            "video_out": "hdmi", "auth_second_step": "1", "hw_version": "1.7-BD-00",
            "not_valid_token": "0", **self.identity,
        }
        try:
            r = await self._call("fetch_profile", params)
            js = self._envelope(r) if r.status_code < 400 else None
            if not isinstance(js, dict):
                raise UnrecognizedFormat(f"profile HTTP {r.status_code}, no envelope")
            self.profile = js
        except PortalError as e:
            if self.state is State.FAILED:
                raise
            log.warning("profile fetch failed (ignored): %s", e)
            self.profile = None
        self.state = State.PROFILE_FETCHED
        return self.profile

    async def _fetch_genres(self, allowance: Allowance) -> Dict[str, str]:
        try:
            r = await self._call("fetch_genres", {"type": "itv", "action": "get_genres"},
                                 allowance)
        except PortalError as e:
            if self.state is State.FAILED:
                raise
            log.warning("genre list unavailable: %s", e)
            return {}
        js = self._envelope(r) if r.status_code < 400 else None
        if not isinstance(js, list):
            return {}
        return {str(g["id"]): str(g["title"]) for g in js
                if isinstance(g, dict) and g.get("id") is not None and g.get("title")}

    @_step("fetch_channels")
    async def fetch_channels(self) -> List[Channel]:
        await self._settled()
        self._require("fetch_channels", State.PROFILE_FETCHED, State.CATALOG_FETCHED)
        allowance = Allowance()
        r = await self._call("fetch_channels", {"type": "itv", "action": "get_all_channels"},
                             allowance)
        if r.status_code >= 400:
            raise EndpointUnreachable(f"channel list HTTP {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise UnrecognizedFormat("channel list is not JSON") from e
        genres = await self._fetch_genres(allowance)
        try:
            channels = normalize(data, groups=genres)
        except PortalError as e:
            e.step = "fetch_channels"
            raise
        self.state = State.CATALOG_FETCHED
        log.info("catalogue: %s channels from %s", len(channels), self.endpoint)
        return channels

    @_step("create_link")
    async def resolve_stream_link(self, command: str) -> str:
        await self._settled()
        if self.state < State.AUTHENTICATED:
            raise SessionStateError(f"create_link not allowed in state {self.state.name}")
        r = await self._call("create_link", {
            "type": "itv", "action": "create_link", "cmd": command, "series": "",
            "forced_storage": "undefined", "disable_ad": "0", "download": "0",
        })
        if r.status_code >= 400:
            raise StreamLinkUnavailable(f"create_link HTTP {r.status_code}")
        js = self._envelope(r)
        url = clean_stream_link(js.get("cmd") if isinstance(js, dict) else None)
        if not url:
            raise StreamLinkUnavailable(f"no playable link for {command!r}")
        return url

    async def open(self) -> None:
        """handshake → authenticate → profile."""
        await self.handshake()
        await self.authenticate()
        await self.fetch_profile()
