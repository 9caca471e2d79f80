from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .config import BROWSER_USER_AGENT, HTTP_TIMEOUT
from .errors import AuthRejected, EndpointUnreachable, PortalError, UnrecognizedFormat
from .models import Channel, Credential
from .normalize import normalize

log = logging.getLogger(__name__)


class XtreamClient:
    """``player_api.php?username=&password=`` panels.

    Stream URLs are derived, never fetched: ``{base}/live/{user}/{pass}/{id}.m3u8``.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, credential: Credential, *,
                 timeout: float = HTTP_TIMEOUT, extension: str = "m3u8"):
        if not credential.has_login:
            raise AuthRejected("Xtream panels need username and password", step="authenticate")
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.credential = credential
        self.timeout = timeout
        self.extension = extension

    @property
    def api(self) -> str:
        return f"{self.base_url}/player_api.php"

    def stream_url(self, stream_id: str) -> str:
        user = quote(self.credential.username or "", safe="")
        pwd = quote(self.credential.password or "", safe="")
        return f"{self.base_url}/live/{user}/{pwd}/{stream_id}.{self.extension}"

    async def _get(self, step: str, action: Optional[str] = None) -> Any:
        params = {"username": self.credential.username, "password": self.credential.password}
        if action:
            params["action"] = action
        try:
            r = await self.client.get(self.api, params=params, timeout=self.timeout,
                                      headers={"User-Agent": BROWSER_USER_AGENT})
        except httpx.HTTPError as e:
            raise EndpointUnreachable(f"{step}: {str(e) or type(e).__name__}", step=step) from e
        if r.status_code in (401, 403):
            raise AuthRejected(f"panel rejected credentials (HTTP {r.status_code})", step=step)
        if r.status_code >= 400:
            raise EndpointUnreachable(f"HTTP {r.status_code}", step=step)
        try:
            return r.json()
        except ValueError as e:
            raise UnrecognizedFormat("panel answer is not JSON", step=step) from e

    async def account(self) -> dict:
        data = await self._get("authenticate")
        info = data.get("user_info") if isinstance(data, dict) else None
        if isinstance(info, dict) and str(info.get("auth", "1")) == "0":
            raise AuthRejected("panel reports auth=0", step="authenticate")
        log.info("xtream account OK – %s (status=%s)", self.base_url,
                 (info or {}).get("status", "?"))
        return info or {}

    async def categories(self) -> Dict[str, str]:
        try:
            data = await self._get("fetch_categories", "get_live_categories")
        except PortalError as e:
            log.warning("live categories unavailable: %s", e)
            return {}
        if not isinstance(data, list):
            return {}
        return {str(c["category_id"]): str(c["category_name"]) for c in data
                if isinstance(c, dict) and c.get("category_id") is not None and c.get("category_name")}

    async def fetch_channels(self) -> List[Channel]:
        await self.account()
        data = await self._get("fetch_channels", "get_live_streams")
        groups = await self.categories()
        try:
            channels = normalize(data, stream_url_for=self.stream_url, groups=groups)
        except PortalError as e:
            e.step = "fetch_channels"
            raise
        log.info("catalogue: %s channels from %s", len(channels), self.base_url)
        return channels
