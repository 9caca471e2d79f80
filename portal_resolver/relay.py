from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx

from .config import HTTP_TIMEOUT
from .errors import EndpointUnreachable

log = logging.getLogger(__name__)


@dataclass
class RelayResponse:
    status: int
    content_type: str
    body: bytes

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpRelay:
    """Client side of the cross-origin relay: ``GET|POST {base}/proxy?target=<url>``.

    The relay only forwards; it has no protocol logic of its own.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, *, timeout: float = HTTP_TIMEOUT):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def url_for(self, target: str) -> str:
        return f"{self.base_url}/proxy?target={quote(target, safe='')}"

    async def relay(self, target_url: str, method: str = "GET", body: Optional[Any] = None) -> RelayResponse:
        method = method.upper()
        if method not in ("GET", "POST"):
            raise ValueError(f"relay supports GET and POST, not {method}")
        url = self.url_for(target_url)
        try:
            if method == "GET":
                r = await self.client.get(url, timeout=self.timeout)
            else:
                r = await self.client.post(url, json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise EndpointUnreachable(f"relay {self.base_url}: {str(e) or type(e).__name__}",
                                      step="relay") from e
        log.debug("relay %s %s -> %s", method, target_url, r.status_code)
        return RelayResponse(r.status_code, r.headers.get("content-type", "text/plain"), r.content)
