# transport.py – direct-or-proxied reachability for stream and API URLs
# ---------------------------------------------------------------------------
#   direct HEAD first; on a network-level failure walk the fixed proxy chain
#   and stop at the first template that answers.  An HTTP 4xx/5xx on the
#   direct probe means "reachable but rejected" and does not trigger proxies.
#   Failures are forgotten after each resolve() call.  JSON-wrapping proxies
#   are used by fetch_text() only.
# ---------------------------------------------------------------------------

from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set
from urllib.parse import quote, urlparse

import httpx

from .config import BROWSER_USER_AGENT, PROXY_TEMPLATES, REACH_TIMEOUT
from .errors import EndpointUnreachable, TransportExhausted, UnrecognizedFormat
from .models import TransportCandidate
from .relay import HttpRelay

log = logging.getLogger(__name__)

DIRECT = "direct"


@dataclass(frozen=True)
class ProxyTemplate:
    name: str
    pattern: str
    wraps_json: bool = False        # allorigins /get answers {"contents": ...}

    def apply(self, url: str) -> str:
        return self.pattern.format(url=quote(url, safe=""))


DEFAULT_TEMPLATES: List[ProxyTemplate] = [ProxyTemplate(*t) for t in PROXY_TEMPLATES]


@dataclass(frozen=True)
class Resolution:
    url: str                        # what to actually fetch / hand to the player
    via: str                        # "direct" or "proxy<n>"
    target: str                     # the URL originally asked for
    wraps_json: bool = False

    @property
    def proxied(self) -> bool:
        return self.via != DIRECT


class TransportResolver:
    def __init__(self, client: httpx.AsyncClient, *,
                 templates: Sequence[ProxyTemplate] = DEFAULT_TEMPLATES,
                 relay: Optional[HttpRelay] = None,
                 timeout: float = REACH_TIMEOUT,
                 remember: bool = False):
        self.client = client
        self.templates = list(templates)
        self.relay = relay
        self.timeout = timeout
        self.remember = remember
        self._last_ok: Dict[str, str] = {}      # host -> via, only when remember=True

    @property
    def relay_via(self) -> Optional[str]:
        return f"proxy{len(self.templates) + 1}" if self.relay else None

    def candidates(self, url: str, *, wrapped: bool = False) -> List[TransportCandidate]:
        out = [TransportCandidate(url, DIRECT)]
        for n, t in enumerate(self.templates, 1):
            if t.wraps_json and not wrapped:
                continue
            out.append(TransportCandidate(t.apply(url), f"proxy{n}", t.wraps_json))
        if self.relay:
            out.append(TransportCandidate(self.relay.url_for(url), self.relay_via))
        if self.remember:
            via = self._last_ok.get(urlparse(url).netloc)
            first = [c for c in out if c.via == via]
            out = first + [c for c in out if c.via != via]
        return out

    async def _reachable(self, cand: TransportCandidate) -> bool:
        try:
            r = await self.client.head(cand.url, timeout=self.timeout,
                                       headers={"User-Agent": BROWSER_USER_AGENT})
        except httpx.HTTPError as e:
            log.warning("%s unreachable (%s): %s", cand.via, cand.url, str(e) or type(e).__name__)
            return False
        if cand.via == DIRECT:
            return True
        # proxies speak HTTP for the target, so an error status is a miss; 405 = no HEAD support
        ok = r.status_code < 400 or r.status_code == 405
        if not ok:
            log.warning("%s answered HTTP %s for %s", cand.via, r.status_code, cand.url)
        return ok

    async def resolve(self, url: str, *, wrapped: bool = False) -> Resolution:
        """Playable URL for ``url``; ``wrapped`` also allows JSON-wrapping proxies."""
        failed: Set[str] = set()
        tried: List[TransportCandidate] = []
        for cand in self.candidates(url, wrapped=wrapped):
            if cand.via in failed:
                continue
            tried.append(cand)
            if await self._reachable(cand):
                if self.remember:
                    self._last_ok[urlparse(url).netloc] = cand.via
                log.info("transport %s → %s", url, cand.via)
                return Resolution(cand.url, cand.via, url, cand.wraps_json)
            failed.add(cand.via)
        raise TransportExhausted(f"no transport reaches {url}", attempts=tried)

    async def fetch_text(self, url: str) -> str:
        """GET ``url`` through the first transport that reaches it."""
        res = await self.resolve(url, wrapped=True)
        if self.relay and res.via == self.relay_via:
            rr = await self.relay.relay(url)
            status, text = rr.status, rr.text
        else:
            try:
                r = await self.client.get(res.url, headers={"User-Agent": BROWSER_USER_AGENT})
            except httpx.HTTPError as e:
                raise EndpointUnreachable(f"{res.via}: {str(e) or type(e).__name__}",
                                          step="transport") from e
            status, text = r.status_code, r.text
        if status >= 400:
            raise EndpointUnreachable(f"{url} → HTTP {status} via {res.via}", step="transport")
        if res.wraps_json:
            try:
                text = json.loads(text).get("contents") or ""
            except (ValueError, AttributeError) as e:
                raise UnrecognizedFormat(f"{res.via} answer is not a JSON wrapper",
                                         step="transport") from e
        return text
