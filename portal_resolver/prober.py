from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import httpx

from .config import BAD_CODES, PATH_CONVENTIONS, PROBE_TIMEOUT
from .errors import NoReachableEndpoint
from .models import normalize_base_url

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PathConvention:
    path: str
    dialect: str            # config.STALKER | config.XTREAM


CONVENTIONS: List[PathConvention] = [PathConvention(p, d) for p, d in PATH_CONVENTIONS]


@dataclass
class ProbeAttempt:
    url: str
    status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ProbeResult:
    base_url: str
    convention: PathConvention
    attempts: List[ProbeAttempt] = field(default_factory=list)

    @property
    def endpoint(self) -> str:
        return self.base_url + self.convention.path


class EndpointProber:
    """Find the first path convention a server answers on.

    Probes run one at a time in the fixed order of ``conventions`` and stop at
    the first 2xx; a failed attempt is recorded and never retried within the
    same call.
    """

    def __init__(self, client: httpx.AsyncClient, *,
                 conventions: Sequence[PathConvention] = CONVENTIONS,
                 timeout: float = PROBE_TIMEOUT,
                 headers: Optional[Dict[str, str]] = None):
        self.client = client
        self.conventions = list(conventions)
        self.timeout = timeout
        self.headers = headers or {}

    async def probe(self, base_url: str) -> ProbeResult:
        base = normalize_base_url(base_url)
        attempts: List[ProbeAttempt] = []
        for conv in self.conventions:
            url = base + conv.path
            try:
                r = await self.client.get(url, headers=self.headers, timeout=self.timeout)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                reason = str(e) or type(e).__name__
                log.warning("probe %s failed: %s", url, reason)
                attempts.append(ProbeAttempt(url, error=reason))
                continue
            attempts.append(ProbeAttempt(url, status=r.status_code))
            if 200 <= r.status_code < 300 and r.status_code not in BAD_CODES:
                log.info("endpoint %s answers (%s)", url, conv.dialect)
                return ProbeResult(base, conv, attempts)
            log.warning("probe %s -> HTTP %s (skip)", url, r.status_code)
        raise NoReachableEndpoint(f"no known API path answers on {base}", attempts=attempts)
