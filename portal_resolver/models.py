"""Canonical records shared by every part of the engine.

All of them are plain dataclasses so the persistence collaborator can turn
them into dicts (``as_dict``) and back without knowing about the engine.
"""

from __future__ import annotations
import re
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from .config import DEFAULT_GROUP, KNOWN_SUFFIXES
from .errors import InvalidBaseUrl, InvalidCredential


class StreamKind(str, Enum):
    DIRECT = "direct"
    COMMAND = "command"


@dataclass(frozen=True)
class StreamRef:
    """Either a playable URL or an opaque portal command for ``create_link``."""

    kind: StreamKind
    value: str

    @classmethod
    def direct(cls, url: str) -> "StreamRef":
        return cls(StreamKind.DIRECT, url)

    @classmethod
    def command(cls, cmd: str) -> "StreamRef":
        return cls(StreamKind.COMMAND, cmd)

    @property
    def is_direct(self) -> bool:
        return self.kind is StreamKind.DIRECT


@dataclass
class Channel:
    id: str
    name: str
    stream: StreamRef
    number: Optional[str] = None
    group: str = DEFAULT_GROUP
    logo_url: Optional[str] = None
    is_favorite: bool = False
    tvg_id: Optional[str] = None        # EPG id, passed through untouched
    tvg_name: Optional[str] = None
    duration: int = -1
    http_headers: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        d = asdict(self)
        d["stream"] = {"kind": self.stream.kind.value, "value": self.stream.value}
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Channel":
        d = dict(d)
        s = d.pop("stream")
        return cls(stream=StreamRef(StreamKind(s["kind"]), s["value"]), **d)


@dataclass(frozen=True)
class Credential:
    mac: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_mac(cls, mac: str) -> "Credential":
        return cls(mac=normalize_mac(mac))

    @classmethod
    def from_login(cls, username: str, password: str) -> "Credential":
        if not username or not password:
            raise InvalidCredential("username and password are both required")
        return cls(username=username, password=password)

    @property
    def has_login(self) -> bool:
        return bool(self.username and self.password)

    def __post_init__(self):
        if not self.mac and not self.has_login:
            raise InvalidCredential("a MAC address or username/password is required")


@dataclass
class Session:
    base_url: str
    credential: Credential
    token: Optional[str] = None
    issued_at: Optional[float] = None

    def issue(self, token: str) -> None:
        self.token = token
        self.issued_at = time.time()

    def as_dict(self) -> dict:
        return {"base_url": self.base_url, "token": self.token, "issued_at": self.issued_at,
                "credential": asdict(self.credential)}


@dataclass(frozen=True)
class TransportCandidate:
    url: str
    via: str                    # "direct" or "proxy<n>"
    wraps_json: bool = False


# ---------------------------------------------------------------------------
# input normalization
# ---------------------------------------------------------------------------
_HEX12 = re.compile(r"^[0-9A-F]{12}$")

def normalize_mac(mac: str) -> str:
    """``00-1a-79-aa-bb-cc`` / ``001A79AABBCC`` -> ``00:1A:79:AA:BB:CC``."""
    if not mac:
        raise InvalidCredential("MAC address must not be empty")
    raw = re.sub(r"[:\-.\s]", "", mac.strip().upper())
    if not _HEX12.match(raw):
        raise InvalidCredential(f"invalid MAC address {mac!r}")
    return ":".join(raw[i:i + 2] for i in range(0, 12, 2))


def normalize_base_url(url: str) -> str:
    """Scheme + host[:port] (+ any non-API path prefix), without trailing slash."""
    url = (url or "").strip()
    if not url:
        raise InvalidBaseUrl("base URL must not be empty")
    if "://" not in url:
        url = "http://" + url
    p = urlparse(url)
    if p.scheme not in ("http", "https"):
        raise InvalidBaseUrl(f"unsupported scheme {p.scheme!r}")
    if not p.hostname:
        raise InvalidBaseUrl(f"no host in {url!r}")
    try:
        port = p.port
    except ValueError as e:
        raise InvalidBaseUrl(f"invalid port in {url!r}") from e
    if port == 0:
        raise InvalidBaseUrl(f"invalid port in {url!r}")
    path = p.path
    for suffix in KNOWN_SUFFIXES:
        if path.endswith(suffix):
            path = path[:-len(suffix)]
            break
    return urlunparse((p.scheme, p.netloc, path.rstrip("/"), "", "", ""))
