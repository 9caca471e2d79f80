"""M3U / M3U8 playlist parsing and serialization.

``parse`` is tolerant: a bad ``#EXTINF`` line degrades to a placeholder name
instead of aborting the file.  Only input that is not a playlist at all
(undecodable bytes, an HTML error page, a JSON body) raises
:class:`MalformedPlaylist`.  An empty playlist is a valid, empty result.
"""

from __future__ import annotations
import logging
import re
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import DEFAULT_GROUP
from .errors import MalformedPlaylist
from .models import Channel, StreamRef

log = logging.getLogger(__name__)

ATTR_RE = re.compile(r'([A-Za-z0-9_-]+)\s*=\s*"([^"]*)"')
DURATION_RE = re.compile(r"\s*(-?\d+(?:\.\d+)?)")

# #EXTVLCOPT option -> HTTP header
VLC_OPTS = {
    "http-user-agent": "User-Agent",
    "http-referrer": "Referer",
    "http-origin": "Origin",
}


def _split_title(body: str) -> Tuple[str, Optional[str]]:
    """Split at the last comma outside double quotes; title is None if there is none."""
    cut, quoted = -1, False
    for i, c in enumerate(body):
        if c == '"':
            quoted = not quoted
        elif c == "," and not quoted:
            cut = i
    if cut < 0:
        return body, None
    return body[:cut], body[cut + 1:].strip()


def _parse_extinf(line: str) -> dict:
    head, title = _split_title(line[len("#EXTINF:"):])
    m = DURATION_RE.match(head)
    try:
        duration = int(float(m.group(1))) if m else -1
    except ValueError:
        duration = -1
    return {"duration": duration, "attrs": dict(ATTR_RE.findall(head)), "title": title}


def _close(meta: Optional[dict], url: str, n: int, group: Optional[str],
           logo: Optional[str], headers: Dict[str, str]) -> Channel:
    if meta is None:
        return Channel(id=str(n), name=f"Channel {n}", stream=StreamRef.direct(url),
                       group=group or DEFAULT_GROUP, logo_url=logo, http_headers=headers)
    attrs = meta["attrs"]
    title = meta["title"]
    if title is None:
        name = "Unknown Channel"
    else:
        name = title or attrs.get("tvg-name") or f"Channel {n}"
    return Channel(
        id=str(n),
        name=name,
        stream=StreamRef.direct(url),
        number=attrs.get("tvg-chno") or None,
        group=attrs.get("group-title") or group or DEFAULT_GROUP,
        logo_url=attrs.get("tvg-logo") or logo,
        tvg_id=attrs.get("tvg-id") or None,
        tvg_name=attrs.get("tvg-name") or None,
        duration=meta["duration"],
        http_headers=headers,
    )


def parse(text) -> List[Channel]:
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPlaylist(f"playlist is not UTF-8 text: {e}", step="parse") from e
    if not isinstance(text, str):
        raise MalformedPlaylist(f"expected text, got {type(text).__name__}", step="parse")

    text = text.lstrip("\ufeff")
    if text.lstrip()[:1] in ("<", "{", "["):
        raise MalformedPlaylist("payload looks like HTML/JSON, not M3U", step="parse")

    channels: List[Channel] = []
    pending: Optional[dict] = None
    group: Optional[str] = None
    logo: Optional[str] = None
    headers: Dict[str, str] = {}

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        tag = line.upper()
        if tag.startswith("#EXTINF:"):
            if pending is not None:
                log.warning("EXTINF without URL dropped: %s", pending.get("title"))
            pending = _parse_extinf(line)
        elif tag.startswith("#EXTGRP:"):
            group = line[8:].strip() or None
        elif tag.startswith("#EXTIMG:"):
            logo = line[8:].strip() or None
        elif tag.startswith("#EXTVLCOPT:"):
            opt, _, val = line[11:].partition("=")
            hdr = VLC_OPTS.get(opt.strip().lower())
            if hdr and val.strip():
                headers[hdr] = val.strip()
        elif line.startswith("#"):
            continue
        else:
            channels.append(_close(pending, line, len(channels) + 1, group, logo, headers))
            pending, headers = None, {}

    if pending is not None:
        log.warning("trailing EXTINF without URL dropped: %s", pending.get("title"))
    log.debug("parsed %s channels", len(channels))
    return channels


# ---------------------------------------------------------------------------
# serialization
# ---------------------------------------------------------------------------
def _attr(v: str) -> str:
    return v.replace('"', "'")


def dump(channels: Iterable[Channel], *, url_for: Optional[Callable[[Channel], str]] = None) -> str:
    """Inverse of :func:`parse` over the fields M3U carries."""
    out = ["#EXTM3U"]
    opts = {hdr: opt for opt, hdr in VLC_OPTS.items()}
    for ch in channels:
        attrs = [("tvg-id", ch.tvg_id), ("tvg-name", ch.tvg_name), ("tvg-chno", ch.number),
                 ("tvg-logo", ch.logo_url), ("group-title", ch.group)]
        head = f"#EXTINF:{ch.duration}" + "".join(f' {k}="{_attr(v)}"' for k, v in attrs if v)
        # a comma in the title would be split off on reparse; let tvg-name carry it
        title = "" if "," in ch.name and ch.name == ch.tvg_name else ch.name
        out.append(f"{head},{title}")
        for hdr, val in ch.http_headers.items():
            if hdr in opts:
                out.append(f"#EXTVLCOPT:{opts[hdr]}={val}")
        out.append(url_for(ch) if url_for else ch.stream.value)
    return "\n".join(out) + "\n"
