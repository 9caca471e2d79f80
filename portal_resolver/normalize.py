"""Map the channel-list JSON dialects servers speak onto :class:`Channel`.

Known shapes: a top-level array, ``{"data": [...]}``, ``{"channels": [...]}``,
Xtream ``{"live_streams": [...]}`` / ``{"live": [...]}``, and an
object-of-objects keyed by stream id.  A Stalker ``{"js": ...}`` envelope is
unwrapped first.  Each attribute is taken from the first non-empty key of its
precedence chain, so callers never branch per dialect.
"""

from __future__ import annotations
import json
import logging
from typing import Any, Callable, List, Mapping, Optional, Sequence

from .config import DEFAULT_GROUP
from .errors import EmptyCatalog, UnrecognizedFormat
from .models import Channel, StreamRef

log = logging.getLogger(__name__)

ID_KEYS     = ("id", "stream_id", "ch_id", "channel_id")
NAME_KEYS   = ("name", "title", "stream_display_name", "tvg_name")
NUMBER_KEYS = ("num", "number", "channel_number")
GROUP_KEYS  = ("category_name", "tv_genre_title", "genre_title", "group", "group_title", "category")
GROUP_ID_KEYS = ("tv_genre_id", "category_id", "genre_id")
LOGO_KEYS   = ("logo", "logo_url", "stream_icon", "icon")
EPG_KEYS    = ("epg_channel_id", "xmltv_id", "tvg_id")
URL_KEYS    = ("stream_url", "url", "direct_source")
CMD_KEYS    = ("cmd",)

LIST_KEYS   = ("data", "channels", "live_streams", "live")


def _first(entry: Mapping, keys: Sequence[str]) -> Any:
    for k in keys:
        v = entry.get(k)
        if v not in (None, ""):
            return v
    return None


def _is_object_of_objects(d: Mapping) -> bool:
    return bool(d) and all(isinstance(v, dict) for v in d.values())


def _entries(raw: Any) -> list:
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise UnrecognizedFormat(f"channel list is not JSON: {e}", step="normalize") from e
    if isinstance(raw, dict) and isinstance(raw.get("js"), (dict, list)):
        raw = raw["js"]
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        for key in LIST_KEYS:
            v = raw.get(key)
            if isinstance(v, list):
                return v
            if isinstance(v, dict) and _is_object_of_objects(v):
                return list(v.values())
        if _is_object_of_objects(raw):
            return list(raw.values())
    raise UnrecognizedFormat(f"unknown channel list shape: {type(raw).__name__}", step="normalize")


def normalize(raw: Any, *,
              stream_url_for: Optional[Callable[[str], str]] = None,
              groups: Optional[Mapping[str, str]] = None) -> List[Channel]:
    """Return channels in server order.

    ``stream_url_for`` derives a playable URL from a stream id (Xtream and
    REST dialects); ``groups`` maps genre/category ids to titles.
    """
    entries = _entries(raw)
    groups = groups or {}
    channels: List[Channel] = []
    dicts = 0
    for n, entry in enumerate(entries, 1):
        if not isinstance(entry, dict):
            continue
        dicts += 1
        cid = _first(entry, ID_KEYS)
        cid = str(cid) if cid is not None else str(n)

        url = _first(entry, URL_KEYS)
        sid = _first(entry, ("stream_id", "id"))
        cmd = _first(entry, CMD_KEYS)
        if url:
            stream = StreamRef.direct(str(url))
        elif stream_url_for and sid is not None:
            stream = StreamRef.direct(stream_url_for(str(sid)))
        elif cmd:
            stream = StreamRef.command(str(cmd))
        else:
            log.debug("entry %s has no stream reference, skipped", cid)
            continue

        group = _first(entry, GROUP_KEYS)
        if group is None:
            gid = _first(entry, GROUP_ID_KEYS)
            group = groups.get(str(gid)) if gid is not None else None
        number = _first(entry, NUMBER_KEYS)
        epg = _first(entry, EPG_KEYS)
        channels.append(Channel(
            id=cid,
            name=str(_first(entry, NAME_KEYS) or f"Channel {n}"),
            stream=stream,
            number=str(number) if number is not None else None,
            group=str(group or DEFAULT_GROUP),
            logo_url=_first(entry, LOGO_KEYS),
            tvg_id=str(epg) if epg is not None else None,
        ))

    if entries and not dicts:
        raise UnrecognizedFormat("channel list holds no objects", step="normalize")
    if not channels:
        raise EmptyCatalog("server returned no channels", step="normalize")
    log.debug("normalized %s of %s entries", len(channels), len(entries))
    return channels
