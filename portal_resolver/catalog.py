from __future__ import annotations
import logging
from dataclasses import replace as dc_replace
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import ChannelNotFound
from .models import Channel

log = logging.getLogger(__name__)


class Catalog:
    """Ordered, id-unique channel store with a group index.

    The group index is rebuilt on every change and never stored on its own.
    ``is_favorite`` belongs to the caller: ``replace`` only carries it over.
    """

    def __init__(self, channels: Iterable[Channel] = ()):
        self._channels: Dict[str, Channel] = {}
        self._groups: Dict[str, List[str]] = {}
        self.replace(channels)

    # -- mutation -------------------------------------------------------------
    def replace(self, channels: Iterable[Channel], *, preserve_favorites: bool = True) -> None:
        favs = {cid for cid, ch in self._channels.items() if ch.is_favorite} if preserve_favorites else set()
        fresh: Dict[str, Channel] = {}
        for ch in channels:
            if ch.id in fresh:
                log.warning("duplicate channel id %s (%s) dropped", ch.id, ch.name)
                continue
            if ch.id in favs and not ch.is_favorite:
                ch = dc_replace(ch, is_favorite=True)
            fresh[ch.id] = ch
        self._channels = fresh
        self._reindex()

    def set_favorite(self, channel_id: str, value: bool = True) -> Channel:
        ch = dc_replace(self.get(channel_id), is_favorite=value)
        self._channels[channel_id] = ch
        self._reindex()
        return ch

    def clear(self) -> None:
        self._channels = {}
        self._reindex()

    def _reindex(self) -> None:
        groups: Dict[str, List[str]] = {}
        for ch in self._channels.values():
            groups.setdefault(ch.group, []).append(ch.id)
        self._groups = groups

    # -- lookup ---------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self) -> Iterator[Channel]:
        return iter(list(self._channels.values()))

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._channels

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    @property
    def groups(self) -> Dict[str, List[str]]:
        return {g: list(ids) for g, ids in self._groups.items()}

    def group_names(self) -> List[str]:
        return list(self._groups)

    def get(self, channel_id: str) -> Channel:
        try:
            return self._channels[channel_id]
        except KeyError:
            raise ChannelNotFound(f"no channel {channel_id!r}") from None

    def filter(self, *, group: Optional[str] = None, query: Optional[str] = None,
               favorites_only: bool = False) -> List[Channel]:
        ids = self._groups.get(group, []) if group is not None else list(self._channels)
        q = (query or "").strip().lower()
        out = []
        for cid in ids:
            ch = self._channels[cid]
            if favorites_only and not ch.is_favorite:
                continue
            if q and q not in ch.name.lower() and q not in ch.group.lower():
                continue
            out.append(ch)
        return out

    # -- persistence collaborator ----------------------------------------------
    def to_records(self) -> List[dict]:
        return [ch.as_dict() for ch in self._channels.values()]

    @classmethod
    def from_records(cls, records: Iterable[dict]) -> "Catalog":
        return cls(Channel.from_dict(r) for r in records)
