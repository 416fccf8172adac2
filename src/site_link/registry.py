"""Registry of locked site links, keyed by link id."""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Iterator, Mapping

from .protocol import SiteLinkRecord
from .store import SiteLinkStore

logger = logging.getLogger(__name__)


class RegistrySnapshot:
    """Immutable view of the registry at one point in time."""

    def __init__(self, records: Mapping[str, SiteLinkRecord] | None = None) -> None:
        self._records: Mapping[str, SiteLinkRecord] = MappingProxyType(dict(records or {}))

    @classmethod
    def from_records(cls, records: list[SiteLinkRecord]) -> RegistrySnapshot:
        """Build a snapshot from every published record that has a link id."""
        by_link_id: dict[str, SiteLinkRecord] = {}
        for record in records:
            if not record.published or not record.link_id:
                continue
            if not (record.secret and record.site1 and record.site2):
                continue
            by_link_id[record.link_id] = record
        return cls(by_link_id)

    def get(self, link_id: str) -> SiteLinkRecord | None:
        return self._records.get(link_id)

    def link_ids(self) -> list[str]:
        return list(self._records)

    def records(self) -> list[SiteLinkRecord]:
        return list(self._records.values())

    def __contains__(self, link_id: object) -> bool:
        return link_id in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)


class LinkRegistry:
    """Rebuildable projection of the store.

    Readers always get a whole snapshot; a rebuild builds the new snapshot
    before swapping it in.
    """

    def __init__(self, store: SiteLinkStore) -> None:
        self._store = store
        self._snapshot = RegistrySnapshot()
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def rebuild(self) -> RegistrySnapshot:
        async with self._lock:
            records = await self._store.load_all()
            snapshot = RegistrySnapshot.from_records(records)
            self._snapshot = snapshot
            self._loaded = True
        logger.debug("Site link registry rebuilt (%d links)", len(snapshot))
        return snapshot

    async def ensure_loaded(self) -> RegistrySnapshot:
        if not self._loaded:
            return await self.rebuild()
        return self._snapshot
