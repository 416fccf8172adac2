"""Store abstraction for site link records (in-memory or Redis)."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .protocol import SiteLinkRecord


@runtime_checkable
class SiteLinkStore(Protocol):
    """Protocol for persisted site link records, keyed by record id."""

    async def load_all(self) -> list[SiteLinkRecord]: ...
    async def get(self, record_id: str) -> SiteLinkRecord | None: ...
    async def save_record(self, record: SiteLinkRecord) -> None: ...
    async def delete_record(self, record_id: str) -> None: ...


class InMemorySiteLinkStore:
    """In-memory store (single process); no Redis."""

    def __init__(self, records: list[SiteLinkRecord] | None = None) -> None:
        self._records: dict[str, SiteLinkRecord] = {}
        for record in records or []:
            self._records[record.id] = record

    async def load_all(self) -> list[SiteLinkRecord]:
        return list(self._records.values())

    async def get(self, record_id: str) -> SiteLinkRecord | None:
        return self._records.get(record_id)

    async def save_record(self, record: SiteLinkRecord) -> None:
        self._records[record.id] = record

    async def delete_record(self, record_id: str) -> None:
        self._records.pop(record_id, None)
