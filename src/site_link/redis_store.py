"""Optional Redis backend for site link records shared across instances."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from .config import KEY_PREFIX
from .protocol import SiteLinkRecord

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


def records_key(prefix: str = KEY_PREFIX) -> str:
    return f"site-link:{prefix}:records"


def create_redis(url: str) -> Redis:
    """Create an async Redis client from URL. Requires redis package (pip install fastapi-site-link[redis])."""
    from redis.asyncio import from_url

    return from_url(url, decode_responses=True)


class RedisSiteLinkStore:
    """Redis-backed site link records, one hash field per record id."""

    def __init__(self, redis: Redis, prefix: str = KEY_PREFIX) -> None:
        self._redis = redis
        self._key = records_key(prefix)

    async def load_all(self) -> list[SiteLinkRecord]:
        raw = await self._redis.hgetall(self._key)
        records: list[SiteLinkRecord] = []
        for record_id, value in raw.items():
            record = _decode(record_id, value)
            if record is not None:
                records.append(record)
        return records

    async def get(self, record_id: str) -> SiteLinkRecord | None:
        value = await self._redis.hget(self._key, record_id)
        if value is None:
            return None
        return _decode(record_id, value)

    async def save_record(self, record: SiteLinkRecord) -> None:
        await self._redis.hset(self._key, record.id, json.dumps(record.to_dict()))

    async def delete_record(self, record_id: str) -> None:
        await self._redis.hdel(self._key, record_id)


def _decode(record_id: str, value: str) -> SiteLinkRecord | None:
    try:
        return SiteLinkRecord.from_dict(json.loads(value))
    except (json.JSONDecodeError, KeyError, TypeError) as exc:
        logger.warning("Invalid site link record %s: %s", record_id, exc)
        return None
