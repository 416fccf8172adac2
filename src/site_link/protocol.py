"""Shared protocol definitions for site links."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, TypedDict
from urllib.parse import urlsplit

from .config import DEFAULT_SECRET_LENGTH, TIME_BUCKET_FORMAT


class HashScheme(str, Enum):
    """Digest used for link ids and transfer tokens.

    ``md5`` matches peers that already speak the protocol. ``hmac-sha256`` keys
    the digest by the secret (for link ids) or the link id (for tokens); both
    peers of a link must use the same scheme.
    """

    MD5 = "md5"
    HMAC_SHA256 = "hmac-sha256"


class SiteLinkCheckRequest(TypedDict):
    transfer_token: str


class SiteLinkCheckError(TypedDict):
    code: str
    message: str
    data: dict[str, int]


@dataclass(frozen=True)
class SiteLinkRecord:
    """One site link between this installation and a remote one."""

    id: str
    label: str = ""
    secret: str = ""
    site1: str = ""
    site2: str = ""
    link_id: str | None = None
    published: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SiteLinkRecord:
        published = data.get("published", True)
        if not isinstance(published, bool):
            raise TypeError(f"published must be a bool, got {published!r}")
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or ""),
            secret=str(data.get("secret") or ""),
            site1=str(data.get("site1") or ""),
            site2=str(data.get("site2") or ""),
            link_id=data.get("link_id") or None,
            published=published,
        )


def derive_link_id(
    secret: str,
    site1: str,
    site2: str,
    scheme: HashScheme = HashScheme.MD5,
) -> str:
    """Derive the link id for a secret and an ordered pair of sites."""

    if scheme is HashScheme.HMAC_SHA256:
        return _hmac_hex(secret, f"{site1}{site2}")
    return _md5_hex(f"{secret}{site1}{site2}")


def time_bucket(now: datetime) -> str:
    """Truncate a moment to its UTC hour bucket.

    Naive datetimes are taken to already be UTC.
    """

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime(TIME_BUCKET_FORMAT)


def issue_transfer_token(
    link_id: str,
    now: datetime,
    scheme: HashScheme = HashScheme.MD5,
) -> str:
    """Return the transfer token for a link id in the hour bucket of ``now``."""

    bucket = time_bucket(now)
    if scheme is HashScheme.HMAC_SHA256:
        return _hmac_hex(link_id, bucket)
    return _md5_hex(f"{link_id}{bucket}")


def tokens_equal(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def generate_secret(length: int = DEFAULT_SECRET_LENGTH) -> str:
    return secrets.token_hex(length)


def strip_scheme(url: str) -> str:
    """Bare hostname of this installation's base url."""

    return url.replace("http://", "").replace("https://", "").strip()


def normalize_site(value: str) -> str:
    """Normalize an operator-entered site to its bare hostname."""

    value = value.strip()
    if "http" in value or "//" in value or "/" in value:
        if "//" not in value:
            value = f"//{value}"
        return urlsplit(value).hostname or ""
    return value


def normalize_path(path: str) -> str:
    """Normalize a path prefix for route registration and matching."""

    if not path:
        return "/"
    if not path.startswith("/"):
        path = f"/{path}"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"
    return path


def is_local(site1: str, site2: str, local_site: str) -> bool:
    return local_site in (site1, site2)


def remote_of(site1: str, site2: str, local_site: str) -> str:
    """Return whichever site is not local; ``site1`` when neither is."""

    if site1 == local_site:
        return site2
    return site1


def lock_error(record: SiteLinkRecord, local_site: str) -> str | None:
    """Reason the record cannot be locked, or None when it can."""

    if not record.secret:
        return "Secret is required."
    if not record.site1:
        return "Site1 is required."
    if not record.site2:
        return "Site2 is required."
    if not is_local(record.site1, record.site2, local_site):
        return (
            "Local site not found in submission. "
            "Either Site1 or Site2 must be this current website."
        )
    if record.site1 == record.site2:
        return "Site1 and Site2 cannot be the same site."
    return None


def is_locked(record: SiteLinkRecord, local_site: str) -> bool:
    return record.link_id is not None and lock_error(record, local_site) is None


def lock_record(
    record: SiteLinkRecord,
    local_site: str,
    scheme: HashScheme = HashScheme.MD5,
) -> SiteLinkRecord:
    """Derive the link id once the record is lockable.

    An existing link id is kept as is.
    """

    if lock_error(record, local_site) is not None:
        return replace(record, link_id=None)
    if record.link_id:
        return record
    return replace(
        record,
        link_id=derive_link_id(record.secret, record.site1, record.site2, scheme),
    )


def reset_record(record: SiteLinkRecord) -> SiteLinkRecord:
    return replace(record, secret="", site1="", site2="", link_id=None)


def _md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _hmac_hex(key: str, message: str) -> str:
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
