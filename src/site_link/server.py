"""Server-side site link manager and CORS middleware."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
    CORS_EXPOSE_HEADERS,
    DEFAULT_PATH_PREFIX,
    SITE_LINK_CHECK_PATH,
)
from .protocol import (
    HashScheme,
    SiteLinkCheckError,
    SiteLinkRecord,
    generate_secret,
    is_locked,
    issue_transfer_token,
    lock_error,
    lock_record,
    normalize_path,
    normalize_site,
    remote_of,
    reset_record,
    strip_scheme,
    tokens_equal,
)
from .registry import LinkRegistry, RegistrySnapshot
from .store import InMemorySiteLinkStore, SiteLinkStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

MALFORMED_REQUEST: SiteLinkCheckError = {
    "code": "site_check_error",
    "message": "Malformed request",
    "data": {"status": status.HTTP_400_BAD_REQUEST},
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def approved_origins(snapshot: RegistrySnapshot, local_site: str) -> set[str]:
    """Origins of every remote site in the registry."""

    return {
        f"https://{remote_of(record.site1, record.site2, local_site)}"
        for record in snapshot.records()
    }


def authorized_origin(request_origin: str | None, snapshot: RegistrySnapshot, local_site: str) -> bool:
    """Exact, case-sensitive match of an Origin header against linked sites."""

    if not request_origin:
        return False
    return request_origin in approved_origins(snapshot, local_site)


def cors_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Credentials": CORS_ALLOW_CREDENTIALS,
        "Access-Control-Expose-Headers": CORS_EXPOSE_HEADERS,
    }


class SiteLinkCorsMiddleware:
    """ASGI middleware that adds CORS headers for origins of linked sites."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        manager: SiteLinkManager,
        path_prefix: str = DEFAULT_PATH_PREFIX,
    ) -> None:
        self._app = app
        self._manager = manager
        self._prefix = normalize_path(path_prefix)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http" or not self._in_prefix(scope.get("path") or "/"):
            await self._app(scope, receive, send)
            return

        request_headers = Headers(scope=scope)
        origin = request_headers.get("origin")
        if not origin or not await self._manager.is_authorized_origin(origin):
            await self._app(scope, receive, send)
            return

        headers = cors_headers(origin)
        if scope.get("method") == "OPTIONS" and "access-control-request-method" in request_headers:
            requested = request_headers.get("access-control-request-headers")
            if requested:
                headers["Access-Control-Allow-Headers"] = requested
            response = Response(status_code=status.HTTP_200_OK, headers=headers)
            await response(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                response_headers = MutableHeaders(scope=message)
                for key, value in headers.items():
                    response_headers[key] = value
            await send(message)

        await self._app(scope, receive, send_with_cors)

    def _in_prefix(self, path: str) -> bool:
        if self._prefix == "/":
            return True
        path = normalize_path(path)
        return path == self._prefix or path.startswith(f"{self._prefix}/")


class SiteLinkManager:
    """Verify transfer tokens from linked sites and manage site link records.

    With redis_url set (or an injected store), records may be shared by several
    instances, so the registry is rebuilt from the store on every check.
    Without either, records live in memory and the registry is rebuilt only
    when this instance saves a record.
    """

    def __init__(
        self,
        *,
        local_site: str,
        app: FastAPI | None = None,
        path_prefix: str = DEFAULT_PATH_PREFIX,
        store: SiteLinkStore | None = None,
        redis_url: str | None = None,
        clock: Clock | None = None,
        scheme: HashScheme = HashScheme.MD5,
    ) -> None:
        local = strip_scheme(local_site)
        if not local:
            raise ValueError("SiteLinkManager local_site is required (non-empty).")
        if store is not None and redis_url:
            raise ValueError("Pass either store or redis_url, not both.")
        self._local_site = local
        self._clock = clock or _utc_now
        self._scheme = HashScheme(scheme)
        self._shared_store = bool(redis_url) or store is not None

        if redis_url:
            try:
                from .redis_store import RedisSiteLinkStore, create_redis

                redis = create_redis(redis_url)
            except ImportError as e:
                raise ValueError(
                    "redis_url is set but redis is not installed. "
                    "Install with: pip install fastapi-site-link[redis]"
                ) from e
            self._store: SiteLinkStore = RedisSiteLinkStore(redis)
        else:
            self._store = store if store is not None else InMemorySiteLinkStore()
        self._registry = LinkRegistry(self._store)

        if app is not None:
            self._install(app, path_prefix=path_prefix)

    @property
    def local_site(self) -> str:
        return self._local_site

    @property
    def registry(self) -> LinkRegistry:
        return self._registry

    @property
    def store(self) -> SiteLinkStore:
        return self._store

    def install(
        self,
        app: FastAPI,
        *,
        path_prefix: str = DEFAULT_PATH_PREFIX,
    ) -> None:
        """Register the site link check endpoint and CORS middleware on an existing instance.

        Endpoints:

        - `{path_prefix}/sites/site_link_check` (HTTP POST) verifies a transfer token
        """
        self._install(app, path_prefix=path_prefix)

    def _install(
        self,
        app: FastAPI,
        *,
        path_prefix: str = DEFAULT_PATH_PREFIX,
    ) -> None:
        prefix = normalize_path(path_prefix)
        check_path = SITE_LINK_CHECK_PATH if prefix == "/" else f"{prefix}{SITE_LINK_CHECK_PATH}"

        self._register_check_route(app, check_path)
        app.add_middleware(
            SiteLinkCorsMiddleware,
            manager=self,
            path_prefix=prefix,
        )

    def _register_check_route(self, app: FastAPI, check_path: str) -> None:
        @app.post(check_path)
        async def site_link_check(request: Request) -> Response:
            transfer_token = await _read_transfer_token(request)
            if transfer_token is None:
                logger.warning("Malformed site link check from %s", request.headers.get("origin"))
                return JSONResponse(
                    MALFORMED_REQUEST,
                    status_code=status.HTTP_400_BAD_REQUEST,
                )
            return JSONResponse(await self.verify_transfer_token(transfer_token))

    async def snapshot(self) -> RegistrySnapshot:
        """Latest registry snapshot; re-read from a shared store on every call."""

        if self._shared_store:
            return await self._registry.rebuild()
        return await self._registry.ensure_loaded()

    def match_transfer_token(
        self,
        transfer_token: Any,
        snapshot: RegistrySnapshot | None = None,
    ) -> str | None:
        """Return the link id whose current-hour token equals transfer_token.

        Without a snapshot, the registry snapshot last loaded is used.
        """

        if snapshot is None:
            snapshot = self._registry.snapshot
        if not transfer_token or not isinstance(transfer_token, str):
            return None
        now = self._clock()
        for link_id in snapshot:
            if tokens_equal(issue_transfer_token(link_id, now, self._scheme), transfer_token):
                return link_id
        logger.debug("Transfer token matched none of %d links", len(snapshot))
        return None

    async def verify_transfer_token(self, transfer_token: Any) -> bool:
        snapshot = await self.snapshot()
        return self.match_transfer_token(transfer_token, snapshot) is not None

    async def is_authorized_origin(self, origin: str | None) -> bool:
        snapshot = await self.snapshot()
        return authorized_origin(origin, snapshot, self._local_site)

    def transfer_token_for(self, record: SiteLinkRecord) -> str:
        """Token this site sends to the remote site of a locked record."""

        if record.link_id is None or not is_locked(record, self._local_site):
            raise ValueError(f"Site link {record.id} is not locked.")
        return issue_transfer_token(record.link_id, self._clock(), self._scheme)

    def remote_site_for(self, record: SiteLinkRecord) -> str:
        return remote_of(record.site1, record.site2, self._local_site)

    async def create_record(self, label: str = "") -> SiteLinkRecord:
        """Create an unlocked record with a freshly generated secret."""

        record = SiteLinkRecord(id=uuid4().hex, label=label, secret=generate_secret())
        await self._store.save_record(record)
        return record

    async def save_record(self, record: SiteLinkRecord) -> SiteLinkRecord:
        """Persist an edited record, locking it when complete, and rebuild the registry.

        Secret and sites of an already locked record are read-only; only a
        reset unlocks them.
        """

        stored = await self._store.get(record.id)
        if stored is not None and is_locked(stored, self._local_site):
            record = replace(
                record,
                secret=stored.secret,
                site1=stored.site1,
                site2=stored.site2,
                link_id=stored.link_id,
            )
        else:
            record = replace(
                record,
                link_id=None,
                secret=record.secret.strip(),
                site1=normalize_site(record.site1),
                site2=normalize_site(record.site2),
            )
            record = lock_record(record, self._local_site, self._scheme)

        reason = lock_error(record, self._local_site)
        if reason is not None:
            logger.warning("Site link %s is not locked: %s", record.id, reason)

        await self._store.save_record(record)
        await self._registry.rebuild()
        logger.info("Saved site link %s (locked=%s)", record.id, record.link_id is not None)
        return record

    async def reset_record(self, record_id: str) -> SiteLinkRecord | None:
        """Clear secret, sites and link id of a record."""

        stored = await self._store.get(record_id)
        if stored is None:
            return None
        record = reset_record(stored)
        await self._store.save_record(record)
        await self._registry.rebuild()
        logger.info("Reset site link %s", record_id)
        return record

    async def delete_record(self, record_id: str) -> None:
        await self._store.delete_record(record_id)
        await self._registry.rebuild()
        logger.info("Deleted site link %s", record_id)


async def _read_transfer_token(request: Request) -> Any:
    """Transfer token from the JSON body, falling back to query params."""

    params: dict[str, Any] = dict(request.query_params)
    body = await request.body()
    if body:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if isinstance(payload, dict):
            params.update(payload)
    return params.get("transfer_token")
