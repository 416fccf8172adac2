"""Client-side site link status check."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum

from httpx import AsyncClient, HTTPError

from .config import (
    DEFAULT_PATH_PREFIX,
    DEFAULT_SECRET_ENV_VAR,
    DEFAULT_TIMEOUT_SECONDS,
    SITE_LINK_CHECK_PATH,
)
from .protocol import (
    HashScheme,
    SiteLinkCheckRequest,
    derive_link_id,
    issue_transfer_token,
    normalize_path,
    normalize_site,
)

logger = logging.getLogger(__name__)


class LinkStatus(str, Enum):
    LINKED = "linked"
    NOT_LINKED = "not_linked"
    UNREACHABLE = "unreachable"
    ERROR = "error"


def site_link_check_url(remote_site: str, path_prefix: str = DEFAULT_PATH_PREFIX) -> str:
    prefix = normalize_path(path_prefix)
    path = SITE_LINK_CHECK_PATH if prefix == "/" else f"{prefix}{SITE_LINK_CHECK_PATH}"
    return f"https://{remote_site}{path}"


def _resolve_secret(cli_secret: str | None, secret_env_var: str | None) -> str:
    if cli_secret:
        return cli_secret
    if not secret_env_var:
        raise ValueError(f"Secret is required. Pass --secret or set {DEFAULT_SECRET_ENV_VAR}.")
    value = os.environ.get(secret_env_var)
    if value:
        return value
    raise ValueError(f"Secret is required. Pass --secret or set {secret_env_var}.")


async def check_link(
    *,
    link_id: str,
    remote_site: str,
    path_prefix: str = DEFAULT_PATH_PREFIX,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    now: datetime | None = None,
    scheme: HashScheme = HashScheme.MD5,
    client: AsyncClient | None = None,
) -> LinkStatus:
    """Ask the remote site whether it accepts this site's transfer token."""

    transfer_token = issue_transfer_token(link_id, now or datetime.now(timezone.utc), scheme)
    payload: SiteLinkCheckRequest = {"transfer_token": transfer_token}
    url = site_link_check_url(remote_site, path_prefix)

    if client is None:
        async with AsyncClient(timeout=timeout) as owned_client:
            return await _post_check(owned_client, url, payload)
    return await _post_check(client, url, payload)


async def _post_check(client: AsyncClient, url: str, payload: SiteLinkCheckRequest) -> LinkStatus:
    try:
        response = await client.post(url, json=payload)
    except HTTPError as exc:
        logger.warning("Failed to connect with %s: %s", url, exc)
        return LinkStatus.UNREACHABLE

    if response.status_code != 200:
        logger.warning("Site link check %s returned %s", url, response.status_code)
        return LinkStatus.ERROR
    try:
        linked = response.json()
    except ValueError:
        logger.warning("Site link check %s returned a non-JSON body", url)
        return LinkStatus.ERROR
    logger.info("Site link check %s: %s", url, linked)
    return LinkStatus.LINKED if linked is True else LinkStatus.NOT_LINKED


def _build_parser() -> argparse.ArgumentParser:  # pragma: no cover
    parser = argparse.ArgumentParser(description="Check whether a site link is live.")
    parser.add_argument("--remote-site", required=True, help="Host name of the linked site.")
    parser.add_argument("--link-id", help="Link id (site key) of the record.")
    parser.add_argument(
        "--secret",
        help="Record secret; used with --site1/--site2 when --link-id is unset.",
    )
    parser.add_argument(
        "--secret-env",
        default=DEFAULT_SECRET_ENV_VAR,
        help=f"Env var name to read the secret from if --secret is unset (default: {DEFAULT_SECRET_ENV_VAR}).",
    )
    parser.add_argument("--site1", help="Site 1 of the record, exactly as registered.")
    parser.add_argument("--site2", help="Site 2 of the record, exactly as registered.")
    parser.add_argument(
        "--path-prefix",
        default=DEFAULT_PATH_PREFIX,
        help="Path prefix the remote site installed the endpoint under.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help="HTTP timeout for the check request.",
    )
    parser.add_argument(
        "--scheme",
        choices=[scheme.value for scheme in HashScheme],
        default=HashScheme.MD5.value,
        help="Digest scheme both sites use.",
    )
    return parser


def main(argv: list[str] | None = None) -> None:  # pragma: no cover
    parser = _build_parser()
    args = parser.parse_args(argv)
    scheme = HashScheme(args.scheme)

    link_id = args.link_id
    if not link_id:
        if not (args.site1 and args.site2):
            parser.error("Pass --link-id, or --site1 and --site2 with a secret.")
        try:
            secret = _resolve_secret(args.secret, args.secret_env)
        except ValueError as exc:
            parser.error(str(exc))
        link_id = derive_link_id(secret, args.site1, args.site2, scheme)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    link_status = asyncio.run(
        check_link(
            link_id=link_id,
            remote_site=normalize_site(args.remote_site),
            path_prefix=args.path_prefix,
            timeout=args.timeout,
            scheme=scheme,
        )
    )
    print(link_status.value)
    sys.exit(0 if link_status is LinkStatus.LINKED else 1)


if __name__ == "__main__":  # pragma: no cover
    main()
