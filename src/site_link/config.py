"""Configuration defaults for site links."""

from __future__ import annotations

# Prefix for storage keys; changing it re-namespaces every stored record.
KEY_PREFIX = "site_link_system"

# Transfer tokens are bucketed to the UTC hour, e.g. "2024-03-0513".
TIME_BUCKET_FORMAT = "%Y-%m-%d%H"

DEFAULT_SECRET_LENGTH = 32
DEFAULT_TIMEOUT_SECONDS = 10.0

DEFAULT_PATH_PREFIX = ""
SITE_LINK_CHECK_PATH = "/sites/site_link_check"

DEFAULT_SECRET_ENV_VAR = "SITE_LINK_SECRET"

CORS_ALLOW_METHODS = "GET, POST, HEAD, OPTIONS"
CORS_ALLOW_CREDENTIALS = "true"
CORS_EXPOSE_HEADERS = "Link"
