"""FastAPI site link package."""

from .client import check_link
from .server import SiteLinkManager

__all__ = ["SiteLinkManager", "check_link"]
