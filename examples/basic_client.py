"""Minimal client usage example."""

import asyncio

from site_link.client import check_link
from site_link.protocol import derive_link_id


def main() -> None:
    link_id = derive_link_id("shared-secret", "a.example", "b.example")
    status = asyncio.run(check_link(link_id=link_id, remote_site="b.example"))
    print(status.value)


if __name__ == "__main__":
    main()
