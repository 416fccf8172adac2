"""Minimal FastAPI integration example."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from site_link.protocol import SiteLinkRecord
from site_link.server import SiteLinkManager

links = SiteLinkManager(local_site="a.example")


@asynccontextmanager
async def lifespan(app: FastAPI):
    created = await links.create_record("Partner B")
    await links.save_record(
        SiteLinkRecord(
            id=created.id,
            label="Partner B",
            secret=created.secret,
            site1="a.example",
            site2="b.example",
        )
    )
    yield


app = FastAPI(lifespan=lifespan)
links.install(app)
