"""FastAPI application entry-point."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from bastion_fleet import __version__
from bastion_fleet.config import settings
from bastion_fleet.routers import fleet as fleet_router
from bastion_fleet.routers import health
from bastion_fleet.services.orchestrator import fleet
from bastion_fleet.utils.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    setup_logging(settings.log_level, settings.log_json)
    yield
    # Shutdown: close every node session
    await fleet.close()


app = FastAPI(
    title="Bastion Fleet",
    description="Broadcast shell commands to nodes behind an SSH bastion",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(fleet_router.router)
