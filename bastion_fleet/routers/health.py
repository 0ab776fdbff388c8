"""Health-check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from bastion_fleet import __version__
from bastion_fleet.auth import require_api_key
from bastion_fleet.models.fleet import FleetStatusResponse, HealthResponse
from bastion_fleet.services.orchestrator import fleet

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def service_health() -> HealthResponse:
    """Basic liveness probe (no auth required)."""
    return HealthResponse(status="ok", version=__version__)


@router.get(
    "/fleet",
    response_model=FleetStatusResponse,
    dependencies=[Depends(require_api_key)],
)
async def fleet_status() -> FleetStatusResponse:
    """State of every held node session."""
    return FleetStatusResponse(connected=fleet.is_connected, nodes=fleet.status())
