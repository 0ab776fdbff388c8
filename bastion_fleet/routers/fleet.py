"""Fleet lifecycle endpoints: connect, broadcast a command, close."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from bastion_fleet.auth import require_api_key
from bastion_fleet.config import load_fleet_file, settings
from bastion_fleet.errors import FleetBusyError, FleetConfigError, FleetConnectError
from bastion_fleet.models.fleet import (
    CloseResponse,
    ConnectRequest,
    ConnectResponse,
    ExecRequest,
    ExecResponse,
)
from bastion_fleet.services.orchestrator import fleet
from bastion_fleet.utils.logging import get_logger

log = get_logger(__name__)

router = APIRouter(prefix="/fleet", tags=["fleet"], dependencies=[Depends(require_api_key)])


@router.post("/connect", response_model=ConnectResponse)
async def connect_fleet(req: ConnectRequest, response: Response) -> ConnectResponse:
    """Connect every node of a node group (or an explicit node list).

    All-or-nothing: if one node fails, nothing stays connected and the
    response carries 502 with every node's outcome.
    """
    try:
        fleet_file = load_fleet_file(settings.fleet_file)
        server = fleet_file.server(req.server)
        nodes = req.nodes or fleet_file.node_group(req.node_group).nodes
    except FleetConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    log.info("api.connect", server=server.name, nodes=len(nodes))
    try:
        outcomes = await fleet.connect(server, nodes)
    except FleetConnectError as exc:
        response.status_code = status.HTTP_502_BAD_GATEWAY
        return ConnectResponse(
            success=False,
            server=server.name,
            outcomes=list(exc.outcomes.values()),
            error=str(exc),
        )
    except FleetBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return ConnectResponse(success=True, server=server.name, outcomes=list(outcomes.values()))


@router.post("/exec", response_model=ExecResponse)
async def exec_command(req: ExecRequest) -> ExecResponse:
    """Broadcast one command line to every connected node."""
    if not fleet.is_connected:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Fleet is not connected")
    results = await fleet.execute(req.command)
    return ExecResponse(command=req.command, results=results)


@router.post("/close", response_model=CloseResponse)
async def close_fleet() -> CloseResponse:
    """Tear down every session (best effort)."""
    return CloseResponse(results=await fleet.close())
