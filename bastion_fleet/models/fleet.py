"""Fleet data structures: server records, node groups, per-node results."""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ServerRecord(BaseModel):
    """A bastion as described in the fleet file. Read-only once loaded."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    host: str
    port: int = Field(default=22, ge=1, le=65535)
    user: str
    key_path: str
    secret_code: Optional[str] = None

    @field_validator("key_path")
    @classmethod
    def _expand_key_path(cls, value: str) -> str:
        return os.path.expanduser(value)


class NodeGroup(BaseModel):
    """Named list of node identifiers, as known to the bastion menu."""

    group: str
    nodes: list[str]


class CommandResult(BaseModel):
    """Transcript of one command run on one node."""

    node: str
    command: str
    output: str
    marker: str = ""
    timed_out: bool = False
    elapsed_time: float = 0.0


class ConnectOutcome(BaseModel):
    node: str
    connected: bool
    error: Optional[str] = None


class NodeOutput(BaseModel):
    """Per-node line of a fan-out result, labelled with its node."""

    node: str
    output: str = ""
    success: bool = True
    timed_out: bool = False
    error: Optional[str] = None


class NodeStatus(BaseModel):
    node: str
    state: str
    alive: bool


# ── API bodies ──────────────────────────────────────────────────────────


class ConnectRequest(BaseModel):
    """Request body for POST /fleet/connect.

    Either name a server / node group from the fleet file (falling back to its
    defaults) or list node ids explicitly.
    """

    server: Optional[str] = None
    node_group: Optional[str] = None
    nodes: list[str] = Field(default_factory=list)


class ConnectResponse(BaseModel):
    success: bool
    server: str
    outcomes: list[ConnectOutcome]
    error: Optional[str] = None


class ExecRequest(BaseModel):
    command: str = Field(min_length=1)


class ExecResponse(BaseModel):
    command: str
    results: list[NodeOutput]


class CloseResponse(BaseModel):
    results: list[NodeOutput]


class FleetStatusResponse(BaseModel):
    connected: bool
    nodes: list[NodeStatus]


class HealthResponse(BaseModel):
    status: str
    version: str
