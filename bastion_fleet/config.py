"""Application settings loaded from environment variables, plus the fleet file."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from bastion_fleet.errors import FleetConfigError
from bastion_fleet.models.fleet import NodeGroup, ServerRecord


class Settings(BaseSettings):
    """All configuration is driven by environment variables (``BASTION_*``)."""

    # Bastion dialect
    menu_marker: str = "Opt>"
    mfa_marker: str = "OTP Code"
    shell_marker: str = "$"
    # Empty means "wait for the node id to reappear in the prompt"
    completion_markers: list[str] = Field(default_factory=list)
    totp_time_bias: int = 3
    pty_term: str = "xterm"

    # Timeouts (seconds)
    connect_timeout: float = 20.0
    auth_timeout: float = 10.0
    menu_timeout: float = 10.0
    node_timeout: float = 10.0
    exec_timeout: float = 20 * 60.0
    close_timeout: float = 10.0

    # Channel polling
    poll_interval: float = 0.3
    read_chunk_size: int = 1024

    # A command whose completion marker never shows up returns its partial
    # transcript unless this is set.
    exec_timeout_is_error: bool = False

    # Fleet file with server records and node groups
    fleet_file: str = "~/.config/bastion-fleet/fleet.yaml"

    # CLI command history (blank disables it)
    history_file: str = "~/.config/bastion-fleet/history"
    history_size: int = 1000

    # API key (blank disables the check)
    api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="BASTION_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


class FleetFile(BaseModel):
    """Parsed fleet file: every known bastion and node group."""

    model_config = ConfigDict(populate_by_name=True)

    default_server: str = Field(alias="default-server")
    default_node_group: str = Field(alias="default-node-group")
    servers: list[ServerRecord]
    node_groups: list[NodeGroup] = Field(alias="node-groups", default_factory=list)

    def server(self, name: Optional[str] = None) -> ServerRecord:
        wanted = name or self.default_server
        for record in self.servers:
            if record.name == wanted:
                return record
        raise FleetConfigError(f"Server not found in fleet file: {wanted}")

    def node_group(self, name: Optional[str] = None) -> NodeGroup:
        wanted = name or self.default_node_group
        for group in self.node_groups:
            if group.group == wanted:
                return group
        raise FleetConfigError(f"Node group not found in fleet file: {wanted}")

    def resolve(
        self,
        server: Optional[str] = None,
        group: Optional[str] = None,
    ) -> tuple[ServerRecord, NodeGroup]:
        """Pick a server and a node group, falling back to the file's defaults."""
        return self.server(server), self.node_group(group)


def load_fleet_file(path: str | Path) -> FleetFile:
    """Load and validate the fleet file (YAML)."""
    fleet_path = Path(path).expanduser()
    if not fleet_path.exists():
        raise FleetConfigError(f"Fleet file not found: {fleet_path}")

    with open(fleet_path, encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise FleetConfigError(f"Fleet file is not valid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise FleetConfigError(f"Fleet file must be a mapping: {fleet_path}")

    try:
        return FleetFile.model_validate(raw)
    except ValidationError as exc:
        raise FleetConfigError(f"Invalid fleet file {fleet_path}: {exc}") from exc


# Singleton – import this from anywhere
settings = Settings()
