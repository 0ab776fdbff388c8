"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Force settings to use test-safe defaults before any import
os.environ.setdefault("BASTION_API_KEY", "")
os.environ.setdefault("BASTION_LOG_LEVEL", "WARNING")
os.environ.setdefault("BASTION_HISTORY_FILE", "")

import pytest
from httpx import ASGITransport, AsyncClient

from bastion_fleet.config import Settings
from tests.fakes import BridgeFactory

FLEET_YAML = """\
default-server: prod
default-node-group: web
servers:
  - name: prod
    host: 10.0.0.1
    port: 2222
    user: ops
    key_path: ~/.ssh/id_ed25519
  - name: prod-mfa
    host: 10.0.0.2
    user: ops
    key_path: /keys/id_rsa
    secret_code: GEZDGNBVGY3TQOJQ
node-groups:
  - group: web
    nodes: [10.1.0.11, 10.1.0.12]
  - group: db
    nodes: [10.2.0.21, 10.2.0.22, 10.2.0.23]
"""


@pytest.fixture
def cfg():
    """Settings with short virtual-time deadlines."""
    return Settings(
        menu_timeout=5,
        node_timeout=5,
        exec_timeout=30,
        close_timeout=5,
        poll_interval=0.3,
    )


@pytest.fixture
def fleet_file(tmp_path):
    path = tmp_path / "fleet.yaml"
    path.write_text(FLEET_YAML, encoding="utf-8")
    return path


@pytest.fixture
def bridge_factory():
    return BridgeFactory()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client(cfg, bridge_factory, fleet_file, monkeypatch):
    """Async test client with an orchestrator wired to fake bastion transports."""
    from bastion_fleet.config import settings
    from bastion_fleet.services.orchestrator import Orchestrator

    monkeypatch.setattr(settings, "fleet_file", str(fleet_file))
    monkeypatch.setattr(settings, "api_key", "")

    orchestrator = Orchestrator(cfg, bridge_factory=bridge_factory)

    # Patch the singleton everywhere it was imported by name
    import bastion_fleet.main as main_mod
    import bastion_fleet.routers.fleet as rf
    import bastion_fleet.routers.health as rh

    monkeypatch.setattr(main_mod, "fleet", orchestrator)
    monkeypatch.setattr(rf, "fleet", orchestrator)
    monkeypatch.setattr(rh, "fleet", orchestrator)

    from bastion_fleet.main import app as fastapi_app

    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await orchestrator.close()
