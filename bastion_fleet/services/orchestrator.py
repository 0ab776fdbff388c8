"""Fleet orchestrator: concurrent connect / execute / close across node sessions.

Each node gets its own :class:`NodeSession`, which owns the blocking
:class:`SessionBridge` plus a one-thread executor and an ``asyncio.Lock``.
All work for a node is funnelled through that single worker thread, so
requests against one remote shell are strictly serialized while different
nodes run in parallel without blocking the event loop.

Connect is all-or-nothing: if any node fails, every established session is
closed and :class:`FleetConnectError` is raised. Close is best effort: a
failure on one node never stops the others from being torn down.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Callable, Iterable, Optional, Sequence

from bastion_fleet.config import Settings, settings
from bastion_fleet.errors import FleetBusyError, FleetConnectError, SessionUnavailableError
from bastion_fleet.models.fleet import (
    CommandResult,
    ConnectOutcome,
    NodeOutput,
    NodeStatus,
    ServerRecord,
)
from bastion_fleet.services.session_bridge import SessionBridge
from bastion_fleet.utils.logging import get_logger

log = get_logger(__name__)

BridgeFactory = Callable[[ServerRecord, Settings], SessionBridge]


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class NodeSession:
    """Single-owner handle for one node's bridge."""

    def __init__(self, node: str, bridge: SessionBridge) -> None:
        self.node = node
        self.bridge = bridge
        self._lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ssh-{node}")

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def connect(
        self,
        ready_markers: Sequence[str],
        shell_markers: Optional[Sequence[str]] = None,
    ) -> None:
        async with self._lock:
            await self._run(
                partial(self.bridge.connect, ready_markers, self.node, shell_markers),
            )

    async def execute(
        self,
        command: str,
        completion_markers: Optional[Sequence[str]] = None,
    ) -> CommandResult:
        async with self._lock:
            return await self._run(self.bridge.execute, command, completion_markers)

    async def close(self) -> None:
        async with self._lock:
            try:
                await self._run(self.bridge.close)
            finally:
                self._executor.shutdown(wait=False)

    def status(self) -> NodeStatus:
        return NodeStatus(
            node=self.node,
            state=self.bridge.state.value,
            alive=self.bridge.is_alive,
        )


class Orchestrator:
    """Holds the fleet of node sessions for one bastion."""

    def __init__(
        self,
        cfg: Settings | None = None,
        bridge_factory: BridgeFactory | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._bridge_factory: BridgeFactory = bridge_factory or SessionBridge
        self.server: Optional[ServerRecord] = None
        self._sessions: dict[str, NodeSession] = {}
        # connect and close swap the whole session collection
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return bool(self._sessions)

    @property
    def nodes(self) -> list[str]:
        return list(self._sessions)

    def status(self) -> list[NodeStatus]:
        return [session.status() for session in self._sessions.values()]

    # ── connect ───────────────────────────────────────────────────────

    async def connect(
        self,
        server: ServerRecord,
        nodes: Iterable[str],
    ) -> dict[str, ConnectOutcome]:
        """Connect every node concurrently; all of them or none.

        Raises :class:`FleetConnectError` (after closing whatever did connect)
        if a single node fails, and :class:`FleetBusyError` if the fleet is
        already connected. Overlapping calls are serialized.
        """
        targets = list(dict.fromkeys(n.strip() for n in nodes if n and n.strip()))
        if not targets:
            raise ValueError("No nodes to connect to")

        async with self._lock:
            if self._sessions:
                raise FleetBusyError(
                    f"Fleet is already connected to {len(self._sessions)} node(s); close it first",
                )
            return await self._connect_locked(server, targets)

    async def _connect_locked(
        self,
        server: ServerRecord,
        targets: list[str],
    ) -> dict[str, ConnectOutcome]:
        pending = {
            node: NodeSession(node, self._bridge_factory(server.model_copy(), self._cfg))
            for node in targets
        }
        log.info("fleet.connecting", host=server.host, nodes=targets)

        results = await asyncio.gather(
            *(
                session.connect([self._cfg.menu_marker], [self._cfg.shell_marker])
                for session in pending.values()
            ),
            return_exceptions=True,
        )

        outcomes: dict[str, ConnectOutcome] = {}
        for node, result in zip(pending, results):
            if isinstance(result, BaseException):
                outcomes[node] = ConnectOutcome(
                    node=node, connected=False, error=_describe(result),
                )
            else:
                outcomes[node] = ConnectOutcome(node=node, connected=True)

        if not all(outcome.connected for outcome in outcomes.values()):
            for node, outcome in outcomes.items():
                if not outcome.connected:
                    log.error("fleet.connect_failed", node=node, error=outcome.error)
            # failed bridges are already released; this closes the rest and
            # stops every worker thread
            await self._close_sessions(pending)
            raise FleetConnectError(outcomes)

        self.server = server
        self._sessions = pending
        log.info("fleet.connected", host=server.host, nodes=len(pending))
        return outcomes

    # ── execute ───────────────────────────────────────────────────────

    async def execute(
        self,
        command: str,
        completion_markers: Optional[Sequence[str]] = None,
    ) -> list[NodeOutput]:
        """Run *command* on every node at once; one labelled result per node."""
        if not self._sessions:
            raise SessionUnavailableError("Fleet is not connected")

        sessions = list(self._sessions.values())
        log.info("fleet.exec", command=command, nodes=len(sessions))
        results = await asyncio.gather(
            *(session.execute(command, completion_markers) for session in sessions),
            return_exceptions=True,
        )

        outputs: list[NodeOutput] = []
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                log.error("fleet.exec_failed", node=session.node, error=str(result))
                outputs.append(
                    NodeOutput(node=session.node, success=False, error=_describe(result)),
                )
            else:
                outputs.append(
                    NodeOutput(
                        node=session.node,
                        output=result.output,
                        timed_out=result.timed_out,
                    ),
                )
        return outputs

    # ── close ─────────────────────────────────────────────────────────

    async def close(self) -> list[NodeOutput]:
        """Close every session. Errors are logged and reported, never raised."""
        async with self._lock:
            sessions, self._sessions = self._sessions, {}
            self.server = None
            return await self._close_sessions(sessions)

    async def _close_sessions(self, sessions: dict[str, NodeSession]) -> list[NodeOutput]:
        results: list[NodeOutput] = []
        for node, session in sessions.items():
            try:
                await session.close()
            except Exception as exc:
                log.error("fleet.close_failed", node=node, error=str(exc))
                results.append(NodeOutput(node=node, success=False, error=_describe(exc)))
            else:
                results.append(NodeOutput(node=node))
        if sessions:
            log.info("fleet.closed", nodes=len(sessions))
        return results


# ── Singleton instance ────────────────────────────────────────────────────

fleet = Orchestrator()
