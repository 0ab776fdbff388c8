"""One SSH session through the bastion to one node.

A :class:`SessionBridge` owns one paramiko transport and one PTY shell
channel. It authenticates (public key, then keyboard-interactive TOTP),
walks the bastion menu to the node, and afterwards behaves like a blocking
RPC link: :meth:`SessionBridge.execute` sends a command line and returns the
transcript up to the completion marker.

Everything here blocks; the orchestrator runs it on worker threads.
"""

from __future__ import annotations

import socket
import threading
import time
from enum import Enum
from typing import Callable, Optional, Sequence

import paramiko

from bastion_fleet.config import Settings, settings
from bastion_fleet.errors import (
    AuthError,
    BastionConnectionError,
    BastionError,
    ChannelError,
    CloseError,
    InvalidAddressError,
    ProtocolTimeoutError,
    SessionIOError,
    SessionUnavailableError,
)
from bastion_fleet.models.fleet import CommandResult, ServerRecord
from bastion_fleet.services import prompt
from bastion_fleet.services.challenge import ChallengeResponder
from bastion_fleet.services.totp import decode_secret
from bastion_fleet.utils.logging import get_logger

log = get_logger(__name__)


class SessionState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    authenticating = "authenticating"
    channel_open = "channel_open"
    ready = "ready"
    executing = "executing"
    closing = "closing"
    closed = "closed"
    failed = "failed"


# close() on any of these is a no-op
_INACTIVE = frozenset(
    {SessionState.disconnected, SessionState.closed, SessionState.failed},
)


def parse_ipv4(host: str) -> str:
    """Validate a dotted-quad bastion address and return it normalised."""
    parts = host.strip().split(".")
    if len(parts) != 4 or not all(
        p.isascii() and p.isdigit() and int(p) <= 255 for p in parts
    ):
        raise InvalidAddressError(f"Invalid IPv4 address: {host!r}")
    return ".".join(str(int(p)) for p in parts)


class SessionBridge:
    """Blocking SSH session to one node behind the bastion."""

    def __init__(
        self,
        server: ServerRecord,
        cfg: Settings | None = None,
        *,
        socket_factory: Callable[..., socket.socket] = socket.create_connection,
        transport_factory: Callable[[socket.socket], paramiko.Transport] = paramiko.Transport,
        key_loader: Callable[[str], paramiko.PKey] = paramiko.PKey.from_path,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.server = server
        self._cfg = cfg or settings
        self._socket_factory = socket_factory
        self._transport_factory = transport_factory
        self._key_loader = key_loader
        self._clock = clock
        self._sleep = sleep

        self.node: Optional[str] = None
        self.state = SessionState.disconnected
        self._transport: Optional[paramiko.Transport] = None
        self._channel: Optional[paramiko.Channel] = None
        # the remote shell is not re-entrant: one request at a time
        self._lock = threading.Lock()

    # ── state ─────────────────────────────────────────────────────────

    @property
    def label(self) -> str:
        return self.node or self.server.host

    @property
    def is_alive(self) -> bool:
        return self.state in (SessionState.ready, SessionState.executing)

    def _set_state(self, state: SessionState) -> None:
        log.debug("session.state", node=self.label, old=self.state.value, new=state.value)
        self.state = state

    def _fail(self) -> None:
        """Mark the session dead and drop the channel and transport."""
        self._set_state(SessionState.failed)
        channel, transport = self._channel, self._transport
        self._channel = None
        self._transport = None
        for resource in (channel, transport):
            if resource is None:
                continue
            try:
                resource.close()
            except (paramiko.SSHException, OSError) as exc:
                log.debug("session.release_failed", node=self.label, error=str(exc))

    # ── connect ───────────────────────────────────────────────────────

    def connect(
        self,
        ready_markers: Sequence[str],
        node: Optional[str] = None,
        shell_markers: Optional[Sequence[str]] = None,
    ) -> None:
        """Connect, authenticate, open the shell and (optionally) pick *node*.

        The first entry of *ready_markers* is the bastion menu marker we expect;
        any other entry that shows up instead fails the connect.
        """
        if not ready_markers:
            raise ValueError("ready_markers must not be empty")

        with self._lock:
            if self.state is not SessionState.disconnected:
                raise SessionUnavailableError(
                    f"{self.label}: cannot connect from state {self.state.value}",
                )
            self.node = node
            try:
                self._connect_locked(list(ready_markers), node, shell_markers)
            except BastionError as exc:
                log.error("session.connect_failed", node=self.label, error=str(exc))
                self._fail()
                raise
            except Exception:
                log.exception("session.connect_crashed", node=self.label)
                self._fail()
                raise

    def _connect_locked(
        self,
        ready_markers: list[str],
        node: Optional[str],
        shell_markers: Optional[Sequence[str]],
    ) -> None:
        host = parse_ipv4(self.server.host)
        port = self.server.port

        self._set_state(SessionState.connecting)
        log.info("session.connecting", host=host, port=port, node=node)
        try:
            sock = self._socket_factory((host, port), timeout=self._cfg.connect_timeout)
        except OSError as exc:
            raise BastionConnectionError(f"Connect to {host}:{port} failed: {exc}") from exc

        transport = self._transport_factory(sock)
        self._transport = transport
        try:
            transport.start_client(timeout=self._cfg.connect_timeout)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise BastionConnectionError(f"SSH handshake with {host} failed: {exc}") from exc
        transport.auth_timeout = self._cfg.auth_timeout

        self._set_state(SessionState.authenticating)
        self._authenticate(transport)

        self._channel = self._open_shell(transport)
        self._set_state(SessionState.channel_open)

        expected = ready_markers[0]
        match = self._wait(ready_markers, self._cfg.menu_timeout)
        if match.marker != expected:
            seen = match.marker or ("remote EOF" if match.eof else "nothing")
            raise ProtocolTimeoutError(
                f"Bastion menu marker {expected!r} not seen within "
                f"{self._cfg.menu_timeout:g}s (got {seen})",
            )

        if node:
            markers = list(shell_markers or [self._cfg.shell_marker])
            prompt.send_line(self._channel, node)
            match = self._wait(markers, self._cfg.node_timeout)
            if not match.matched:
                raise ProtocolTimeoutError(
                    f"Shell prompt of node {node} not seen within "
                    f"{self._cfg.node_timeout:g}s",
                )

        self._set_state(SessionState.ready)
        log.info("session.connected", host=host, node=node)

    def _authenticate(self, transport: paramiko.Transport) -> None:
        server = self.server
        try:
            key = self._key_loader(server.key_path)
            remaining = transport.auth_publickey(server.user, key)
        except Exception as exc:
            log.warning("session.pubkey_failed", node=self.label, error=str(exc))
            if not server.secret_code:
                raise AuthError(f"Public key authentication failed: {exc}") from exc
            self._authenticate_mfa(transport, server.secret_code)
        else:
            # partial success: key accepted, server still wants more methods
            if not transport.is_authenticated() and server.secret_code:
                log.info("session.pubkey_partial", node=self.label, remaining=remaining)
                self._authenticate_mfa(transport, server.secret_code)

        if not transport.is_authenticated():
            raise AuthError("Authentication failed")

    def _authenticate_mfa(self, transport: paramiko.Transport, secret: str) -> None:
        # Fail before the transport thread ever calls into the responder
        decode_secret(secret)
        responder = ChallengeResponder(
            secret,
            mfa_marker=self._cfg.mfa_marker,
            time_bias=self._cfg.totp_time_bias,
        )
        try:
            transport.auth_interactive(self.server.user, responder.handler)
        except (paramiko.SSHException, OSError) as exc:
            raise AuthError(f"MFA authentication failed: {exc}") from exc

    def _open_shell(self, transport: paramiko.Transport) -> paramiko.Channel:
        try:
            channel = transport.open_session(timeout=self._cfg.auth_timeout)
            channel.get_pty(term=self._cfg.pty_term)
            channel.invoke_shell()
        except (paramiko.SSHException, OSError) as exc:
            raise ChannelError(f"Shell channel setup failed: {exc}") from exc
        channel.settimeout(0.0)
        return channel

    def _wait(self, markers: Sequence[str], timeout: float) -> prompt.MarkerMatch:
        return prompt.wait_for(
            self._channel,
            markers,
            timeout,
            poll_interval=self._cfg.poll_interval,
            chunk_size=self._cfg.read_chunk_size,
            clock=self._clock,
            sleep=self._sleep,
        )

    # ── execute ───────────────────────────────────────────────────────

    def completion_markers(self) -> list[str]:
        if self._cfg.completion_markers:
            return list(self._cfg.completion_markers)
        if self.node:
            return [self.node]
        return [self._cfg.shell_marker]

    def execute(
        self,
        command: str,
        completion_markers: Optional[Sequence[str]] = None,
    ) -> CommandResult:
        """Send *command* and return everything printed until a completion marker.

        The transcript includes the remote echo of the command. If no marker
        shows up within ``exec_timeout`` the partial transcript is returned
        with ``timed_out`` set, or :class:`ProtocolTimeoutError` is raised when
        ``exec_timeout_is_error`` is enabled.
        """
        markers = list(completion_markers or self.completion_markers())
        with self._lock:
            if self.state is not SessionState.ready:
                raise SessionUnavailableError(
                    f"{self.label}: channel unavailable ({self.state.value})",
                )
            self._set_state(SessionState.executing)
            started = self._clock()
            try:
                prompt.send_line(self._channel, command)
                match = self._wait(markers, self._cfg.exec_timeout)
                if match.eof and not match.matched:
                    raise SessionIOError(
                        f"{self.label}: remote closed the channel during {command!r}",
                    )
            except SessionIOError as exc:
                log.error("session.exec_failed", node=self.label, error=str(exc))
                self._fail()
                raise
            self._set_state(SessionState.ready)
            elapsed = self._clock() - started

        if not match.matched:
            log.warning(
                "session.exec_timeout",
                node=self.label,
                command=command,
                timeout=self._cfg.exec_timeout,
                received=len(match.transcript),
            )
            if self._cfg.exec_timeout_is_error:
                raise ProtocolTimeoutError(
                    f"{self.label}: no completion marker within "
                    f"{self._cfg.exec_timeout:g}s for {command!r}",
                )

        return CommandResult(
            node=self.label,
            command=command,
            output=match.transcript,
            marker=match.marker,
            timed_out=not match.matched,
            elapsed_time=elapsed,
        )

    # ── close ─────────────────────────────────────────────────────────

    def close(self) -> None:
        """Send EOF, wait for the remote side, then close channel and transport.

        Safe to call more than once, and on a session that never connected or
        already failed.
        """
        with self._lock:
            if self.state in _INACTIVE:
                return
            self._set_state(SessionState.closing)
            channel, transport = self._channel, self._transport
            self._channel = None
            self._transport = None
            try:
                if channel is not None:
                    channel.shutdown_write()
                    self._await(lambda: channel.eof_received, "remote EOF")
                    channel.close()
                    self._await(lambda: channel.closed, "channel close")
            except (paramiko.SSHException, OSError) as exc:
                raise CloseError(f"{self.label}: close failed: {exc}") from exc
            finally:
                if transport is not None:
                    transport.close()
                self._set_state(SessionState.closed)
        log.info("session.closed", node=self.label)

    def _await(self, condition: Callable[[], object], what: str) -> None:
        deadline = self._clock() + self._cfg.close_timeout
        while not condition():
            if self._clock() >= deadline:
                raise CloseError(f"{self.label}: timed out waiting for {what}")
            self._sleep(self._cfg.poll_interval)
