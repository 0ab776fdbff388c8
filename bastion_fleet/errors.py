"""Exception taxonomy for bastion sessions and the fleet orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bastion_fleet.models.fleet import ConnectOutcome


class BastionError(Exception):
    """Base class for every error raised by this package."""


class InvalidSecretError(BastionError):
    """The TOTP shared secret is not valid base32."""


class InvalidAddressError(BastionError):
    """The bastion host is not a dotted IPv4 address."""


class BastionConnectionError(BastionError):
    """TCP connect or SSH handshake with the bastion failed."""


class AuthError(BastionError):
    """Public-key and keyboard-interactive authentication both failed."""


class ChannelError(BastionError):
    """The PTY or shell channel could not be set up."""


class ProtocolTimeoutError(BastionError):
    """An expected marker was not seen before its deadline."""


class SessionIOError(BastionError):
    """A read or write on the shell channel failed."""


class SessionUnavailableError(SessionIOError):
    """The session is not ready: it failed earlier or was closed."""


class CloseError(BastionError):
    """Tearing down the channel or transport failed."""


class FleetConfigError(BastionError):
    """The fleet file is missing or names an unknown server / node group."""


class FleetBusyError(BastionError):
    """The fleet already holds sessions; close it before connecting again."""


class FleetConnectError(BastionError):
    """At least one node failed to connect; the whole fleet was rolled back."""

    def __init__(self, outcomes: dict[str, "ConnectOutcome"]) -> None:
        self.outcomes = outcomes
        self.failures = {
            node: outcome.error or "unknown error"
            for node, outcome in outcomes.items()
            if not outcome.connected
        }
        super().__init__(
            f"{len(self.failures)} of {len(outcomes)} node(s) failed to connect: "
            + ", ".join(sorted(self.failures))
        )
