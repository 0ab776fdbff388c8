"""Marker-driven reader for an interactive (non line-oriented) shell channel.

The bastion menu and the node shells never say "done"; the only structure we
rely on is that a known marker substring (``Opt>``, ``$``, the node id...)
shows up somewhere in what the channel prints. :func:`wait_for` reads until
one does or the deadline passes, which turns the channel into something that
can be driven like a synchronous request/response link.
"""

from __future__ import annotations

import codecs
import socket
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from bastion_fleet.errors import SessionIOError
from bastion_fleet.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 0.3
DEFAULT_CHUNK_SIZE = 1024

# A non-blocking paramiko channel raises socket.timeout when nothing is buffered
_NO_DATA = (socket.timeout, BlockingIOError)


class ShellChannel(Protocol):
    def recv(self, nbytes: int) -> bytes: ...
    def sendall(self, data: bytes) -> None: ...


@dataclass(frozen=True)
class MarkerMatch:
    """Outcome of one :func:`wait_for` call.

    ``marker`` is empty when nothing matched; ``eof`` is set when the remote
    side closed the channel during the wait.
    """

    marker: str
    transcript: str
    eof: bool = False

    @property
    def matched(self) -> bool:
        return bool(self.marker)


def _find_marker(transcript: str, markers: list[str]) -> str:
    for marker in markers:
        if marker and marker in transcript:
            return marker
    return ""


def wait_for(
    channel: ShellChannel,
    markers: Iterable[str],
    timeout: float,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> MarkerMatch:
    """Read from *channel* until one of *markers* appears or *timeout* elapses.

    The whole transcript accumulated during this call is searched after every
    read, so a marker split across two reads is still found. Bytes are decoded
    incrementally; an incomplete UTF-8 sequence at the end of a read is held
    back until the rest of it arrives.

    Returns the first marker (in *markers* order) found, or ``""`` with the
    partial transcript if the deadline passed or the remote side sent EOF
    (the latter with ``eof`` set).
    Raises :class:`SessionIOError` on any other read failure.
    """
    wanted = list(markers)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts: list[str] = []
    transcript = ""
    deadline = clock() + timeout

    while clock() < deadline:
        try:
            data = channel.recv(chunk_size)
        except _NO_DATA:
            sleep(poll_interval)
            continue
        except OSError as exc:
            raise SessionIOError(f"Read failed: {exc}") from exc

        if not data:
            parts.append(decoder.decode(b"", final=True))
            transcript = "".join(parts)
            log.debug("prompt.eof", received=len(transcript))
            found = _find_marker(transcript, wanted)
            return MarkerMatch(found, transcript, eof=True)

        text = decoder.decode(data)
        if not text:
            continue
        parts.append(text)
        transcript = "".join(parts)

        found = _find_marker(transcript, wanted)
        if found:
            return MarkerMatch(found, transcript)

    return MarkerMatch("", "".join(parts))


def send_line(channel: ShellChannel, text: str) -> None:
    """Send *text* followed by a carriage return (the PTY's Enter key)."""
    try:
        channel.sendall(f"{text}\r".encode("utf-8"))
    except OSError as exc:
        raise SessionIOError(f"Write failed: {exc}") from exc
