"""Interactive command-line front end."""

from __future__ import annotations

import argparse
import asyncio
import sys
import threading
from pathlib import Path
from typing import Awaitable, Callable, Optional, TextIO

try:
    import readline
except ImportError:  # no GNU readline on Windows: no line editing or history
    readline = None

from bastion_fleet import __version__
from bastion_fleet.config import load_fleet_file, settings
from bastion_fleet.errors import FleetConfigError, FleetConnectError
from bastion_fleet.models.fleet import NodeOutput, ServerRecord
from bastion_fleet.services.orchestrator import Orchestrator
from bastion_fleet.utils.logging import get_logger, setup_logging

log = get_logger(__name__)

QUIT = "quit"
PROMPT = ">> "

LineReader = Callable[[str], Awaitable[str]]


async def _read_line(prompt: str) -> str:
    """Read one line of stdin on a daemon thread.

    ``input()`` cannot be interrupted, so the reading thread must never be
    one the event loop joins on shutdown (Ctrl-C would hang until Enter).
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _deliver(line: Optional[str], error: Optional[BaseException]) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(line)

    def _worker() -> None:
        try:
            line = input(prompt)
        except Exception as exc:  # EOFError and friends go to the awaiting task
            result = (None, exc)
        else:
            result = (line, None)
        if not loop.is_closed():
            loop.call_soon_threadsafe(_deliver, *result)

    threading.Thread(target=_worker, name="cli-input", daemon=True).start()
    return await future


# ── history ───────────────────────────────────────────────────────────────


def load_history(path: str, size: int = 1000) -> None:
    """Load saved command lines into readline's history, if there are any."""
    if readline is None or not path:
        return
    history = Path(path).expanduser()
    readline.set_history_length(size)
    if not history.is_file():
        return
    try:
        readline.read_history_file(str(history))
    except OSError as exc:
        log.warning("cli.history_unreadable", path=str(history), error=str(exc))


def save_history(path: str) -> None:
    """Persist this session's command lines for the next run."""
    if readline is None or not path:
        return
    history = Path(path).expanduser()
    try:
        history.parent.mkdir(parents=True, exist_ok=True)
        readline.write_history_file(str(history))
    except OSError as exc:
        log.warning("cli.history_unwritable", path=str(history), error=str(exc))


# ── session ───────────────────────────────────────────────────────────────


def format_result(result: NodeOutput) -> str:
    if not result.success:
        return f"{result.node} > error: {result.error}"
    header = f"======{result.node}======="
    if result.timed_out:
        header += " (timed out, partial output)"
    return f"{header}\n{result.output}"


async def run_session(
    server: ServerRecord,
    nodes: list[str],
    *,
    orchestrator: Optional[Orchestrator] = None,
    read_line: Optional[LineReader] = None,
    out: TextIO = sys.stdout,
) -> int:
    """Connect the fleet, then broadcast every entered line until ``quit``."""
    orch = orchestrator or Orchestrator()
    reader = read_line or _read_line

    try:
        await orch.connect(server, nodes)
    except FleetConnectError as exc:
        for node, error in exc.failures.items():
            print(f"{node} > connect failed: {error}", file=out)
        return 1

    try:
        while True:
            try:
                line = await reader(PROMPT)
            except EOFError:
                break
            command = line.strip()
            if not command:
                continue
            if command == QUIT:
                break
            for result in await orch.execute(command):
                print(format_result(result), file=out)
    finally:
        for result in await orch.close():
            if not result.success:
                print(f"{result.node} > close failed: {result.error}", file=out)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="bastion-fleet",
        description="Broadcast shell commands to nodes behind an SSH bastion",
    )
    parser.add_argument("-s", "--server", help="Server name from the fleet file")
    parser.add_argument("-n", "--node-group", help="Node group name from the fleet file")
    parser.add_argument(
        "-f",
        "--fleet-file",
        help=f"Path to the fleet file (default: {settings.fleet_file})",
    )
    parser.add_argument("--version", action="version", version=__version__)
    args = parser.parse_args(argv)

    setup_logging(settings.log_level, settings.log_json)

    try:
        fleet_file = load_fleet_file(args.fleet_file or settings.fleet_file)
        server, group = fleet_file.resolve(args.server, args.node_group)
    except FleetConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    load_history(settings.history_file, settings.history_size)
    try:
        return asyncio.run(run_session(server, group.nodes))
    except KeyboardInterrupt:
        print("CTRL-C", file=sys.stderr)
        return 130
    finally:
        save_history(settings.history_file)


if __name__ == "__main__":
    sys.exit(main())
