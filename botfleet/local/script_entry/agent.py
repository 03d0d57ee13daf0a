"""
This is a minimal entry point script for a worker process.

It parses the supervisor's fixed argument shape, builds the agent for the
profile through the configured factory, relays channel messages from stdin to
the agent and maps the agent's outcome onto the exit code contract:
0 for a clean stop, 128 when the agent was ejected, anything else is a crash.
"""
import sys
import json
import signal
import logging
import argparse
import importlib
import threading
import setproctitle
from pathlib import Path
from typing import Any, Callable, List, Optional

from botfleet import settings
from botfleet.local import channel

log = logging.getLogger("agent")


class AgentEjected(Exception):
    """Raised by an agent when its environment removed it (e.g. kicked from the server)."""


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one supervised agent.")
    parser.add_argument("-p", "--profile", required=True, type=Path, help="Path to the agent profile JSON.")
    parser.add_argument("-u", "--user-data", required=True, type=Path, help="Shared user data directory.")
    parser.add_argument("-e", "--app-path", required=True, type=Path, help="Installation root.")
    parser.add_argument("-l", "--load-memory", default="false", help="Reload memory from the previous session.")
    args = parser.parse_args(argv)
    args.load_memory = str(args.load_memory).lower() in ('true', '1', 't', 'yes', 'y')
    return args


def resolve_factory(path: str) -> Callable[..., Any]:
    """
    Imports the agent factory from a 'package.module:callable' path.

    :raises ValueError: If the path is empty or malformed.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"AGENT_FACTORY must look like 'package.module:callable', got '{path}'.")
    return getattr(importlib.import_module(module_name), attr)


def relay_messages(agent: Any, stream) -> None:
    """Dispatches channel messages to the agent until the channel closes."""
    handlers = {
        channel.TRANSCRIPTION: getattr(agent, "on_transcription", None),
        channel.MANUAL_CHAT: getattr(agent, "on_manual_chat", None),
    }
    for message_type, data in channel.read_messages(stream):
        handler = handlers.get(message_type)
        if handler is None:
            log.debug(f"Agent has no handler for '{message_type}' messages.")
            continue
        try:
            handler(data)
        except Exception as e:
            log.error(f"Agent failed to handle a '{message_type}' message: {e}", exc_info=True)


def run(argv: Optional[List[str]] = None, stdin=None) -> int:
    """Runs the agent and returns the process exit code."""
    args = parse_args(argv)
    name = args.profile.stem
    setproctitle.setproctitle(f"{settings.PROCESS_TITLE_PREFIX} - Agent {name}")

    try:
        profile = json.loads(args.profile.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log.critical(f"Could not read profile '{args.profile}': {e}")
        return 1

    try:
        factory = resolve_factory(settings.AGENT_FACTORY)
    except (ValueError, ImportError, AttributeError) as e:
        log.critical(f"No usable agent factory: {e}")
        return 1

    agent = factory(profile, args.user_data, args.load_memory)

    def handle_shutdown_signal(signum, frame):
        log.info(f"Signal {signum} received, stopping agent '{name}'.")
        stop = getattr(agent, "stop", None)
        if stop is not None:
            stop()
        else:
            raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, handle_shutdown_signal)
    signal.signal(signal.SIGINT, handle_shutdown_signal)

    stream = stdin if stdin is not None else sys.stdin.buffer
    threading.Thread(target=relay_messages, args=(agent, stream), daemon=True, name="ChannelReader").start()

    try:
        result = agent.run()
    except AgentEjected as e:
        log.warning(f"Agent '{name}' was ejected: {e}")
        return settings.EJECTED_EXIT_CODE
    return int(result or 0)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s',
        stream=sys.stdout,
    )
    sys.exit(run())
