import sys
import asyncio
import logging
import setproctitle

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

from typing import List
from botfleet import settings
from botfleet.log import setup_logging
from botfleet.local import control_client
from botfleet.local.config import MergedSettings
from botfleet.local.supervisor import ProcessManager
from botfleet.web import serve as serve_control_api


def serve() -> int:
    """Starts the fleet and the control API, then blocks until shutdown."""
    config = MergedSettings()
    config.apply()
    setup_logging(logging.DEBUG if settings.VERBOSE_LOGGING else logging.INFO)
    setproctitle.setproctitle(f"{settings.PROCESS_TITLE_PREFIX} - Supervisor")

    log.info("Starting server...")
    if not settings.USER_DATA_DIR.is_dir():
        log.critical(f"User data directory '{settings.USER_DATA_DIR}' must exist.")
        return 1

    async def run() -> None:
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def notify_bot_kicked(identity: str) -> None:
            log.warning(f"Bot was kicked: {identity}")
            if settings.STOP_FLEET_ON_EJECTION:
                loop.call_soon_threadsafe(shutdown_event.set)

        manager = ProcessManager(notify_kicked=notify_bot_kicked)
        manager.start_all(config.build_worker_specs())
        log.info("AgentProcess started for all profiles")
        await serve_control_api(manager, shutdown_event)

    asyncio.run(run())
    return 0


def display_status() -> None:
    """Prints the state of every worker as reported by the running supervisor."""
    workers = control_client.fetch_status(settings.CONTROL_API_HOST, settings.CONTROL_API_PORT)
    if workers is None:
        print("\nSupervisor is STOPPED (control API unreachable).\n")
        return

    print("\n--- Fleet Status ---")
    if not workers:
        print("  (no workers)")
    for worker in workers:
        reason = f" | Reason: {worker['reason']}" if worker.get("reason") else ""
        print(f"  - {worker['identity']:<25} : PID {str(worker.get('pid') or '-'):<8} | "
              f"State: {worker['state'].upper()} | Restarts: {worker['restart_count']}{reason}")
    print("-" * 20 + "\n")


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  serve                      - Start all workers and the control API (default).")
    print("  status                     - Show the state of every worker.")
    print("  send <name> <message>      - Send a chat message to one worker.")
    print("  transcribe <message>       - Send a transcription to every running worker.")
    print("  stop                       - Stop all workers and the supervisor gracefully.")
    print("  help                       - Show this help message.")
    print()


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single console command.

    :param command: The main command string (e.g., 'serve', 'send').
    :param args: A list of arguments for the command.
    :return: The process exit code.
    """
    host, port = settings.CONTROL_API_HOST, settings.CONTROL_API_PORT
    log.debug(f"Executing command: {command}, args: {args}")

    if command == "serve":
        return serve()
    if command == "status":
        display_status()
        return 0
    if command == "send":
        if len(args) < 2:
            print("Usage: send <name> <message>")
            return 2
        return 0 if control_client.post_message(host, port, args[0], " ".join(args[1:])) else 1
    if command == "transcribe":
        if not args:
            print("Usage: transcribe <message>")
            return 2
        delivered = control_client.post_transcription(host, port, " ".join(args))
        print(f"Transcription delivered to {delivered} workers.")
        return 0
    if command in ("stop", "shutdown"):
        return 0 if control_client.request_shutdown(host, port) else 1
    if command == "help":
        print_help()
        return 0

    log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return 2


def main() -> None:
    """The main entry point for the console application."""
    args = sys.argv[1:]
    if "--verbose" in args:
        settings.VERBOSE_LOGGING = True
        logging.getLogger().setLevel(logging.DEBUG)
        args.remove("--verbose")

    command = args[0].lower() if args else "serve"
    try:
        sys.exit(execute_command(command, args[1:]))
    except Exception as e:
        log.critical(f"An error occurred: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
