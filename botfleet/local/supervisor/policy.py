"""
Restart policy for supervised workers.

Exit classification turns a raw exit into an ExitCause; decide_restart is a
pure function over that cause and the worker's restart bookkeeping. Crashes
that arrive closer together than RESTART_WINDOW_SECONDS accumulate, and the
breaker trips once more than MAX_RESTARTS have piled up in that window.
"""
import signal
from enum import Enum
from typing import Optional
from dataclasses import dataclass

from botfleet import settings

RESTART_LIMIT_EXCEEDED = "restart-limit-exceeded"


class ExitCause(Enum):
    CLEAN = "clean-stop"
    EJECTED = "ejection"
    INTENTIONAL = "intentional-stop"
    CRASH = "crash"


class RestartAction(Enum):
    RESTART = "restart"
    STOP_PERMANENTLY = "stop-permanently"


@dataclass(frozen=True)
class RestartDecision:
    action: RestartAction
    reason: str
    restart_count: int

    @property
    def should_restart(self) -> bool:
        return self.action is RestartAction.RESTART

    @property
    def circuit_open(self) -> bool:
        return self.reason == RESTART_LIMIT_EXCEEDED


def exit_signal(returncode: Optional[int]) -> Optional[str]:
    """Returns the signal name for a Popen returncode, or None if the process exited normally."""
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


def classify_exit(returncode: Optional[int], stop_requested: bool = False) -> ExitCause:
    """
    Maps a worker exit onto its cause.

    :param returncode: Popen returncode; negative values mean the process died from a signal.
    :param stop_requested: True when the supervisor itself asked this process to stop.
    """
    if stop_requested:
        return ExitCause.INTENTIONAL
    if returncode == 0:
        return ExitCause.CLEAN
    if returncode == settings.EJECTED_EXIT_CODE:
        return ExitCause.EJECTED
    # Signals nobody on our side sent count as crashes.
    return ExitCause.CRASH


def decide_restart(cause: ExitCause, restart_count: int, last_restart_time: float, now: float,
                   window: Optional[float] = None, max_restarts: Optional[int] = None) -> RestartDecision:
    """
    Decides what happens after a worker exit.

    :param cause: The classified exit cause.
    :param restart_count: Crash restarts counted in the current window.
    :param last_restart_time: When the worker was last (re)spawned, in seconds.
    :param now: Current time, same clock as last_restart_time.
    :return: The decision, carrying the updated restart count.
    """
    window = settings.RESTART_WINDOW_SECONDS if window is None else window
    max_restarts = settings.MAX_RESTARTS if max_restarts is None else max_restarts

    if cause is not ExitCause.CRASH:
        return RestartDecision(RestartAction.STOP_PERMANENTLY, cause.value, restart_count)

    if now - last_restart_time < window:
        restart_count += 1
    else:
        restart_count = 1

    if restart_count > max_restarts:
        return RestartDecision(RestartAction.STOP_PERMANENTLY, RESTART_LIMIT_EXCEEDED, restart_count)
    return RestartDecision(RestartAction.RESTART, cause.value, restart_count)
