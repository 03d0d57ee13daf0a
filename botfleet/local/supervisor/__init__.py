"""
The Supervisor package.
Manages the lifecycle of the fleet's worker processes.

This package contains the central ProcessManager class and its helper modules,
which together handle spawning, exit classification, rate-limited restarts,
message relay and graceful shutdown of all workers.
"""
from .supervisor import ProcessManager
from .worker import WorkerHandle, WorkerSpec, WorkerState
from .policy import ExitCause, RestartAction, RestartDecision, classify_exit, decide_restart

__all__ = [
    'ProcessManager',
    'WorkerHandle', 'WorkerSpec', 'WorkerState',
    'ExitCause', 'RestartAction', 'RestartDecision', 'classify_exit', 'decide_restart',
]
