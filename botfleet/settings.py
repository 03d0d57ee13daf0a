"""
This module contains the configuration settings for the BotFleet supervisor.
It defines paths, restart policy constants, logging limits and the control API address.
Values can be overridden through the environment or a .env file.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
USER_DATA_DIR = pathlib.Path(os.getenv("BOTFLEET_USER_DATA", str(BASE_DIR / "userData")))
SETTINGS_JSON_PATH = USER_DATA_DIR / "settings.json"
PROFILES_DIR = USER_DATA_DIR / "profiles"
RUNLOGS_DIR = USER_DATA_DIR / "runlogs"
APP_LOG_PATH = USER_DATA_DIR / "app.log"

#* --- Logging ---
APP_LOG_MAX_BYTES = 500 * 1024        # Supervisor-wide sink
WORKER_LOG_MAX_BYTES = 5 * 1024 * 1024  # Per-worker sink
LOG_BACKUP_COUNT = 5
ECHO_WORKER_OUTPUT = os.getenv("ECHO_WORKER_OUTPUT", "False").lower() in ('true', '1', 't')
VERBOSE_LOGGING = False

#* --- Worker Process ---
PYTHON_EXECUTABLE = os.getenv("PYTHON_EXECUTABLE", sys.executable)
WORKER_MODULE = "botfleet.local.script_entry.agent"
# "package.module:callable" returning the agent object for a profile
AGENT_FACTORY = os.getenv("AGENT_FACTORY", "")
CREDENTIAL_ENV_VAR = "OPENAI_API_KEY"
PROCESS_TITLE_PREFIX = "BotFleet"

#* --- Restart Policy ---
EJECTED_EXIT_CODE = 128
RESTART_WINDOW_SECONDS = 2.0
MAX_RESTARTS = 3
GRACEFUL_SHUTDOWN_TIMEOUT = 10  # seconds before force-killing
PIPE_DRAIN_TIMEOUT = 2          # seconds to wait for output readers on exit

#* --- Control API ---
CONTROL_API_HOST = os.getenv("CONTROL_API_HOST", "127.0.0.1")
CONTROL_API_PORT = int(os.getenv("CONTROL_API_PORT", "10101"))
STOP_FLEET_ON_EJECTION = os.getenv("STOP_FLEET_ON_EJECTION", "False").lower() in ('true', '1', 't')

#* --- MODIFIABLE SETTINGS (Changeable through userData/settings.json) ---
MODIFIABLE_SETTINGS = {
    "GRACEFUL_SHUTDOWN_TIMEOUT",
    "WORKER_LOG_MAX_BYTES", "LOG_BACKUP_COUNT", "ECHO_WORKER_OUTPUT",
    "CONTROL_API_PORT", "STOP_FLEET_ON_EJECTION",
}
