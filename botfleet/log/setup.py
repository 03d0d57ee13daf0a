import sys
import logging
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler

from botfleet import settings

class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from worker output loggers
    and keeps them out of the supervisor-wide log file.
    """
    def filter(self, record):
        # The 'proc.' prefix is used by LogSink for worker stdout/stderr
        return not record.name.startswith('proc.')

class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw worker output."""

    def format(self, record):
        # Worker output is already a full line, only tag it with the worker name.
        if record.name.startswith('proc.'):
            return f"[{record.name.split('.', 1)[-1]}] {record.getMessage()}"

        # Otherwise, use the default formatting.
        # Temporarily change the format string for the superclass call.
        original_format = self._style._fmt
        self._style._fmt = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message

def setup_logging(console_level: int = logging.INFO, app_log_path: Optional[Path] = None) -> None:
    """
    Configures the root logger for the supervisor process.
    This sets up handlers for the console and the rotating app.log file,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param app_log_path: Where the supervisor-wide log goes. Defaults to settings.APP_LOG_PATH.
    """
    app_log_path = Path(app_log_path or settings.APP_LOG_PATH)

    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Rotating app.log Handler (supervisor events only) ---
    try:
        app_log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            app_log_path,
            mode="a",
            maxBytes=settings.APP_LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'))
        file_handler.addFilter(SubprocessLogFilter())
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.error(f"Failed to open supervisor log file '{app_log_path}': {e}. Logging to file will be disabled.")
