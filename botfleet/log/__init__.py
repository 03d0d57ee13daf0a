"""
Logging module for the application.
This module provides the process-wide logging setup and the per-worker log sink.
"""

from .setup import setup_logging
from .sink import LogSink

__all__ = ["setup_logging", "LogSink"]
