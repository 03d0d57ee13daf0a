"""
Web package: the control endpoint that drives the supervisor over HTTP.
"""

from .server import create_app, serve

__all__ = ["create_app", "serve"]
