"""
Local package for the BotFleet supervisor.

This package provides configuration loading, the worker message channel,
the control API client and the supervisor itself.
"""
