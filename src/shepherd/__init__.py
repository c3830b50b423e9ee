"""Run lifecycle engine for autonomous issue execution."""

__version__ = "0.1.0"
