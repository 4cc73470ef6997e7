"""Layered proxy tunnels with per-user traffic accounting."""

__version__ = "0.1.0"