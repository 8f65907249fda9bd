"""Provision and deploy web sites on a single Linux VPS."""

__version__ = "0.4.0"
