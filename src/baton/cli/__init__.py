"""Command line interface for Baton."""

from baton.cli.app import app

__all__ = ["app"]
