"""Baton CLI bootstrap."""

from __future__ import annotations

from baton.cli import app

if __name__ == "__main__":
    app()
