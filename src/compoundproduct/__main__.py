"""Main entry point for running compound as a module.

Usage:
    python -m compoundproduct --help
    python -m compoundproduct run --dry-run
    python -m compoundproduct loop 10
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
