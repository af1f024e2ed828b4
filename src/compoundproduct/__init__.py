"""Compound Product: turn a daily report into a merged code change."""

__version__ = "0.1.0"
