"""Error taxonomy for the compound pipeline.

Every stage fails loud by raising one of these. The CLI catches
``CompoundError``, prints a one-line diagnostic and exits non-zero.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class CompoundError(Exception):
    """Base exception for all pipeline failures."""

    pass


class ConfigError(CompoundError):
    """Configuration is present but invalid."""

    pass


class ConfigMissingError(ConfigError):
    """A required configuration source or derived path does not exist."""

    pass


class NoReportFoundError(CompoundError):
    """The reports directory is missing or holds no matching report."""

    pass


class AgentInvocationFailedError(CompoundError):
    """An agent backend exited non-zero, timed out, or could not start."""

    def __init__(self, message: str, exit_code: int = -1):
        super().__init__(message)
        self.exit_code = exit_code


class UnparsableAnalysisError(CompoundError):
    """Agent output could not be decoded into an analysis decision."""

    def __init__(self, message: str, response: str = ""):
        super().__init__(message)
        self.response = response


class ArtifactNotProducedError(CompoundError):
    """A delegated generation step reported success but left no artifact."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class IterationExhaustedError(CompoundError):
    """The execution loop hit its iteration cap without completing."""

    def __init__(self, iterations: int):
        super().__init__(f"Reached max iterations ({iterations}) without completion")
        self.iterations = iterations


class PublicationFailedError(CompoundError):
    """Committing, pushing or opening the pull request failed."""

    pass
