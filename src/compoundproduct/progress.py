"""Progress log for the execution loop.

The log is a plain text file shared with the agent: the agent appends its own
notes while working, and the controller appends one entry per loop run. It is
never truncated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

HEADER_TITLE = "# Compound Product Progress Log"


@dataclass
class LoopStats:
    """Statistics for one execution loop run."""

    tool: str
    max_iterations: int
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    failed_invocations: int = 0
    rejected_completions: int = 0

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "tool": self.tool,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": self.iterations,
            "max_iterations": self.max_iterations,
            "failed_invocations": self.failed_invocations,
            "rejected_completions": self.rejected_completions,
        }


class ProgressLog:
    """Append-only progress file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def initialize(self) -> bool:
        """Create the log with its header if it does not exist yet.

        Returns:
            True if the file was created.
        """
        if self.path.exists():
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        started = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self.path.write_text(f"{HEADER_TITLE}\nStarted: {started}\n---\n", encoding="utf-8")
        logger.debug(f"Progress log initialized: {self.path}")
        return True

    def append(self, text: str) -> None:
        """Append a block of text, creating the log if needed."""
        self.initialize()
        with open(self.path, "a", encoding="utf-8") as f:
            if not text.endswith("\n"):
                text += "\n"
            f.write(text)

    def append_run_entry(self, stats: LoopStats, state: str) -> None:
        """Record the outcome of one loop run."""
        finished = (stats.end_time or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        lines = [
            "",
            f"## {finished} - Loop {state}",
            f"- Tool: {stats.tool}",
            f"- Iterations: {stats.iterations}/{stats.max_iterations}",
        ]
        if stats.failed_invocations:
            lines.append(f"- Failed invocations: {stats.failed_invocations}")
        if stats.rejected_completions:
            lines.append(f"- Rejected completion claims: {stats.rejected_completions}")
        lines.append("---")
        self.append("\n".join(lines))

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def tail(self, lines: int = 50) -> str:
        """Last ``lines`` lines of the log, for the pull request body."""
        content = self.read().splitlines()
        return "\n".join(content[-lines:])
