"""File-backed run state shared between pipeline stages.

Layout under the output directory:
- prd.json: the active task manifest
- progress.txt: the append-only progress log (see progress.py)
- analysis.json: the last analysis decision
- archive/<date>-<branch>/: copies of a previous run's manifest and log

Only one pipeline may run against a working tree at a time. Nothing here
locks; the external agent also rewrites prd.json while the loop runs.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .analysis import AnalysisDecision
from .errors import CompoundError

logger = logging.getLogger(__name__)


class ManifestError(CompoundError):
    """Raised when a task manifest cannot be read."""

    pass


@dataclass
class ManifestTask:
    """A single verifiable task in the manifest."""

    id: str
    title: str
    passes: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**self.extra, "id": self.id, "title": self.title, "passes": self.passes}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestTask:
        extra = {k: v for k, v in data.items() if k not in ("id", "title", "passes")}
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            passes=data.get("passes") is True,
            extra=extra,
        )


@dataclass
class TaskManifest:
    """The task list the execution loop works through."""

    branch_name: str
    tasks: list[ManifestTask] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def all_passing(self) -> bool:
        return bool(self.tasks) and all(task.passes for task in self.tasks)

    @property
    def passing_count(self) -> int:
        return sum(1 for task in self.tasks if task.passes)

    def status_lines(self) -> list[str]:
        """One line per task, e.g. ``[x] T-1: Fix login copy``."""
        return [
            f"[{'x' if task.passes else ' '}] {task.id}: {task.title}"
            for task in self.tasks
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "branchName": self.branch_name,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskManifest:
        tasks = data.get("tasks") or []
        if not isinstance(tasks, list):
            raise ManifestError("Field 'tasks' must be a list")
        extra = {k: v for k, v in data.items() if k not in ("branchName", "tasks")}
        return cls(
            branch_name=str(data.get("branchName") or ""),
            tasks=[ManifestTask.from_dict(t) for t in tasks if isinstance(t, dict)],
            extra=extra,
        )

    @classmethod
    def load(cls, path: Path) -> TaskManifest:
        """Load a manifest from disk.

        Raises:
            ManifestError: If the file is missing or not a manifest.
        """
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ManifestError(f"Task manifest not found: {path}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise ManifestError(f"Could not read task manifest {path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ManifestError(f"Task manifest must be a JSON object: {path}")
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")


class RunStore:
    """Single-writer store for the files a run leaves in the output directory."""

    MANIFEST_FILENAME = "prd.json"
    PROGRESS_FILENAME = "progress.txt"
    DECISION_FILENAME = "analysis.json"
    ARCHIVE_DIRNAME = "archive"

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    @property
    def manifest_file(self) -> Path:
        return self.output_dir / self.MANIFEST_FILENAME

    @property
    def progress_file(self) -> Path:
        return self.output_dir / self.PROGRESS_FILENAME

    @property
    def decision_file(self) -> Path:
        return self.output_dir / self.DECISION_FILENAME

    @property
    def archive_dir(self) -> Path:
        return self.output_dir / self.ARCHIVE_DIRNAME

    def log_file(self, name: str) -> Path:
        """Path of a transcript such as ``auto-compound-prd.log``."""
        return self.output_dir / f"auto-compound-{name}.log"

    def ensure(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def read_manifest(self) -> Optional[TaskManifest]:
        """Load the active manifest, or None if absent or unreadable."""
        if not self.manifest_file.exists():
            return None
        try:
            return TaskManifest.load(self.manifest_file)
        except ManifestError as e:
            logger.warning(str(e))
            return None

    def previous_branch(self) -> Optional[str]:
        """Branch name recorded by the active manifest, if any."""
        manifest = self.read_manifest()
        if manifest and manifest.branch_name:
            return manifest.branch_name
        return None

    def save_decision(self, decision: AnalysisDecision) -> Path:
        self.ensure()
        self.decision_file.write_text(decision.to_json() + "\n", encoding="utf-8")
        return self.decision_file

    def load_decision(self) -> Optional[AnalysisDecision]:
        if not self.decision_file.exists():
            return None
        try:
            return AnalysisDecision.from_dict(json.loads(self.decision_file.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Could not read saved decision: {e}")
            return None

    def archive_if_branch_changed(self, new_branch: str, today: Optional[datetime] = None) -> Optional[Path]:
        """Archive the previous run when a different branch takes over.

        Copies (never moves) the manifest and progress log into
        ``archive/<YYYY-MM-DD>-<old-branch-suffix>``. Existing archives are
        never overwritten: a numeric suffix is added instead. Failures are
        logged and swallowed.

        Args:
            new_branch: Branch the upcoming run will use.
            today: Date for the folder name. Defaults to now.

        Returns:
            The archive folder, or None if nothing was archived.
        """
        old_branch = self.previous_branch()
        if not old_branch or old_branch == new_branch:
            return None

        date = (today or datetime.now()).strftime("%Y-%m-%d")
        suffix = old_branch.split("/", 1)[-1].replace("/", "-")
        folder = self.archive_dir / f"{date}-{suffix}"
        counter = 2
        while folder.exists():
            folder = self.archive_dir / f"{date}-{suffix}-{counter}"
            counter += 1

        try:
            folder.mkdir(parents=True)
            for source in (self.manifest_file, self.progress_file):
                if source.exists():
                    shutil.copy2(source, folder / source.name)
        except OSError as e:
            logger.warning(f"Failed to archive previous run ({old_branch}): {e}")
            return None

        logger.info(f"Archived previous run to: {folder}")
        return folder
