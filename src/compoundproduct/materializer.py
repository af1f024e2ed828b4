"""Task materialization: decision -> PRD document -> task manifest.

Both documents are written by the agent. An invocation that returns
successfully is not trusted on its own; the expected file has to exist
afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .agents import AgentRunner, InvocationMode
from .analysis import AnalysisDecision
from .config import RunConfig
from .errors import AgentInvocationFailedError, ArtifactNotProducedError
from .state import ManifestError, RunStore, TaskManifest

logger = logging.getLogger(__name__)


@dataclass
class MaterializedTasks:
    """Artifacts produced for one priority item."""

    prd_path: Path
    manifest: TaskManifest
    archive_path: Optional[Path] = None


def prd_filename(branch_name: str, branch_prefix: str) -> str:
    """PRD file name for a branch, e.g. ``prd-fix-login.md``."""
    slug = branch_name[len(branch_prefix):] if branch_name.startswith(branch_prefix) else branch_name
    return f"prd-{slug.replace('/', '-')}.md"


def build_prd_prompt(decision: AnalysisDecision, prd_path: Path, project_root: Path) -> str:
    criteria = "\n".join(f"- {c}" for c in decision.acceptance_criteria) or "- (none given)"
    return f"""Load the prd skill. Create a PRD for: {decision.priority_item}

Description: {decision.description}

Rationale: {decision.rationale}

Acceptance criteria:
{criteria}

CONSTRAINTS:
- NO database migrations
- Scope: 2-4 hours of work
- 3-5 small, verifiable tasks
- DO NOT ask questions - proceed immediately

Save PRD to: {_display_path(prd_path, project_root)}"""


def build_tasks_prompt(prd_path: Path, manifest_path: Path, branch_name: str, project_root: Path) -> str:
    return f"""Load the tasks skill. Convert {_display_path(prd_path, project_root)} to {_display_path(manifest_path, project_root)}
Use branch name: {branch_name}
Each task must be completable in one iteration."""


def _display_path(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)


class TaskMaterializer:
    """Turns an AnalysisDecision into a PRD and a task manifest."""

    def __init__(self, runner: AgentRunner, config: RunConfig, store: Optional[RunStore] = None):
        self.runner = runner
        self.config = config
        self.store = store or RunStore(config.output_dir)

    def prd_path(self, decision: AnalysisDecision) -> Path:
        return self.config.tasks_dir / prd_filename(decision.branch_name, self.config.branch_prefix)

    def materialize(self, decision: AnalysisDecision) -> MaterializedTasks:
        """Create the PRD and the manifest for a decision.

        Raises:
            AgentInvocationFailedError: If the agent fails to run.
            ArtifactNotProducedError: If the agent ran but the file is
                missing or the manifest is unreadable.
        """
        self.store.ensure()
        self.config.tasks_dir.mkdir(parents=True, exist_ok=True)

        prd_path = self.create_prd(decision)

        # Archiving is best-effort; a failure is logged inside the store.
        archive_path = self.store.archive_if_branch_changed(decision.branch_name)

        manifest = self.create_manifest(prd_path, decision.branch_name)
        return MaterializedTasks(prd_path=prd_path, manifest=manifest, archive_path=archive_path)

    def create_prd(self, decision: AnalysisDecision) -> Path:
        prd_path = self.prd_path(decision)
        logger.info("Creating PRD...")

        prompt = build_prd_prompt(decision, prd_path, self.config.project_root)
        self._invoke(prompt, "prd")

        if not prd_path.is_file():
            raise ArtifactNotProducedError(f"PRD was not created at {prd_path}", path=prd_path)

        logger.info(f"PRD created: {prd_path}")
        return prd_path

    def create_manifest(self, prd_path: Path, branch_name: str) -> TaskManifest:
        manifest_path = self.store.manifest_file
        logger.info("Converting PRD to tasks...")

        prompt = build_tasks_prompt(prd_path, manifest_path, branch_name, self.config.project_root)
        self._invoke(prompt, "tasks")

        if not manifest_path.is_file():
            raise ArtifactNotProducedError(f"prd.json was not created at {manifest_path}", path=manifest_path)

        try:
            manifest = TaskManifest.load(manifest_path)
        except ManifestError as exc:
            raise ArtifactNotProducedError(str(exc), path=manifest_path) from exc

        # prd.json survives archiving, so a leftover from another item must not pass.
        if manifest.branch_name != branch_name:
            raise ArtifactNotProducedError(
                f"prd.json at {manifest_path} is for branch "
                f"'{manifest.branch_name or '(none)'}', expected '{branch_name}'",
                path=manifest_path,
            )

        logger.info(f"Tasks: {len(manifest.tasks)}")
        return manifest

    def _invoke(self, prompt: str, step: str) -> None:
        result = self.runner.invoke(
            prompt,
            mode=InvocationMode.EXECUTE,
            log_file=self.store.log_file(step),
        )
        if not result.success:
            raise AgentInvocationFailedError(
                f"{self.runner.name} failed during {step} generation: {result.error}",
                exit_code=result.exit_code,
            )
