"""Publication: commit the work, push the branch and open a pull request.

Every failure here is fatal and nothing is retried. The caller decides
whether the loop result is good enough to publish.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional

from .analysis import AnalysisDecision
from .errors import PublicationFailedError
from .progress import ProgressLog
from .repo import GitWorkspace, RepoError
from .state import RunStore

logger = logging.getLogger(__name__)

PROGRESS_TAIL_LINES = 50


@dataclass
class PublishResult:
    """Outcome of a successful publication."""

    pr_url: str
    commit_hash: Optional[str] = None


def build_pr_body(
    decision: AnalysisDecision,
    report_name: str,
    progress_tail: str,
    status_lines: list[str],
) -> str:
    """Render the pull request description."""
    tasks = "\n".join(status_lines) if status_lines else "(no task manifest)"
    return f"""## Compound Product: {decision.priority_item}

**Generated from report:** {report_name}

### Rationale
{decision.rationale}

### What was done
{progress_tail or "(no progress recorded)"}

### Tasks completed
{tasks}
"""


class Publisher:
    """Turns a finished branch into a pull request."""

    def __init__(
        self,
        workspace: GitWorkspace,
        store: RunStore,
        progress: Optional[ProgressLog] = None,
        base_branch: str = "main",
        remote: str = "origin",
        gh_command: str = "gh",
    ):
        self.workspace = workspace
        self.store = store
        self.progress = progress or ProgressLog(store.progress_file)
        self.base_branch = base_branch
        self.remote = remote
        self.gh_command = gh_command

    def publish(self, decision: AnalysisDecision, report_name: str) -> PublishResult:
        """Commit, push and open the pull request.

        Args:
            decision: The item that was worked on.
            report_name: File name of the report it came from.

        Returns:
            PublishResult with the pull request URL.

        Raises:
            PublicationFailedError: If any git or gh step fails.
        """
        branch = decision.branch_name

        logger.info("Committing remaining changes...")
        commit = self.workspace.commit(f"feat: {decision.priority_item}")
        if not commit.success:
            raise PublicationFailedError(f"Commit failed: {commit.error}")

        logger.info(f"Pushing {branch}...")
        try:
            self.workspace.push(branch, self.remote)
        except RepoError as exc:
            raise PublicationFailedError(str(exc)) from exc

        manifest = self.store.read_manifest()
        body = build_pr_body(
            decision,
            report_name,
            self.progress.tail(PROGRESS_TAIL_LINES),
            manifest.status_lines() if manifest else [],
        )
        pr_url = self.create_pull_request(f"Compound: {decision.priority_item}", body, branch)
        logger.info(f"PR created: {pr_url}")
        return PublishResult(pr_url=pr_url, commit_hash=commit.commit_hash)

    def create_pull_request(self, title: str, body: str, branch: str) -> str:
        """Run ``gh pr create`` and return the URL it prints.

        Raises:
            PublicationFailedError: If gh is missing or exits non-zero.
        """
        cmd = [
            self.gh_command,
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--base",
            self.base_branch,
            "--head",
            branch,
        ]
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.workspace.repo_path,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise PublicationFailedError(f"Could not run {self.gh_command}: {exc}") from exc

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise PublicationFailedError(f"gh pr create failed: {stderr[:500]}")

        return (proc.stdout or "").strip()
