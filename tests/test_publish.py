"""Tests for the publication stage."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import git
import pytest

from compoundproduct.analysis import AnalysisDecision
from compoundproduct.errors import PublicationFailedError
from compoundproduct.progress import ProgressLog
from compoundproduct.publish import Publisher, build_pr_body
from compoundproduct.repo import CommitResult, GitWorkspace, RepoError
from compoundproduct.state import RunStore

from conftest import SAMPLE_DECISION

PR_URL = "https://github.com/acme/shop/pull/42"


@pytest.fixture
def decision() -> AnalysisDecision:
    return AnalysisDecision.from_dict(SAMPLE_DECISION)


@pytest.fixture
def workspace(tmp_path: Path) -> MagicMock:
    ws = MagicMock(spec=GitWorkspace)
    ws.repo_path = tmp_path
    ws.commit.return_value = CommitResult(success=True, commit_hash="abc12345", message="m")
    return ws


def gh_ok(stdout: str = PR_URL + "\n") -> MagicMock:
    return MagicMock(returncode=0, stdout=stdout, stderr="")


class TestBuildPrBody:
    """Tests for build_pr_body."""

    def test_sections(self, decision: AnalysisDecision) -> None:
        """Test the body carries report, rationale, progress and tasks."""
        body = build_pr_body(decision, "2026-10-15.md", "did the thing", ["[x] T-1: Copy"])

        assert "**Generated from report:** 2026-10-15.md" in body
        assert "Checkout drop-off doubled this week." in body
        assert "did the thing" in body
        assert "[x] T-1: Copy" in body

    def test_empty_sections(self, decision: AnalysisDecision) -> None:
        """Test placeholders for missing progress and manifest."""
        body = build_pr_body(decision, "r.md", "", [])

        assert "(no progress recorded)" in body
        assert "(no task manifest)" in body


class TestPublisher:
    """Tests for Publisher."""

    def test_publish(self, tmp_path: Path, workspace: MagicMock, decision, write_manifest) -> None:
        """Test commit, push and gh pr create in that order."""
        store = RunStore(tmp_path / "out")
        write_manifest(store.manifest_file, decision.branch_name, [True, True])
        progress = ProgressLog(store.progress_file)
        progress.append("finished T-1 and T-2")
        publisher = Publisher(workspace, store, progress, base_branch="main", remote="origin")

        with patch("subprocess.run", return_value=gh_ok()) as mock_run:
            result = publisher.publish(decision, "2026-10-15.md")

        assert result.pr_url == PR_URL
        assert result.commit_hash == "abc12345"
        workspace.commit.assert_called_once_with("feat: Fix checkout button copy")
        workspace.push.assert_called_once_with("compound/fix-checkout-copy", "origin")

        cmd = mock_run.call_args.args[0]
        assert cmd[:3] == ["gh", "pr", "create"]
        assert cmd[cmd.index("--title") + 1] == "Compound: Fix checkout button copy"
        assert cmd[cmd.index("--base") + 1] == "main"
        assert cmd[cmd.index("--head") + 1] == "compound/fix-checkout-copy"
        body = cmd[cmd.index("--body") + 1]
        assert "finished T-1 and T-2" in body
        assert "[x] T-2: Task 2" in body
        assert mock_run.call_args.kwargs["errors"] == "replace"

    def test_nothing_to_commit_still_publishes(self, tmp_path: Path, workspace: MagicMock, decision) -> None:
        """Test an empty final commit is not an error."""
        workspace.commit.return_value = CommitResult(success=True, commit_hash=None, message="No changes")
        publisher = Publisher(workspace, RunStore(tmp_path))

        with patch("subprocess.run", return_value=gh_ok()):
            result = publisher.publish(decision, "r.md")

        assert result.commit_hash is None
        assert result.pr_url == PR_URL

    def test_commit_failure(self, tmp_path: Path, workspace: MagicMock, decision) -> None:
        """Test a failed commit aborts publication."""
        workspace.commit.return_value = CommitResult(success=False, commit_hash=None, message="m", error="locked")
        publisher = Publisher(workspace, RunStore(tmp_path))

        with pytest.raises(PublicationFailedError, match="locked"):
            publisher.publish(decision, "r.md")
        workspace.push.assert_not_called()

    def test_push_failure(self, tmp_path: Path, workspace: MagicMock, decision) -> None:
        """Test a failed push raises PublicationFailedError and skips gh."""
        workspace.push.side_effect = RepoError("Failed to push")
        publisher = Publisher(workspace, RunStore(tmp_path))

        with patch("subprocess.run") as mock_run:
            with pytest.raises(PublicationFailedError):
                publisher.publish(decision, "r.md")
        mock_run.assert_not_called()

    def test_gh_failure_not_retried(self, tmp_path: Path, workspace: MagicMock, decision) -> None:
        """Test a gh error is fatal and attempted once."""
        publisher = Publisher(workspace, RunStore(tmp_path))
        proc = MagicMock(returncode=1, stdout="", stderr="a pull request already exists")

        with patch("subprocess.run", return_value=proc) as mock_run:
            with pytest.raises(PublicationFailedError, match="already exists"):
                publisher.publish(decision, "r.md")
        assert mock_run.call_count == 1

    def test_gh_missing(self, tmp_path: Path, workspace: MagicMock, decision) -> None:
        """Test a missing gh CLI raises PublicationFailedError."""
        publisher = Publisher(workspace, RunStore(tmp_path), gh_command="gh-not-installed")

        with patch("subprocess.run", side_effect=FileNotFoundError("gh-not-installed")):
            with pytest.raises(PublicationFailedError, match="Could not run"):
                publisher.publish(decision, "r.md")


class TestPublisherWithGit:
    """Publication against a real repository and bare remote."""

    def test_commits_and_pushes(self, tmp_path: Path, git_repo: git.Repo, decision) -> None:
        """Test the branch reaches the remote with the feature commit."""
        bare = git.Repo.init(tmp_path / "remote.git", bare=True)
        git_repo.create_remote("origin", str(tmp_path / "remote.git"))
        workspace = GitWorkspace(Path(git_repo.working_dir))
        workspace.checkout_branch(decision.branch_name)
        (Path(git_repo.working_dir) / "checkout.txt").write_text("Complete purchase")

        publisher = Publisher(workspace, RunStore(tmp_path / "out"))
        with patch("compoundproduct.publish.subprocess.run", return_value=gh_ok()):
            result = publisher.publish(decision, "r.md")

        assert result.commit_hash is not None
        assert decision.branch_name in [head.name for head in bare.heads]
        assert bare.heads[decision.branch_name].commit.message == "feat: Fix checkout button copy"
