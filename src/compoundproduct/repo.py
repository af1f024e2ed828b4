"""Local repository operations using GitPython.

Thin wrapper over the working tree the pipeline runs in: pulling the base
branch, switching to the feature branch, committing artifacts and pushing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .errors import CompoundError

logger = logging.getLogger(__name__)


@dataclass
class CommitResult:
    """Result of a git commit operation."""

    success: bool
    commit_hash: Optional[str]
    message: str
    error: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.commit_hash is not None


class RepoError(CompoundError):
    """Exception raised for local repository operations."""

    pass


class GitWorkspace:
    """Git operations on the project working tree."""

    def __init__(self, repo_path: Optional[Path] = None):
        """Open the repository.

        Args:
            repo_path: Path to the repository. Defaults to current directory.

        Raises:
            RepoError: If the directory is not a git repository.
        """
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()

        try:
            self.repo = git.Repo(self.repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise RepoError(f"Not a git repository: {self.repo_path}") from exc

        logger.debug(f"GitWorkspace opened at: {self.repo_path}")

    def current_branch(self) -> str:
        return self.repo.active_branch.name

    def has_branch(self, name: str) -> bool:
        return name in [head.name for head in self.repo.heads]

    def pull(self, remote: str = "origin", branch: str = "main") -> bool:
        """Pull the base branch. Best-effort: failures are logged.

        Returns:
            True if the pull succeeded.
        """
        try:
            self.repo.git.pull(remote, branch)
            logger.info(f"Pulled {remote}/{branch}")
            return True
        except GitCommandError as exc:
            logger.warning(f"git pull {remote} {branch} failed (continuing): {exc}")
            return False

    def checkout_branch(self, branch_name: str, base: str = "main") -> str:
        """Check out the feature branch, creating it from ``base`` if needed.

        Raises:
            RepoError: If the checkout fails.
        """
        try:
            if self.has_branch(branch_name):
                self.repo.heads[branch_name].checkout()
                logger.info(f"Checked out existing branch: {branch_name}")
            else:
                if self.has_branch(base):
                    self.repo.heads[base].checkout()
                new_branch = self.repo.create_head(branch_name)
                new_branch.checkout()
                logger.info(f"Created and checked out branch: {branch_name}")
        except GitCommandError as exc:
            raise RepoError(f"Failed to check out branch {branch_name}: {exc}") from exc
        return branch_name

    def has_uncommitted_changes(self) -> bool:
        return self.repo.is_dirty(untracked_files=True)

    def has_staged_changes(self) -> bool:
        if not self.repo.head.is_valid():
            return bool(self.repo.index.entries)
        return bool(self.repo.index.diff("HEAD"))

    def commit(self, message: str, paths: Optional[Sequence[Path]] = None) -> CommitResult:
        """Stage and commit changes.

        A commit with nothing to commit succeeds with ``commit_hash=None``.

        Args:
            message: Commit message.
            paths: Files to stage. Stages everything when omitted.

        Returns:
            CommitResult with success status and commit hash.
        """
        try:
            if paths:
                existing = [str(Path(p).resolve()) for p in paths if Path(p).exists()]
                if existing:
                    self.repo.git.add("--", *existing)
            else:
                self.repo.git.add(all=True)

            if not self.has_staged_changes():
                logger.info("No changes to commit")
                return CommitResult(success=True, commit_hash=None, message="No changes to commit")

            commit = self.repo.index.commit(message)
            commit_hash = commit.hexsha[:8]
            logger.info(f"Committed: {commit_hash} - {message[:50]}")
            return CommitResult(success=True, commit_hash=commit_hash, message=message)

        except GitCommandError as exc:
            logger.error(f"Commit failed: {exc}")
            return CommitResult(success=False, commit_hash=None, message=message, error=str(exc))

    def push(self, branch_name: str, remote: str = "origin") -> None:
        """Push a branch and set its upstream.

        Raises:
            RepoError: If the push fails.
        """
        try:
            self.repo.git.push("-u", remote, branch_name)
            logger.info(f"Pushed {branch_name} to {remote}")
        except GitCommandError as exc:
            raise RepoError(f"Failed to push {branch_name} to {remote}: {exc}") from exc
