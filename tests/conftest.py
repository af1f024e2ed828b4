"""Shared test fixtures for compound tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import git
import pytest

from compoundproduct.agents import AgentResult, MockAgentRunner
from compoundproduct.config import RunConfig
from compoundproduct.state import RunStore

SAMPLE_DECISION = {
    "priority_item": "Fix checkout button copy",
    "description": "The checkout button says 'Submit'. Change it to 'Complete purchase'.",
    "rationale": "Checkout drop-off doubled this week.",
    "acceptance_criteria": [
        "Button reads 'Complete purchase'",
        "Copy is covered by a test",
        "No layout shift on mobile",
    ],
    "estimated_tasks": 3,
    "branch_name": "compound/fix-checkout-copy",
}


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Create a project with a config file and one report."""
    root = tmp_path / "project"
    (root / "reports").mkdir(parents=True)
    (root / "tasks").mkdir()

    config = {
        "tool": "claude",
        "reportsDir": "./reports",
        "outputDir": "./scripts/compound",
        "maxIterations": 3,
        "branchPrefix": "compound/",
        "iterationDelay": 0,
    }
    (root / "compound.config.json").write_text(json.dumps(config, indent=2))

    (root / "reports" / "2026-10-15.md").write_text(
        "# Daily report\n\nCheckout drop-off doubled. Users find the 'Submit' button unclear.\n"
    )
    return root


@pytest.fixture
def run_config(project_root: Path) -> RunConfig:
    """RunConfig for the sample project."""
    return RunConfig.from_dict(
        json.loads((project_root / "compound.config.json").read_text()),
        project_root=project_root,
    )


@pytest.fixture
def store(run_config: RunConfig) -> RunStore:
    """RunStore rooted at the sample project's output directory."""
    store = RunStore(run_config.output_dir)
    store.ensure()
    return store


@pytest.fixture
def decision_json() -> str:
    """Analysis answer as an agent would print it."""
    return json.dumps(SAMPLE_DECISION)


@pytest.fixture
def git_repo(project_root: Path) -> git.Repo:
    """Turn the sample project into a git repository on main."""
    repo = git.Repo.init(project_root)
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    repo.git.add(all=True)
    repo.index.commit("Initial commit")
    if repo.active_branch.name != "main":
        repo.git.branch("-M", "main")
    return repo


def _write_manifest(path: Path, branch: str, passes: list[bool]) -> None:
    """Write a prd.json with one task per entry in ``passes``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    manifest = {
        "branchName": branch,
        "tasks": [
            {"id": f"T-{i + 1}", "title": f"Task {i + 1}", "passes": passed}
            for i, passed in enumerate(passes)
        ],
    }
    path.write_text(json.dumps(manifest, indent=2))


def _agent_writes(path: Path, content: str, output: str = "done") -> Callable[[str], AgentResult]:
    """Scripted agent step that writes a file and answers ``output``."""

    def _step(prompt: str) -> AgentResult:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return AgentResult(success=True, output=output)

    return _step


@pytest.fixture
def mock_runner() -> MockAgentRunner:
    """Mock runner with no scripted outputs."""
    return MockAgentRunner()


@pytest.fixture
def write_manifest() -> Callable[[Path, str, list[bool]], None]:
    """Helper that writes a task manifest."""
    return _write_manifest


@pytest.fixture
def agent_writes() -> Callable[..., Callable[[str], AgentResult]]:
    """Helper that builds a scripted agent step writing a file."""
    return _agent_writes
