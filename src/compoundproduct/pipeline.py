"""End-to-end pipeline: report -> decision -> tasks -> loop -> pull request.

Stages run strictly in sequence and communicate through files in the
output directory. Any stage failure stops the run; artifacts written so far
stay on disk for the operator to inspect.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from .agents import AgentRunner
from .analysis import AnalysisDecision, CommandAnalyzer, ReportAnalyzer
from .config import RunConfig
from .errors import IterationExhaustedError
from .loop import ExecutionLoop, LoopResult
from .materializer import MaterializedTasks, TaskMaterializer
from .progress import ProgressLog
from .publish import Publisher
from .reports import Report, find_latest_report
from .repo import GitWorkspace, RepoError
from .state import RunStore

logger = logging.getLogger(__name__)


class Analyzer(Protocol):
    """Anything that turns a report into an AnalysisDecision."""

    def analyze(self, report_text: str, report_path: Optional[Path] = None) -> AnalysisDecision: ...


@dataclass
class PipelineResult:
    """What a pipeline run produced."""

    decision: AnalysisDecision
    report: Report
    dry_run: bool = False
    tasks: Optional[MaterializedTasks] = None
    loop_result: Optional[LoopResult] = None
    pr_url: Optional[str] = None

    @property
    def published(self) -> bool:
        return self.pr_url is not None


def create_analyzer(config: RunConfig, runner: AgentRunner, store: RunStore) -> Analyzer:
    """Built-in analysis, or the configured ``analyzeCommand``."""
    if config.analyze_command:
        return CommandAnalyzer(
            config.analyze_command,
            cwd=config.project_root,
            branch_prefix=config.branch_prefix,
            timeout=config.agent_timeout,
        )
    return ReportAnalyzer(
        runner,
        tasks_dir=config.tasks_dir,
        branch_prefix=config.branch_prefix,
        log_file=store.log_file("analysis"),
    )


class Pipeline:
    """Runs the nightly compound cycle against one project."""

    def __init__(
        self,
        config: RunConfig,
        runner: AgentRunner,
        workspace: Optional[GitWorkspace] = None,
        analyzer: Optional[Analyzer] = None,
        materializer: Optional[TaskMaterializer] = None,
        publisher: Optional[Publisher] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the pipeline.

        Collaborators left as None are built from the config when first
        needed.
        """
        self.config = config
        self.runner = runner
        self.store = RunStore(config.output_dir)
        self.progress = ProgressLog(self.store.progress_file)
        self._workspace = workspace
        self.analyzer = analyzer or create_analyzer(config, runner, self.store)
        self.materializer = materializer or TaskMaterializer(runner, config, self.store)
        self._publisher = publisher
        self.sleep = sleep

    @property
    def workspace(self) -> GitWorkspace:
        if self._workspace is None:
            self._workspace = GitWorkspace(self.config.project_root)
        return self._workspace

    @property
    def publisher(self) -> Publisher:
        if self._publisher is None:
            self._publisher = Publisher(
                self.workspace,
                self.store,
                self.progress,
                base_branch=self.config.base_branch,
                remote=self.config.remote,
            )
        return self._publisher

    def run(self, dry_run: bool = False, publish_incomplete: bool = False) -> PipelineResult:
        """Run the pipeline.

        Args:
            dry_run: Stop after analysis and return the decision.
            publish_incomplete: Open the pull request even when the loop
                ran out of iterations.

        Returns:
            PipelineResult describing what was produced.

        Raises:
            CompoundError: Any stage failure, including
                IterationExhaustedError when the loop does not finish.
        """
        logger.info("Compound Product - Auto Compound Pipeline")
        self.pull_base()

        report = find_latest_report(self.config.reports_dir)
        decision = self.analyze(report)
        result = PipelineResult(decision=decision, report=report, dry_run=dry_run)

        if dry_run:
            logger.info("Dry run - stopping after analysis")
            return result

        self.workspace.checkout_branch(decision.branch_name, self.config.base_branch)

        result.tasks = self.materializer.materialize(decision)
        self.workspace.commit(
            f"chore: add PRD and tasks for {decision.priority_item}",
            paths=[result.tasks.prd_path, self.store.manifest_file],
        )

        result.loop_result = self.execute_tasks()
        if not result.loop_result.success:
            if not publish_incomplete:
                raise IterationExhaustedError(result.loop_result.iterations)
            logger.warning("Loop did not complete; publishing anyway")

        published = self.publisher.publish(decision, report.name)
        result.pr_url = published.pr_url
        logger.info(f"Compound Product complete! PR: {result.pr_url}")
        return result

    def pull_base(self) -> bool:
        """Best-effort pull of the base branch."""
        try:
            workspace = self.workspace
        except RepoError as e:
            logger.warning(f"Skipping pull: {e}")
            return False
        return workspace.pull(self.config.remote, self.config.base_branch)

    def analyze(self, report: Report) -> AnalysisDecision:
        """Pick the priority item and persist the decision."""
        logger.info(f"Analyzing report: {report.name}")
        decision = self.analyzer.analyze(report.read_text(), report.path)
        logger.info(f"Priority item: {decision.priority_item}")
        logger.info(f"Branch: {decision.branch_name}")
        self.store.save_decision(decision)
        return decision

    def execute_tasks(self) -> LoopResult:
        loop = ExecutionLoop(
            runner=self.runner,
            store=self.store,
            max_iterations=self.config.max_iterations,
            delay=self.config.iteration_delay,
            verify_completion=self.config.verify_completion,
            progress=self.progress,
            sleep=self.sleep,
        )
        return loop.run()
