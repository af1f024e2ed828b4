"""Execution loop: run the agent until it reports every task complete.

The loop is a three-state machine. It starts ``RUNNING`` and ends either
``COMPLETE`` (the agent emitted the completion marker) or ``EXHAUSTED`` (the
iteration cap was reached first). A failed agent invocation is only a wasted
iteration, never an error.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .agents import AgentRunner, InvocationMode, write_transcript
from .config import RunConfig
from .progress import LoopStats, ProgressLog
from .state import RunStore

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "<promise>COMPLETE</promise>"
"""Literal the agent prints once every task in the manifest passes."""

PROMPT_OVERRIDE_FILENAME = "prompt.md"

DEFAULT_LOOP_PROMPT = """You are an autonomous coding agent working through a task list.

## Your Task

1. Read the task manifest at `{manifest}`
2. Read the progress log at `{progress}` (check the patterns and notes from earlier iterations first)
3. Make sure you are on the branch named in the manifest's `branchName`
4. Pick the first task where `passes` is `false`
5. Implement that single task
6. Run the project's quality checks (typecheck, lint, tests) and fix what you broke
7. Commit with message: `feat: [Task ID] - [Task Title]`
8. Set `passes: true` for that task in `{manifest}`
9. Append what you did and anything you learned to `{progress}`

## Rules

- Work on ONE task per iteration
- Never mark a task as passing unless its checks actually pass
- Keep changes focused and minimal

## Stop Condition

After completing a task, check whether ALL tasks in `{manifest}` have `passes: true`.

If ALL tasks are complete, reply with:
{marker}

If there are still tasks with `passes: false`, end your response normally (another iteration will pick up the next task).
"""


class LoopState(Enum):
    """States of the execution loop."""

    RUNNING = "running"
    COMPLETE = "complete"
    EXHAUSTED = "exhausted"


def contains_completion_marker(text: str) -> bool:
    """Return True when *text* contains the completion marker anywhere."""
    if not text:
        return False
    return COMPLETION_MARKER in text


@dataclass
class LoopResult:
    """Outcome of an execution loop run."""

    state: LoopState
    iterations: int
    max_iterations: int
    stats: Optional[LoopStats] = None
    outputs: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is LoopState.COMPLETE

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


def load_loop_prompt(store: RunStore) -> str:
    """Operating prompt for every iteration.

    A ``prompt.md`` in the output directory replaces the built-in prompt.
    """
    override = store.output_dir / PROMPT_OVERRIDE_FILENAME
    if override.is_file():
        logger.debug(f"Using loop prompt from {override}")
        return override.read_text(encoding="utf-8")
    return DEFAULT_LOOP_PROMPT.format(
        manifest=store.manifest_file,
        progress=store.progress_file,
        marker=COMPLETION_MARKER,
    )


class ExecutionLoop:
    """Drives the agent against the task manifest until done or out of turns."""

    def __init__(
        self,
        runner: AgentRunner,
        store: RunStore,
        max_iterations: int,
        delay: float = 2.0,
        verify_completion: bool = False,
        prompt: Optional[str] = None,
        progress: Optional[ProgressLog] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_iteration: Optional[Callable[[int, int], None]] = None,
    ):
        """Initialize the loop.

        Args:
            runner: Agent backend.
            store: Run state (manifest and output directory).
            max_iterations: Hard cap on iterations, at least 1.
            delay: Seconds to pause between iterations.
            verify_completion: Cross-check a completion claim against the
                manifest before accepting it. Off by default.
            prompt: Operating prompt. Defaults to ``load_loop_prompt``.
            progress: Progress log. Defaults to the store's progress file.
            sleep: Sleep function (replaced in tests).
            on_iteration: Called with (iteration, max_iterations) before
                each invocation.
        """
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")

        self.runner = runner
        self.store = store
        self.max_iterations = max_iterations
        self.delay = delay
        self.verify_completion = verify_completion
        self.prompt = prompt
        self.progress = progress or ProgressLog(store.progress_file)
        self.sleep = sleep
        self.on_iteration = on_iteration

        self.state = LoopState.RUNNING
        self.iteration = 0

    def run(self) -> LoopResult:
        """Run until COMPLETE or EXHAUSTED.

        Returns:
            LoopResult with the terminal state and iteration count.
        """
        self.store.ensure()
        self.progress.initialize()
        prompt = self.prompt or load_loop_prompt(self.store)
        transcript = self.store.log_file("execution")

        stats = LoopStats(tool=self.runner.name, max_iterations=self.max_iterations)
        outputs: list[str] = []

        logger.info(
            f"Starting compound loop - tool: {self.runner.name} - max: {self.max_iterations}"
        )

        while self.state is LoopState.RUNNING:
            self.iteration += 1
            stats.iterations = self.iteration
            logger.info(f"Iteration {self.iteration} of {self.max_iterations}")
            if self.on_iteration:
                self.on_iteration(self.iteration, self.max_iterations)

            result = self.runner.invoke(prompt, mode=InvocationMode.EXECUTE)
            write_transcript(
                transcript,
                f"\n===== Iteration {self.iteration} of {self.max_iterations} "
                f"({datetime.now().isoformat(timespec='seconds')}) =====\n{result.output}\n",
                append=True,
            )

            if not result.success:
                stats.failed_invocations += 1
                logger.warning(f"Iteration {self.iteration}: agent invocation failed: {result.error}")
                outputs.append("")
            else:
                outputs.append(result.output)
                if contains_completion_marker(result.output):
                    if self._accept_completion():
                        self.state = LoopState.COMPLETE
                        logger.info(f"All tasks complete! Finished at iteration {self.iteration}")
                        break
                    stats.rejected_completions += 1

            if self.iteration >= self.max_iterations:
                self.state = LoopState.EXHAUSTED
                logger.warning(f"Reached max iterations ({self.max_iterations})")
                break

            self.sleep(self.delay)

        stats.end_time = datetime.now()
        try:
            self.progress.append_run_entry(stats, self.state.value)
        except OSError as e:
            logger.warning(f"Failed to append to progress log: {e}")

        return LoopResult(
            state=self.state,
            iterations=self.iteration,
            max_iterations=self.max_iterations,
            stats=stats,
            outputs=outputs,
        )

    def _accept_completion(self) -> bool:
        """Decide whether a completion claim stands.

        With verification on, a readable manifest with tasks must have every
        task passing. Without a usable manifest the claim is trusted.
        """
        if not self.verify_completion:
            return True

        manifest = self.store.read_manifest()
        if manifest is None or not manifest.tasks:
            logger.debug("No task manifest to verify completion against; trusting marker")
            return True

        if manifest.all_passing:
            return True

        pending = [task.id for task in manifest.tasks if not task.passes]
        logger.warning(
            f"Iteration {self.iteration}: completion claimed but "
            f"{len(pending)} task(s) still failing: {', '.join(pending)}"
        )
        return False


def run_loop_for_config(config: RunConfig, runner: AgentRunner, **kwargs) -> LoopResult:
    """Build and run an ExecutionLoop from a RunConfig."""
    store = RunStore(config.output_dir)
    loop = ExecutionLoop(
        runner=runner,
        store=store,
        max_iterations=config.max_iterations,
        delay=config.iteration_delay,
        verify_completion=config.verify_completion,
        **kwargs,
    )
    return loop.run()
