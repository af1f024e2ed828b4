"""Agent CLI integration for the compound pipeline.

Every coding-agent backend (amp, claude, opencode) sits behind the same
``AgentRunner.invoke(prompt)`` call. The backends disagree on how a prompt is
delivered (a prompt file, inline argument, or stdin), so each adapter only
decides how to build the command; running it, capturing output and writing
the transcript is shared.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import ToolName, normalize_tool_name

logger = logging.getLogger(__name__)


class InvocationMode(Enum):
    """How the agent is being used."""

    ASK = "ask"  # one-shot answer on stdout, no file edits expected
    EXECUTE = "execute"  # agentic run allowed to edit the working tree


class PromptDelivery(Enum):
    """How a backend receives its prompt."""

    FILE = "file"
    INLINE = "inline"
    STDIN = "stdin"


@dataclass
class AgentCommand:
    """A fully built backend command."""

    args: list[str]
    delivery: PromptDelivery
    stdin: Optional[str] = None
    prompt_file: Optional[Path] = None


@dataclass
class AgentResult:
    """Result from a single agent invocation."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: int = 0


class AgentRunner(ABC):
    """Runs an external coding-agent CLI with a prompt."""

    name: str = "agent"
    executable: str = ""

    def __init__(
        self,
        cwd: Optional[Path] = None,
        model: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        """Initialize the runner.

        Args:
            cwd: Working directory for the agent (the project root).
            model: Backend-specific model identifier, if any.
            timeout: Optional timeout in seconds. None lets the backend run
                for as long as its own process lives.
        """
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.model = model
        self.timeout = timeout

    def check_installed(self) -> bool:
        """Check if the backend CLI is on PATH."""
        return shutil.which(self.executable) is not None

    @abstractmethod
    def build_command(self, prompt: str, mode: InvocationMode, prompt_file: Path) -> AgentCommand:
        """Build the backend command for a prompt.

        Args:
            prompt: The logical prompt text.
            mode: Whether the agent answers or executes.
            prompt_file: Scratch path available to backends that read
                their prompt from a file.

        Returns:
            AgentCommand describing args and prompt delivery.
        """
        pass

    def invoke(
        self,
        prompt: str,
        mode: InvocationMode = InvocationMode.EXECUTE,
        log_file: Optional[Path] = None,
    ) -> AgentResult:
        """Invoke the agent and capture its text output.

        Never raises for backend failures: a non-zero exit, timeout or
        missing executable yields ``success=False``.

        Args:
            prompt: Prompt text.
            mode: ASK for a one-shot answer, EXECUTE for an agentic run.
            log_file: Optional transcript destination.

        Returns:
            AgentResult with the captured output.
        """
        fd, scratch = tempfile.mkstemp(prefix="compound-prompt-", suffix=".md")
        os.close(fd)
        prompt_file = Path(scratch)

        try:
            command = self.build_command(prompt, mode, prompt_file)
            if command.delivery is PromptDelivery.FILE:
                prompt_file.write_text(prompt, encoding="utf-8")
            result = self._run(command, mode)
        finally:
            prompt_file.unlink(missing_ok=True)

        if log_file is not None:
            write_transcript(log_file, result.output)

        return result

    def _run(self, command: AgentCommand, mode: InvocationMode) -> AgentResult:
        """Run a built command and convert the outcome into an AgentResult."""
        try:
            logger.info(f"Invoking {self.name} ({mode.value}, prompt via {command.delivery.value})")
            logger.debug(f"Command: {' '.join(command.args[:4])}...")

            proc = subprocess.run(
                command.args,
                input=command.stdin,
                cwd=self.cwd,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"{self.name} timed out after {self.timeout} seconds")
            return AgentResult(
                success=False,
                error=f"{self.name} timed out after {self.timeout} seconds",
                exit_code=-1,
            )
        except FileNotFoundError:
            return AgentResult(
                success=False,
                error=f"{self.name} CLI not found in PATH",
                exit_code=-1,
            )
        except OSError as e:
            logger.error(f"Unexpected error running {self.name}: {e}")
            return AgentResult(
                success=False,
                error=f"Unexpected error running {self.name}: {e}",
                exit_code=-1,
            )

        stdout = proc.stdout or ""
        stderr = proc.stderr or ""
        # ASK answers are parsed, so keep stderr noise out of them.
        output = stdout if mode is InvocationMode.ASK else "".join(
            part for part in (stdout, stderr) if part
        )

        if proc.returncode == 0:
            return AgentResult(success=True, output=output, exit_code=0)

        error_msg = stderr.strip() or f"{self.name} exited with code {proc.returncode}"
        logger.warning(f"{self.name} failed: {error_msg[:200]}")
        return AgentResult(
            success=False,
            output=output,
            error=error_msg,
            exit_code=proc.returncode,
        )


def write_transcript(log_file: Path, text: str, append: bool = False) -> bool:
    """Write agent output to a transcript file.

    Failures are logged and swallowed so that auditing never changes an
    invocation's outcome.

    Returns:
        True if the transcript was written.
    """
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a" if append else "w", encoding="utf-8") as f:
            f.write(text)
        return True
    except OSError as e:
        logger.warning(f"Failed to write transcript {log_file}: {e}")
        return False


class AmpRunner(AgentRunner):
    """Amp reads one-shot prompts from a file and agentic prompts from stdin."""

    name = "amp"
    executable = "amp"

    def build_command(self, prompt: str, mode: InvocationMode, prompt_file: Path) -> AgentCommand:
        if mode is InvocationMode.ASK:
            return AgentCommand(
                args=[self.executable, "--no-tty", "-p", str(prompt_file)],
                delivery=PromptDelivery.FILE,
                prompt_file=prompt_file,
            )
        return AgentCommand(
            args=[self.executable, "--execute", "--dangerously-allow-all"],
            delivery=PromptDelivery.STDIN,
            stdin=prompt,
        )


class ClaudeRunner(AgentRunner):
    """Claude Code takes one-shot prompts inline and agentic prompts on stdin."""

    name = "claude"
    executable = "claude"

    def build_command(self, prompt: str, mode: InvocationMode, prompt_file: Path) -> AgentCommand:
        model_args = ["--model", self.model] if self.model else []
        if mode is InvocationMode.ASK:
            return AgentCommand(
                args=[self.executable, *model_args, "-p", prompt],
                delivery=PromptDelivery.INLINE,
            )
        return AgentCommand(
            args=[self.executable, "--print", "--dangerously-skip-permissions", *model_args],
            delivery=PromptDelivery.STDIN,
            stdin=prompt,
        )


class OpenCodeRunner(AgentRunner):
    """OpenCode is driven through its ``run`` subcommand."""

    name = "opencode"
    executable = "opencode"
    DEFAULT_MODEL = "opencode/minimax-m2.1-free"

    def build_command(self, prompt: str, mode: InvocationMode, prompt_file: Path) -> AgentCommand:
        if mode is InvocationMode.ASK:
            return AgentCommand(
                args=[self.executable, "run", "--no-interactive", "-p", prompt],
                delivery=PromptDelivery.INLINE,
            )
        return AgentCommand(
            args=[self.executable, "run", "--model", self.model or self.DEFAULT_MODEL, prompt],
            delivery=PromptDelivery.INLINE,
        )


RUNNERS: dict[str, type[AgentRunner]] = {
    "amp": AmpRunner,
    "claude": ClaudeRunner,
    "opencode": OpenCodeRunner,
}


def create_agent_runner(
    tool: ToolName | str,
    cwd: Optional[Path] = None,
    model: Optional[str] = None,
    timeout: Optional[int] = None,
) -> AgentRunner:
    """Create the runner for a configured tool.

    Raises:
        ConfigError: If the tool is not supported.
    """
    runner_cls = RUNNERS[normalize_tool_name(tool)]
    return runner_cls(cwd=cwd, model=model, timeout=timeout)


class MockAgentRunner(AgentRunner):
    """Scripted agent runner for tests and offline runs.

    Each call consumes the next scripted output. A scripted entry may be a
    string (successful output), an AgentResult, or a callable taking the
    prompt and returning either of those, which lets a test simulate the
    agent writing files.
    """

    name = "mock"
    executable = "mock"

    def __init__(
        self,
        outputs: Optional[Sequence[str | AgentResult | Callable[[str], str | AgentResult]]] = None,
        default_output: str = "",
        cwd: Optional[Path] = None,
    ):
        super().__init__(cwd=cwd)
        self.outputs = list(outputs or [])
        self.default_output = default_output
        self.call_count = 0
        self.prompts: list[str] = []
        self.modes: list[InvocationMode] = []

    @property
    def last_prompt(self) -> Optional[str]:
        return self.prompts[-1] if self.prompts else None

    def check_installed(self) -> bool:
        """Always return True for mock."""
        return True

    def build_command(self, prompt: str, mode: InvocationMode, prompt_file: Path) -> AgentCommand:
        return AgentCommand(args=[self.executable], delivery=PromptDelivery.INLINE)

    def invoke(
        self,
        prompt: str,
        mode: InvocationMode = InvocationMode.EXECUTE,
        log_file: Optional[Path] = None,
    ) -> AgentResult:
        self.call_count += 1
        self.prompts.append(prompt)
        self.modes.append(mode)

        scripted = self.outputs.pop(0) if self.outputs else self.default_output
        if callable(scripted):
            scripted = scripted(prompt)
        result = scripted if isinstance(scripted, AgentResult) else AgentResult(success=True, output=scripted)

        if log_file is not None:
            write_transcript(log_file, result.output)
        return result
