"""Tests for agent runners."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from compoundproduct.agents import (
    AgentResult,
    AmpRunner,
    ClaudeRunner,
    InvocationMode,
    MockAgentRunner,
    OpenCodeRunner,
    PromptDelivery,
    create_agent_runner,
    write_transcript,
)
from compoundproduct.errors import ConfigError


def completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.stdout = stdout
    proc.stderr = stderr
    proc.returncode = returncode
    return proc


class TestCommandBuilding:
    """Tests for per-backend command construction."""

    def test_amp_ask_uses_prompt_file(self, tmp_path: Path) -> None:
        """Test amp one-shot prompts go through a file."""
        prompt_file = tmp_path / "prompt.md"
        command = AmpRunner().build_command("hello", InvocationMode.ASK, prompt_file)

        assert command.args == ["amp", "--no-tty", "-p", str(prompt_file)]
        assert command.delivery is PromptDelivery.FILE
        assert command.stdin is None

    def test_amp_execute_uses_stdin(self, tmp_path: Path) -> None:
        """Test amp agentic prompts go through stdin."""
        command = AmpRunner().build_command("hello", InvocationMode.EXECUTE, tmp_path / "p")

        assert command.args == ["amp", "--execute", "--dangerously-allow-all"]
        assert command.delivery is PromptDelivery.STDIN
        assert command.stdin == "hello"

    def test_claude_ask_inline(self, tmp_path: Path) -> None:
        """Test claude one-shot prompts are passed inline."""
        command = ClaudeRunner().build_command("hello", InvocationMode.ASK, tmp_path / "p")

        assert command.args == ["claude", "-p", "hello"]
        assert command.delivery is PromptDelivery.INLINE

    def test_claude_execute_stdin_with_model(self, tmp_path: Path) -> None:
        """Test claude agentic prompts go through stdin and carry the model."""
        runner = ClaudeRunner(model="sonnet")
        command = runner.build_command("hello", InvocationMode.EXECUTE, tmp_path / "p")

        assert command.args == [
            "claude",
            "--print",
            "--dangerously-skip-permissions",
            "--model",
            "sonnet",
        ]
        assert command.stdin == "hello"

    def test_opencode_execute_default_model(self, tmp_path: Path) -> None:
        """Test opencode agentic prompts are inline with the default model."""
        command = OpenCodeRunner().build_command("hello", InvocationMode.EXECUTE, tmp_path / "p")

        assert command.args == ["opencode", "run", "--model", "opencode/minimax-m2.1-free", "hello"]
        assert command.delivery is PromptDelivery.INLINE

    def test_opencode_ask(self, tmp_path: Path) -> None:
        """Test opencode one-shot prompts."""
        command = OpenCodeRunner().build_command("hello", InvocationMode.ASK, tmp_path / "p")

        assert command.args == ["opencode", "run", "--no-interactive", "-p", "hello"]


class TestCreateAgentRunner:
    """Tests for create_agent_runner."""

    @pytest.mark.parametrize(
        "tool,expected",
        [("amp", AmpRunner), ("claude", ClaudeRunner), ("claude-code", ClaudeRunner), ("opencode", OpenCodeRunner)],
    )
    def test_selects_backend(self, tool: str, expected: type, tmp_path: Path) -> None:
        """Test each tool name maps to its runner."""
        runner = create_agent_runner(tool, cwd=tmp_path, model="m", timeout=30)

        assert isinstance(runner, expected)
        assert runner.cwd == tmp_path
        assert runner.model == "m"
        assert runner.timeout == 30

    def test_unknown_tool(self) -> None:
        """Test an unknown tool is a configuration error."""
        with pytest.raises(ConfigError):
            create_agent_runner("cursor")


class TestInvoke:
    """Tests for AgentRunner.invoke."""

    def test_success(self, tmp_path: Path) -> None:
        """Test successful invocation returns stdout."""
        runner = ClaudeRunner(cwd=tmp_path)

        with patch("subprocess.run", return_value=completed(stdout="answer")) as mock_run:
            result = runner.invoke("question", mode=InvocationMode.ASK)

        assert result.success is True
        assert result.output == "answer"
        assert result.exit_code == 0
        assert mock_run.call_args.kwargs["cwd"] == tmp_path

    def test_ask_excludes_stderr(self, tmp_path: Path) -> None:
        """Test ASK output is stdout only."""
        runner = ClaudeRunner(cwd=tmp_path)

        with patch("subprocess.run", return_value=completed(stdout="{}", stderr="warning: slow")):
            result = runner.invoke("q", mode=InvocationMode.ASK)

        assert result.output == "{}"

    def test_execute_includes_stderr(self, tmp_path: Path) -> None:
        """Test EXECUTE output combines stdout and stderr."""
        runner = ClaudeRunner(cwd=tmp_path)

        with patch("subprocess.run", return_value=completed(stdout="out\n", stderr="err\n")):
            result = runner.invoke("do it", mode=InvocationMode.EXECUTE)

        assert "out" in result.output
        assert "err" in result.output

    def test_stdin_delivery(self, tmp_path: Path) -> None:
        """Test stdin prompts are passed as process input."""
        runner = AmpRunner(cwd=tmp_path)

        with patch("subprocess.run", return_value=completed()) as mock_run:
            runner.invoke("the prompt", mode=InvocationMode.EXECUTE)

        assert mock_run.call_args.kwargs["input"] == "the prompt"

    def test_prompt_file_written_then_removed(self, tmp_path: Path) -> None:
        """Test the scratch prompt file exists during the call only."""
        seen: dict[str, str] = {}

        def fake_run(args, **kwargs):
            path = Path(args[3])
            seen["path"] = str(path)
            seen["content"] = path.read_text(encoding="utf-8")
            return completed(stdout="ok")

        runner = AmpRunner(cwd=tmp_path)
        with patch("subprocess.run", side_effect=fake_run):
            result = runner.invoke("file prompt", mode=InvocationMode.ASK)

        assert result.success is True
        assert seen["content"] == "file prompt"
        assert not Path(seen["path"]).exists()

    def test_nonzero_exit(self, tmp_path: Path) -> None:
        """Test a non-zero exit is a failed result, not an exception."""
        runner = ClaudeRunner(cwd=tmp_path)

        with patch("subprocess.run", return_value=completed(stdout="partial", stderr="boom", returncode=2)):
            result = runner.invoke("q", mode=InvocationMode.EXECUTE)

        assert result.success is False
        assert result.exit_code == 2
        assert result.error == "boom"
        assert "partial" in result.output

    def test_timeout(self, tmp_path: Path) -> None:
        """Test timeout handling."""
        runner = ClaudeRunner(cwd=tmp_path, timeout=5)

        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="claude", timeout=5)):
            result = runner.invoke("q")

        assert result.success is False
        assert result.exit_code == -1
        assert "timed out" in result.error

    def test_cli_not_found(self, tmp_path: Path) -> None:
        """Test handling when the backend CLI is not installed."""
        runner = OpenCodeRunner(cwd=tmp_path)

        with patch("subprocess.run", side_effect=FileNotFoundError()):
            result = runner.invoke("q")

        assert result.success is False
        assert "not found" in result.error

    def test_undecodable_output(self, tmp_path: Path) -> None:
        """Test invalid UTF-8 from the backend is replaced, not raised."""
        script = tmp_path / "claude"
        script.write_text("#!/bin/sh\nprintf 'ok \\377\\376 bytes'\n")
        script.chmod(0o755)
        runner = ClaudeRunner(cwd=tmp_path)
        runner.executable = str(script)

        result = runner.invoke("hi", mode=InvocationMode.EXECUTE)

        assert result.success is True
        assert result.output.startswith("ok ")
        assert result.output.endswith(" bytes")
        assert "\ufffd" in result.output

    def test_decoding_options(self, tmp_path: Path) -> None:
        """Test output is decoded as UTF-8 with replacement."""
        runner = ClaudeRunner(cwd=tmp_path)

        with patch("subprocess.run", return_value=completed()) as mock_run:
            runner.invoke("q")

        kwargs = mock_run.call_args.kwargs
        assert kwargs["encoding"] == "utf-8"
        assert kwargs["errors"] == "replace"

    def test_transcript_written(self, tmp_path: Path) -> None:
        """Test output is copied to the transcript file."""
        runner = ClaudeRunner(cwd=tmp_path)
        log_file = tmp_path / "logs" / "auto-compound-prd.log"

        with patch("subprocess.run", return_value=completed(stdout="transcript text")):
            runner.invoke("q", mode=InvocationMode.ASK, log_file=log_file)

        assert log_file.read_text() == "transcript text"

    def test_transcript_failure_does_not_change_result(self, tmp_path: Path) -> None:
        """Test an unwritable transcript leaves the result intact."""
        runner = ClaudeRunner(cwd=tmp_path)
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with patch("subprocess.run", return_value=completed(stdout="fine")):
            result = runner.invoke("q", mode=InvocationMode.ASK, log_file=blocker / "x.log")

        assert result.success is True
        assert result.output == "fine"

    def test_check_installed(self) -> None:
        """Test PATH lookup for the backend executable."""
        with patch("shutil.which", return_value="/usr/bin/amp"):
            assert AmpRunner().check_installed() is True
        with patch("shutil.which", return_value=None):
            assert AmpRunner().check_installed() is False


class TestWriteTranscript:
    """Tests for write_transcript."""

    def test_append(self, tmp_path: Path) -> None:
        """Test append mode keeps earlier content."""
        log_file = tmp_path / "t.log"
        write_transcript(log_file, "one\n")
        write_transcript(log_file, "two\n", append=True)

        assert log_file.read_text() == "one\ntwo\n"


class TestMockAgentRunner:
    """Tests for MockAgentRunner."""

    def test_scripted_outputs(self) -> None:
        """Test outputs are consumed in order, then the default is used."""
        runner = MockAgentRunner(outputs=["first", AgentResult(success=False, error="x")], default_output="rest")

        assert runner.invoke("a").output == "first"
        assert runner.invoke("b").success is False
        assert runner.invoke("c").output == "rest"
        assert runner.call_count == 3
        assert runner.prompts == ["a", "b", "c"]
        assert runner.last_prompt == "c"

    def test_callable_output(self) -> None:
        """Test a callable entry receives the prompt."""
        runner = MockAgentRunner(outputs=[lambda prompt: prompt.upper()])

        assert runner.invoke("shout").output == "SHOUT"

    def test_records_modes(self) -> None:
        """Test invocation modes are recorded."""
        runner = MockAgentRunner()
        runner.invoke("a", mode=InvocationMode.ASK)
        runner.invoke("b")

        assert runner.modes == [InvocationMode.ASK, InvocationMode.EXECUTE]
