"""Configuration management for compound."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError, ConfigMissingError

logger = logging.getLogger(__name__)

# Type alias for agent backend names
ToolName = Literal["amp", "claude", "opencode"]

SUPPORTED_TOOLS: tuple[str, ...] = ("amp", "claude", "opencode")
TOOL_ALIASES = {"claude-code": "claude"}

CONFIG_FILENAME = "compound.config.json"
ENV_FILENAME = ".env.local"

# Iteration caps differ per entry point: the full pipeline gets more room.
PIPELINE_MAX_ITERATIONS = 25
LOOP_MAX_ITERATIONS = 10


def normalize_tool_name(name: Optional[str]) -> ToolName:
    """Resolve a configured tool name to a supported backend.

    Args:
        name: Raw tool name from config or CLI. None selects the default.

    Returns:
        The canonical backend name.

    Raises:
        ConfigError: If the tool is not supported.
    """
    if not name:
        return "amp"
    if not isinstance(name, str):
        raise ConfigError(f"tool must be a string, got {name!r}")
    tool = TOOL_ALIASES.get(name.strip().lower(), name.strip().lower())
    if tool not in SUPPORTED_TOOLS:
        raise ConfigError(
            f"Unknown tool '{name}'. Supported tools: {', '.join(SUPPORTED_TOOLS)}"
        )
    return tool  # type: ignore


@dataclass(frozen=True)
class RunConfig:
    """Resolved parameters for a single pipeline run."""

    project_root: Path
    reports_dir: Path
    output_dir: Path
    tasks_dir: Path
    tool: ToolName = "amp"
    model: Optional[str] = None
    max_iterations: int = PIPELINE_MAX_ITERATIONS
    branch_prefix: str = "compound/"
    analyze_command: Optional[str] = None
    base_branch: str = "main"
    remote: str = "origin"
    iteration_delay: float = 2.0
    verify_completion: bool = False
    agent_timeout: Optional[int] = None

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        project_root: Path,
        default_max_iterations: int = PIPELINE_MAX_ITERATIONS,
    ) -> RunConfig:
        """Create RunConfig from a config mapping, defaulting field by field.

        Args:
            data: Parsed config file contents (camelCase keys).
            project_root: Directory relative paths are resolved against.
            default_max_iterations: Cap used when ``maxIterations`` is absent.

        Returns:
            A validated RunConfig.
        """
        root = Path(project_root)

        def _dir(key: str, default: str) -> Path:
            path = Path(data.get(key) or default)
            return path if path.is_absolute() else (root / path).resolve()

        timeout = data.get("agentTimeout")
        max_iterations = data.get("maxIterations")
        if max_iterations is None:
            max_iterations = default_max_iterations
        delay = data.get("iterationDelay")
        config = cls(
            project_root=root,
            reports_dir=_dir("reportsDir", "./reports"),
            output_dir=_dir("outputDir", "./scripts/compound"),
            tasks_dir=_dir("tasksDir", "./tasks"),
            tool=normalize_tool_name(data.get("tool")),
            model=data.get("model") or None,
            max_iterations=_as_int(max_iterations, "maxIterations"),
            branch_prefix=data.get("branchPrefix") or "compound/",
            analyze_command=data.get("analyzeCommand") or None,
            base_branch=data.get("baseBranch") or "main",
            remote=data.get("remote") or "origin",
            iteration_delay=_as_float(delay, "iterationDelay") if delay is not None else 2.0,
            verify_completion=data.get("verifyCompletion") is True,
            agent_timeout=_as_int(timeout, "agentTimeout") if timeout is not None else None,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Check invariants that defaults cannot guarantee.

        Raises:
            ConfigError: If a value is out of range.
        """
        if self.max_iterations < 1:
            raise ConfigError(f"maxIterations must be a positive integer, got {self.max_iterations}")
        if self.iteration_delay < 0:
            raise ConfigError(f"iterationDelay must not be negative, got {self.iteration_delay}")
        if self.agent_timeout is not None and self.agent_timeout < 1:
            raise ConfigError(f"agentTimeout must be a positive integer, got {self.agent_timeout}")
        if not self.branch_prefix.strip():
            raise ConfigError("branchPrefix must not be empty")

    def with_overrides(self, **overrides: Any) -> RunConfig:
        """Return a copy with CLI overrides applied (None values are ignored)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "tool" in changes:
            changes["tool"] = normalize_tool_name(changes["tool"])
        config = replace(self, **changes)
        config.validate()
        return config

    @property
    def manifest_file(self) -> Path:
        """Path to the task manifest (prd.json)."""
        return self.output_dir / "prd.json"

    @property
    def progress_file(self) -> Path:
        """Path to the append-only progress log."""
        return self.output_dir / "progress.txt"

    @property
    def archive_dir(self) -> Path:
        """Directory holding archived previous runs."""
        return self.output_dir / "archive"


def _as_int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _as_float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def read_config_file(config_path: Path) -> dict[str, Any]:
    """Read a JSON or YAML config file into a mapping.

    ``.json`` files are parsed as JSON; anything else as YAML.

    Args:
        config_path: Path to compound.config.json (or a YAML equivalent).

    Returns:
        The parsed mapping (empty for an empty file).

    Raises:
        ConfigError: If the file cannot be parsed or is not a mapping.
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            if Path(config_path).suffix == ".json":
                text = f.read()
                data = json.loads(text) if text.strip() else {}
            else:
                data = yaml.safe_load(f) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not parse {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain an object: {config_path}")
    return data


def load_config(
    config_path: Optional[Path] = None,
    project_root: Optional[Path] = None,
    default_max_iterations: int = PIPELINE_MAX_ITERATIONS,
    load_env: bool = True,
) -> RunConfig:
    """Resolve the RunConfig for this project.

    A missing default config file is not an error; every key falls back to
    its default. An explicitly requested config file that is missing, or a
    project root that does not exist, is fatal.

    Args:
        config_path: Explicit config file. Defaults to compound.config.json
            in the project root.
        project_root: Project root. Defaults to the current directory.
        default_max_iterations: Iteration cap when the file does not set one.
        load_env: Whether to load .env.local from the project root.

    Returns:
        Fully populated RunConfig.

    Raises:
        ConfigMissingError: If the project root or an explicit config file
            does not exist.
        ConfigError: If the config contents are invalid.
    """
    root = Path(project_root).resolve() if project_root else Path.cwd()
    if not root.is_dir():
        raise ConfigMissingError(f"Project root does not exist: {root}")

    if config_path is not None:
        path = Path(config_path)
        if not path.is_absolute():
            path = root / path
        if not path.is_file():
            raise ConfigMissingError(f"Config file not found: {path}")
    else:
        path = root / CONFIG_FILENAME

    data: dict[str, Any] = {}
    if path.is_file():
        data = read_config_file(path)
        logger.debug(f"Loaded config from {path}")
    else:
        logger.debug(f"No config file at {path}, using defaults")

    if load_env:
        env_file = root / ENV_FILENAME
        if env_file.is_file():
            load_dotenv(env_file, override=False)
            logger.debug(f"Loaded environment from {env_file}")

    return RunConfig.from_dict(data, root, default_max_iterations=default_max_iterations)
