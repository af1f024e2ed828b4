"""Report analysis: pick the #1 actionable item from a report.

The analysis itself is delegated to the configured agent. This module builds
the prompt, decodes the free-text answer into an ``AnalysisDecision`` and
refuses to guess when the answer is unusable.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from .agents import AgentRunner, InvocationMode
from .errors import UnparsableAnalysisError

logger = logging.getLogger(__name__)

RECENT_WINDOW_DAYS = 7

REQUIRED_FIELDS = ("priority_item", "description", "rationale", "branch_name")


@dataclass
class AnalysisDecision:
    """The single priority item chosen from a report."""

    priority_item: str
    description: str
    rationale: str
    acceptance_criteria: list[str] = field(default_factory=list)
    estimated_tasks: int = 0
    branch_name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisDecision:
        """Create AnalysisDecision from a validated dictionary."""
        criteria = [str(c) for c in data.get("acceptance_criteria") or []]
        estimated = data.get("estimated_tasks")
        return cls(
            priority_item=str(data["priority_item"]).strip(),
            description=str(data.get("description") or "").strip(),
            rationale=str(data.get("rationale") or "").strip(),
            acceptance_criteria=criteria,
            estimated_tasks=int(estimated) if estimated is not None else len(criteria),
            branch_name=str(data.get("branch_name") or "").strip(),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


@dataclass
class RecentItem:
    """A recently completed item that analysis must not pick again."""

    title: str
    date: str


def find_recently_completed(
    tasks_dir: Path,
    now: Optional[datetime] = None,
    window_days: int = RECENT_WINDOW_DAYS,
) -> list[RecentItem]:
    """Collect PRDs modified within the trailing window.

    The title is the first ``# `` heading of each PRD, falling back to the
    file stem.

    Args:
        tasks_dir: Directory holding prd-*.md documents.
        now: Reference time. Defaults to the current time.
        window_days: Size of the trailing window in days.

    Returns:
        Recent items, oldest first.
    """
    if not tasks_dir.is_dir():
        return []

    cutoff = (now or datetime.now()) - timedelta(days=window_days)
    items: list[tuple[float, RecentItem]] = []

    for prd in tasks_dir.glob("prd-*.md"):
        mtime = prd.stat().st_mtime
        modified = datetime.fromtimestamp(mtime)
        if modified < cutoff:
            continue
        items.append((mtime, RecentItem(title=_prd_title(prd), date=modified.strftime("%Y-%m-%d"))))

    items.sort(key=lambda pair: pair[0])
    return [item for _, item in items]


def _prd_title(prd: Path) -> str:
    try:
        for line in prd.read_text(encoding="utf-8").splitlines():
            if line.startswith("# "):
                return line[2:].strip()
    except OSError as e:
        logger.warning(f"Could not read {prd}: {e}")
    return prd.stem


def build_analysis_prompt(report_text: str, recent: list[RecentItem]) -> str:
    """Build the prompt asking the agent for the #1 priority item.

    Args:
        report_text: Full report content.
        recent: Items fixed recently, listed as exclusions.

    Returns:
        The rendered prompt.
    """
    recent_section = ""
    if recent:
        lines = ["", "## Recently Fixed (Last 7 Days) - DO NOT PICK THESE AGAIN"]
        lines.extend(f"- {item.date}: {item.title}" for item in recent)
        recent_section = "\n".join(lines) + "\n"

    return f"""You are analyzing a daily report for a software product.

Read this report and identify the #1 most actionable item that should be worked on TODAY.

CONSTRAINTS:
- Must NOT require database migrations (no schema changes)
- Must be completable in a few hours of focused work
- Must be a clear, specific task (not vague like 'improve conversion')
- Prefer fixes over new features
- Prefer high-impact, low-effort items
- Focus on UI/UX improvements, copy changes, bug fixes, or configuration changes
- IMPORTANT: Do NOT pick items that appear in the 'Recently Fixed' section below
{recent_section}
REPORT:
{report_text}

Respond with ONLY a JSON object (no markdown, no code fences, no explanation):
{{
  "priority_item": "Brief title of the item",
  "description": "2-3 sentence description of what needs to be done",
  "rationale": "Why this is the #1 priority based on the report",
  "acceptance_criteria": ["List of 3-5 specific, verifiable criteria"],
  "estimated_tasks": 3,
  "branch_name": "compound/kebab-case-feature-name"
}}"""


def extract_json_object(content: str) -> tuple[Optional[dict], str]:
    """Extract a JSON object from agent output.

    Tries, in order:
    1. Parse the entire response as JSON
    2. Find the first top-level ``{...}`` block (string and escape aware)
       and parse it

    Args:
        content: Raw response content from the agent.

    Returns:
        Tuple of (parsed_dict or None, error_message).
    """
    if not content or not content.strip():
        return None, "Empty response content"

    # Strategy 1: Try parsing entire response as JSON
    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data, ""
    except json.JSONDecodeError:
        pass

    # Strategy 2: Find balanced braces (handles nested objects and strings)
    start = content.find("{")
    if start == -1:
        return None, "No JSON object found in response"

    depth = 0
    in_string = False
    escape = False

    for i, char in enumerate(content[start:], start):
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                json_str = content[start:i + 1]
                try:
                    return json.loads(json_str), ""
                except json.JSONDecodeError:
                    pass
                # Clean up trailing commas, only once the block failed as-is
                json_str = re.sub(r",\s*}", "}", json_str)
                json_str = re.sub(r",\s*]", "]", json_str)
                try:
                    data = json.loads(json_str)
                except json.JSONDecodeError as e:
                    return None, f"First JSON block is invalid: {e}"
                return data, ""

    return None, "Unbalanced braces in response"


def validate_decision_data(data: dict) -> tuple[bool, str]:
    """Validate that a decoded response has the decision structure.

    Checks:
    - Required keys are present
    - 'priority_item' is a non-empty string
    - 'acceptance_criteria' is a list if present
    - 'estimated_tasks' is an integer if present

    Args:
        data: Parsed JSON data to validate.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not isinstance(data, dict):
        return False, "Response is not a JSON object"

    missing = [key for key in REQUIRED_FIELDS if key not in data]
    if missing:
        return False, f"Missing required field(s): {', '.join(missing)}"

    priority = data.get("priority_item")
    if not isinstance(priority, str) or not priority.strip():
        return False, "Field 'priority_item' must be a non-empty string"

    criteria = data.get("acceptance_criteria")
    if criteria is not None and not isinstance(criteria, list):
        return False, "Field 'acceptance_criteria' must be a list"

    estimated = data.get("estimated_tasks")
    if estimated is not None:
        try:
            int(estimated)
        except (TypeError, ValueError):
            return False, "Field 'estimated_tasks' must be an integer"

    return True, ""


def slugify(text: str, max_length: int = 50) -> str:
    """Convert a title into a kebab-case branch segment."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "priority-item"


def normalize_branch_name(name: str, prefix: str, fallback_title: str = "") -> str:
    """Ensure a branch name carries the configured prefix exactly once.

    A name without the prefix has its first ``/`` segment replaced by the
    prefix, so ``feature/fix-login`` becomes ``compound/fix-login``. A name
    with nothing after the prefix is derived from ``fallback_title``.
    """
    name = name.strip()
    suffix = name[len(prefix):] if name.startswith(prefix) else name.split("/", 1)[-1]
    if not suffix.strip("/"):
        return f"{prefix}{slugify(fallback_title)}"
    return f"{prefix}{suffix}"


def parse_decision(content: str, branch_prefix: str = "compound/") -> AnalysisDecision:
    """Decode agent output into a validated AnalysisDecision.

    Args:
        content: Raw agent output.
        branch_prefix: Prefix the branch name must carry.

    Returns:
        The decision with a normalized branch name.

    Raises:
        UnparsableAnalysisError: If no JSON object can be decoded or
            required fields are missing.
    """
    data, extract_error = extract_json_object(content)
    if data is None:
        raise UnparsableAnalysisError(f"Could not parse response as JSON: {extract_error}", response=content)

    is_valid, validation_error = validate_decision_data(data)
    if not is_valid:
        raise UnparsableAnalysisError(f"Invalid analysis response: {validation_error}", response=content)

    decision = AnalysisDecision.from_dict(data)
    decision.branch_name = normalize_branch_name(decision.branch_name, branch_prefix, decision.priority_item)
    return decision


class ReportAnalyzer:
    """Runs the built-in analysis through the configured agent."""

    def __init__(
        self,
        runner: AgentRunner,
        tasks_dir: Path,
        branch_prefix: str = "compound/",
        log_file: Optional[Path] = None,
    ):
        self.runner = runner
        self.tasks_dir = tasks_dir
        self.branch_prefix = branch_prefix
        self.log_file = log_file

    def analyze(self, report_text: str, report_path: Optional[Path] = None) -> AnalysisDecision:
        """Pick the priority item from report text.

        Raises:
            UnparsableAnalysisError: If the agent gives no usable answer.
        """
        recent = find_recently_completed(self.tasks_dir)
        if recent:
            logger.info(f"Excluding {len(recent)} recently completed item(s)")

        prompt = build_analysis_prompt(report_text, recent)
        result = self.runner.invoke(prompt, mode=InvocationMode.ASK, log_file=self.log_file)

        output = result.output
        if not result.success:
            logger.warning(f"Analysis invocation failed: {result.error}")
            output = ""
        if not output.strip():
            raise UnparsableAnalysisError(f"Failed to get response from {self.runner.name}")

        return parse_decision(output, self.branch_prefix)


class CommandAnalyzer:
    """Runs a user-supplied analysis command instead of the built-in one.

    The report path is appended to the command, which must print the
    decision JSON on stdout.
    """

    def __init__(
        self,
        command: str,
        cwd: Path,
        branch_prefix: str = "compound/",
        timeout: Optional[int] = None,
    ):
        self.command = command
        self.cwd = cwd
        self.branch_prefix = branch_prefix
        self.timeout = timeout

    def analyze(self, report_text: str, report_path: Optional[Path] = None) -> AnalysisDecision:
        """Run the custom command on a report file.

        Raises:
            UnparsableAnalysisError: If the command fails or prints no
                usable decision.
        """
        if report_path is None:
            raise UnparsableAnalysisError("Custom analyze command requires a report path")

        shell_command = f"{self.command} {shlex.quote(str(report_path))}"
        logger.info(f"Running custom analyze command: {self.command}")

        try:
            proc = subprocess.run(
                ["bash", "-c", shell_command],
                cwd=self.cwd,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            raise UnparsableAnalysisError(f"Custom analyze command failed: {e}") from e

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise UnparsableAnalysisError(
                f"Custom analyze command exited with code {proc.returncode}: {stderr[:200]}"
            )

        return parse_decision(proc.stdout or "", self.branch_prefix)
