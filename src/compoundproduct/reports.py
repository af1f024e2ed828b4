"""Report discovery: pick the newest report to analyze."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .errors import NoReportFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Report:
    """A report artifact on disk."""

    path: Path
    modified_at: datetime

    @property
    def name(self) -> str:
        return self.path.name

    def read_text(self) -> str:
        return self.path.read_text(encoding="utf-8")


def find_latest_report(reports_dir: Path, pattern: str = "*.md") -> Report:
    """Find the most recently modified report.

    Ties between reports with the same modification time resolve
    arbitrarily.

    Args:
        reports_dir: Directory holding reports.
        pattern: Glob for report files.

    Returns:
        The newest Report.

    Raises:
        NoReportFoundError: If the directory is missing or has no match.
    """
    if not reports_dir.is_dir():
        raise NoReportFoundError(f"No reports found in {reports_dir} (directory missing)")

    candidates = [p for p in reports_dir.glob(pattern) if p.is_file()]
    if not candidates:
        raise NoReportFoundError(f"No reports found in {reports_dir}")

    latest = max(candidates, key=lambda p: p.stat().st_mtime)
    report = Report(
        path=latest,
        modified_at=datetime.fromtimestamp(latest.stat().st_mtime),
    )
    logger.info(f"Using report: {report.name}")
    return report
