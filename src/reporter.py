"""
Report sink: renders a ScanReport to the console or as JSON.

Console output is rendered from templates/console.j2 (jinja2). Set
KESTREL_NO_COLORS to disable ANSI colours (evaluated at import time).
"""

import json
import os
import re
from enum import Enum
from typing import Dict, List, Optional, TextIO

from pipeline import ScanReport
from rules.ir import Severity
from templates import render

_USE_COLOR = not os.environ.get("KESTREL_NO_COLORS")


class _C:
    """ANSI color codes."""

    RESET = "\033[0m" if _USE_COLOR else ""
    BOLD = "\033[1m" if _USE_COLOR else ""
    DIM = "\033[2m" if _USE_COLOR else ""
    RED = "\033[31m" if _USE_COLOR else ""
    YELLOW = "\033[33m" if _USE_COLOR else ""
    CYAN = "\033[36m" if _USE_COLOR else ""
    BRIGHT_RED = "\033[91m" if _USE_COLOR else ""


def _severity_color(severity: Severity) -> str:
    """Get color code for severity level."""
    colors = {
        Severity.CRITICAL: f"{_C.BOLD}{_C.BRIGHT_RED}",
        Severity.HIGH: _C.RED,
        Severity.MEDIUM: _C.YELLOW,
        Severity.LOW: _C.CYAN,
    }
    return colors.get(severity, "")


class OutputMode(Enum):
    """Report verbosity modes."""

    SHORT = "short"  # severity, detector, location, message
    FULL = "full"  # + category, confidence, evidence, subsumptions
    JSON = "json"  # Machine-readable JSON output


def _related(report: ScanReport) -> Dict[int, List[str]]:
    """Finding index -> human-readable subsumption lines mentioning it."""
    related: Dict[int, List[str]] = {}
    for group in report.groups:
        for s in group.subsumptions:
            general = report.findings[s.general].detector_id
            specific = report.findings[s.specific].detector_id
            line = f"{general} {s.relation} {specific}"
            related.setdefault(s.specific, []).append(line)
            related.setdefault(s.general, []).append(line)
    return related


def render_report(report: ScanReport, output_mode: OutputMode = OutputMode.SHORT) -> str:
    """Render a report as console text or JSON."""
    if output_mode == OutputMode.JSON:
        return json.dumps(report.to_dict(), indent=2)
    return render(
        "console.j2",
        report=report,
        full=output_mode == OutputMode.FULL,
        related=_related(report),
        C=_C,
        sev_color=_severity_color,
    )


def report_findings(
    report: ScanReport,
    output_mode: OutputMode = OutputMode.SHORT,
    output_file: Optional[TextIO] = None,
) -> int:
    """
    Print a report with configurable verbosity.

    Args:
        report: Result of Engine.scan / Engine.scan_many
        output_mode: SHORT (default), FULL, or JSON
        output_file: Optional file handle to write output to (in addition to stdout)

    Returns: Number of findings reported
    """
    text = render_report(report, output_mode)
    print(text, end="" if text.endswith("\n") else "\n")
    if output_file:
        # no ANSI escapes in saved reports
        if output_mode != OutputMode.JSON and _USE_COLOR:
            text = _strip_ansi(text)
        print(text, end="" if text.endswith("\n") else "\n", file=output_file)
    return len(report.findings)


_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def _strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)
