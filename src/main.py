"""
Main entry point: command-line scanning of parse-tree files.

Exit codes:
    0  scan completed, no findings at/above the fail-on threshold
    1  findings at/above the fail-on threshold
    2  no input could be scanned (or the command line was unusable)
"""

import argparse
import os
import sys
from typing import List, Optional

# Load environment variables from .env file (if exists) before anything reads them
from dotenv import load_dotenv

load_dotenv()

from core.config import EngineConfig  # noqa: E402
from core.errors import DetectorLoadError, DuplicateDetectorIdError  # noqa: E402
from core.utils import debug, error, info  # noqa: E402
from rules.ir import Category, Severity  # noqa: E402
from rules.registry import DetectorFilter, Registry  # noqa: E402
from cli.helpers import (  # noqa: E402
    collect_input_files,
    load_detector_paths,
    print_categories,
    print_detectors,
)
from pipeline import Engine  # noqa: E402
from reporter import OutputMode, report_findings  # noqa: E402
from semantic.checker import default_registry  # noqa: E402

EXIT_CLEAN = 0
EXIT_NO_INPUT = 2

SEVERITY_CHOICES = [s.value for s in Severity]


def build_registry(detector_paths: Optional[List[str]] = None) -> Registry:
    """Built-in detectors plus the Hy detectors found under `detector_paths`."""
    registry = default_registry()
    if detector_paths:
        load_detector_paths(registry, detector_paths)
    return registry


def main(
    input_paths: List[str],
    detector_paths: Optional[List[str]] = None,
    selected_detectors: Optional[List[str]] = None,
    categories: Optional[List[str]] = None,
    exclude_detectors: Optional[List[str]] = None,
    min_severity: Optional[Severity] = None,
    fail_on: Optional[Severity] = None,
    output_mode: OutputMode = OutputMode.SHORT,
    output_dir: Optional[str] = None,
    workers: Optional[int] = None,
    deadline: Optional[float] = None,
) -> int:
    """Scan `input_paths` and report; returns the process exit code."""
    try:
        registry = build_registry(detector_paths)
    except (DetectorLoadError, DuplicateDetectorIdError) as e:
        error(str(e))
        return EXIT_NO_INPUT

    # Validate detector selection
    for detector_id in (selected_detectors or []) + (exclude_detectors or []):
        if detector_id not in registry:
            error(f"Detector not found: {detector_id}. Use --list-detectors to see available detectors.")
            return EXIT_NO_INPUT
    try:
        category_set = frozenset(Category.from_string(c) for c in categories) if categories else None
    except ValueError as e:
        error(f"{e}. Use --list-categories to see available categories.")
        return EXIT_NO_INPUT

    # Collect inputs
    input_files: List[str] = []
    for input_path in input_paths:
        files = collect_input_files(input_path)
        if not files:
            error(f"No parse-tree files found at: {input_path}")
        input_files.extend(files)
    if not input_files:
        return EXIT_NO_INPUT

    try:
        config = EngineConfig.from_env().with_overrides(
            workers=workers,
            deadline=deadline,
            min_severity=min_severity,
            fail_on=fail_on,
        )
    except ValueError as e:
        error(f"Invalid configuration: {e}")
        return EXIT_NO_INPUT
    flt = DetectorFilter(
        ids=frozenset(selected_detectors) if selected_detectors else None,
        categories=category_set,
        min_severity=config.min_severity,
        exclude_ids=frozenset(exclude_detectors or ()),
    )
    selected = registry.select(flt)
    if not selected:
        error("No detectors left after filtering")
        return EXIT_NO_INPUT
    if len(selected) != len(registry):
        info(f"Running {len(selected)} of {len(registry)} detector(s)")
    debug(f"config: workers={config.workers} deadline={config.deadline} timeout={config.detector_timeout}")

    report = Engine(registry, config).scan_many(input_files, flt)

    output_file = None
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        project_name = os.path.splitext(os.path.basename(os.path.normpath(input_paths[0])))[0]
        ext = ".json" if output_mode == OutputMode.JSON else ".txt"
        output_path = os.path.join(output_dir, f"OUT-{project_name}{ext}")
        output_file = open(output_path, "w", encoding="utf-8")
        info(f"Writing results to: {output_path}")

    try:
        report_findings(report, output_mode, output_file)
    finally:
        if output_file:
            output_file.close()

    if not report.is_complete:
        info(f"Scan incomplete: {len(report.errors)} error(s)")
    return report.exit_code(config.fail_on)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kestrel", description="Static vulnerability scanner for smart contracts")
    parser.add_argument("input_paths", nargs="*", metavar="INPUT", help="Parse-tree JSON file or directory")
    parser.add_argument(
        "-d",
        "--detectors",
        action="append",
        metavar="PATH",
        help="Hy detector file or directory (can be specified multiple times)",
    )
    parser.add_argument(
        "--detector",
        action="append",
        metavar="ID",
        help="Run only the specified detector(s) (can be specified multiple times)",
    )
    parser.add_argument(
        "--category",
        action="append",
        metavar="NAME",
        help="Run only detectors of the specified category (can be specified multiple times)",
    )
    parser.add_argument(
        "--exclude-detector",
        action="append",
        metavar="ID",
        help="Skip the specified detector (can be specified multiple times)",
    )
    parser.add_argument(
        "--min-severity",
        choices=SEVERITY_CHOICES,
        default=None,
        help="Minimum severity to report (low/medium/high/critical)",
    )
    parser.add_argument(
        "--fail-on",
        choices=SEVERITY_CHOICES,
        default=None,
        help="Exit with 1 when findings at/above this severity exist (default: high)",
    )
    parser.add_argument("-o", "--output", choices=[m.value for m in OutputMode], default="short", help="Output format")
    parser.add_argument("-O", "--output-dir", metavar="DIR", help="Save results to a file in DIR")
    parser.add_argument("--workers", type=int, metavar="N", help="Worker threads (1 = run inline)")
    parser.add_argument("--deadline", type=float, metavar="SECONDS", help="Stop scheduling detectors after SECONDS")
    parser.add_argument("--list-detectors", action="store_true", help="List all detectors with descriptions")
    parser.add_argument("--list-categories", action="store_true", help="List all detector categories")
    return parser


def run(argv: Optional[List[str]] = None) -> None:
    """Console-script entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_detectors or args.list_categories:
        try:
            registry = build_registry(args.detectors)
        except (DetectorLoadError, DuplicateDetectorIdError) as e:
            error(str(e))
            sys.exit(EXIT_NO_INPUT)
        if args.list_detectors:
            print_detectors(registry)
        else:
            print_categories(registry)
        sys.exit(EXIT_CLEAN)

    if not args.input_paths:
        parser.error("at least one INPUT is required (or use --list-detectors/--list-categories)")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be >= 1")

    sys.exit(
        main(
            args.input_paths,
            detector_paths=args.detectors,
            selected_detectors=args.detector,
            categories=args.category,
            exclude_detectors=args.exclude_detector,
            min_severity=Severity.from_string(args.min_severity) if args.min_severity else None,
            fail_on=Severity.from_string(args.fail_on) if args.fail_on else None,
            output_mode=OutputMode(args.output),
            output_dir=args.output_dir,
            workers=args.workers,
            deadline=args.deadline,
        )
    )


if __name__ == "__main__":
    run()
