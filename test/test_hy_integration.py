"""End-to-end integration tests for Hy detectors.

Tests the full pipeline: Hy file -> register-detector -> Registry -> scan -> findings.
"""

import os
import tempfile
import textwrap
from pathlib import Path

import pytest

from cli.helpers import collect_detector_files, load_detector_paths
from core.errors import DetectorExecutionError, DetectorLoadError, DuplicateDetectorIdError
from rules.hy_loader import load_hy_detectors, register_detector, severity_from_keyword
from rules.ir import Category, Severity
from semantic.checker import BUILTIN_DETECTORS, default_registry
from test_utils import assembly, build, call, contract, expr_stmt, findings_of, function, msg_sender, scan


DETECTORS_DIR = Path(__file__).resolve().parents[1] / "detectors"

PUBLIC_FUNCTIONS_HY = """
    (import rules.hy_loader [register-detector])

    (defn evaluate [ctx]
      (lfor f (.public-functions ctx)
            (.report ctx "medium" (+ "public function " f.name) :function f)))

    (register-detector
      :id "public-functions"
      :category "access-control"
      :severity "medium"
      :description "Lists public functions"
      :evaluate evaluate)
"""


class TestLoadHyDetectors:
    """Loading detector files."""

    def _create_temp_hy_file(self, content: str) -> str:
        """Create a temporary Hy file with given content."""
        fd, path = tempfile.mkstemp(suffix=".hy")
        with os.fdopen(fd, "w") as f:
            f.write(textwrap.dedent(content))
        return path

    def test_load_hygiene_detectors(self):
        detectors = load_hy_detectors(str(DETECTORS_DIR / "hygiene.hy"))
        assert [d.id for d in detectors] == ["inline-assembly-usage", "deprecated-suicide"]
        assert all(d.category == Category.LOW_LEVEL_CALL for d in detectors)
        assert all(d.severity == Severity.LOW for d in detectors)
        assert all(d.source.endswith("hygiene.hy") for d in detectors)

    def test_load_temp_file(self):
        path = self._create_temp_hy_file(PUBLIC_FUNCTIONS_HY)
        try:
            detectors = load_hy_detectors(path)
        finally:
            os.unlink(path)
        assert len(detectors) == 1
        assert detectors[0].id == "public-functions"
        assert detectors[0].description == "Lists public functions"

    def test_missing_file(self):
        with pytest.raises(DetectorLoadError, match="not found"):
            load_hy_detectors("/nonexistent/detector.hy")

    def test_file_without_detectors(self):
        path = self._create_temp_hy_file('(setv x 1)\n')
        try:
            with pytest.raises(DetectorLoadError, match="registers no detectors"):
                load_hy_detectors(path)
        finally:
            os.unlink(path)

    def test_unknown_category(self):
        path = self._create_temp_hy_file(PUBLIC_FUNCTIONS_HY.replace('"access-control"', '"nonsense"'))
        try:
            with pytest.raises(DetectorLoadError, match="Unknown category"):
                load_hy_detectors(path)
        finally:
            os.unlink(path)

    def test_syntax_error_wrapped(self):
        path = self._create_temp_hy_file("(defn broken [ctx]\n")
        try:
            with pytest.raises(DetectorLoadError, match="Failed to load"):
                load_hy_detectors(path)
        finally:
            os.unlink(path)

    def test_register_outside_load(self):
        with pytest.raises(DetectorLoadError, match="outside load_hy_detectors"):
            register_detector(id="x", category="oracle", severity="low", evaluate=lambda ctx: [])

    def test_severity_keyword(self):
        assert severity_from_keyword(":critical") == Severity.CRITICAL
        assert severity_from_keyword("low") == Severity.LOW


class TestDetectorPaths:
    """Registering Hy detectors next to the built-ins."""

    def test_directory_collection_skips_private_files(self, tmp_path):
        (tmp_path / "a.hy").write_text(PUBLIC_FUNCTIONS_HY)
        (tmp_path / "_helpers.hy").write_text("(setv y 2)\n")
        assert collect_detector_files(str(tmp_path)) == [str(tmp_path / "a.hy")]

    def test_registered_after_builtins(self):
        registry = default_registry()
        loaded = load_detector_paths(registry, [str(DETECTORS_DIR)])
        assert [d.id for d in loaded] == ["inline-assembly-usage", "deprecated-suicide"]
        assert registry.order_of("inline-assembly-usage") == len(BUILTIN_DETECTORS)

    def test_duplicate_id_rejected(self):
        registry = default_registry()
        load_detector_paths(registry, [str(DETECTORS_DIR)])
        with pytest.raises(DuplicateDetectorIdError):
            load_detector_paths(registry, [str(DETECTORS_DIR / "hygiene.hy")])

    def test_path_without_detectors(self, tmp_path):
        with pytest.raises(DetectorLoadError, match="No detector files"):
            load_detector_paths(default_registry(), [str(tmp_path)])


class TestHyDetectorsInScan:
    """Hy detectors run through the same scheduler as the built-ins."""

    def _registry(self):
        registry = default_registry()
        load_detector_paths(registry, [str(DETECTORS_DIR)])
        return registry

    def test_inline_assembly_and_suicide(self):
        program = build(
            contract(
                "Legacy",
                function("raw", [assembly("{ sstore(0, 1) }")]),
                function("kill", [expr_stmt(call("suicide", msg_sender()))]),
            )
        )
        report = scan(program, detectors=["inline-assembly-usage", "deprecated-suicide"], registry=self._registry())

        assembly_findings = findings_of(report, "inline-assembly-usage")
        assert [f.location.function for f in assembly_findings] == ["raw"]
        suicide_findings = findings_of(report, "deprecated-suicide")
        assert [f.location.function for f in suicide_findings] == ["kill"]
        assert "use `selfdestruct`" in suicide_findings[0].message
        assert all(f.severity == Severity.LOW for f in report.findings)

    def test_interface_not_applicable(self):
        program = build(contract("IThing", function("f", None, visibility="external"), kind="interface"))
        report = scan(program, detectors=["inline-assembly-usage"], registry=self._registry())
        assert report.findings == []
        assert report.skipped_items == 1

    def test_failing_hy_detector_isolated(self, tmp_path):
        detector_file = tmp_path / "broken.hy"
        detector_file.write_text(
            textwrap.dedent(
                """
                (import rules.hy_loader [register-detector])

                (defn evaluate [ctx]
                  (raise (ValueError "hy bug")))

                (register-detector :id "broken-hy" :category "oracle" :severity "low" :evaluate evaluate)
                """
            )
        )
        registry = default_registry()
        load_detector_paths(registry, [str(detector_file)])
        report = scan(build(contract("C", function("f", []))), detectors=["broken-hy"], registry=registry)
        assert report.findings == []
        assert len(report.errors) == 1
        assert isinstance(report.errors[0], DetectorExecutionError)
        assert isinstance(report.errors[0].cause, ValueError)

    def test_public_function_report(self, tmp_path):
        detector_file = tmp_path / "public.hy"
        detector_file.write_text(textwrap.dedent(PUBLIC_FUNCTIONS_HY))
        registry = default_registry()
        load_detector_paths(registry, [str(detector_file)])
        program = build(contract("C", function("f", []), function("g", [], visibility="internal")))
        report = scan(program, detectors=["public-functions"], registry=registry)
        assert [f.message for f in report.findings] == ["public function f"]
