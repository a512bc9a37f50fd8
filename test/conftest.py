import os
import sys
from pathlib import Path

import pytest


# Ensure the project `src` directory is on sys.path so tests can import
# modules like `pipeline`, `model.builder`, `analysis.fact_index`, etc.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# Plain output for every test that renders reports (read by reporter at import time)
os.environ["KESTREL_NO_COLORS"] = "1"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep engine settings from the developer's shell or .env out of the tests."""
    for name in (
        "KESTREL_WORKERS",
        "KESTREL_DEADLINE",
        "KESTREL_DETECTOR_TIMEOUT",
        "KESTREL_MIN_SEVERITY",
        "KESTREL_FAIL_ON",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
