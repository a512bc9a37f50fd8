"""
Engine configuration.

Values come from environment variables (optionally loaded from a `.env` file by
the CLI) and can be overridden by CLI flags:

    KESTREL_WORKERS           worker threads for indexing and detectors (default 4, 1 = inline)
    KESTREL_DEADLINE          global scan deadline in seconds (unset = no deadline)
    KESTREL_DETECTOR_TIMEOUT  per-detector timeout in seconds (default 30)
    KESTREL_MIN_SEVERITY      drop findings below this severity (default: keep all)
    KESTREL_FAIL_ON           exit with 1 when findings at/above this severity exist (default high)
"""

import os
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from rules.ir import Severity

DEFAULT_WORKERS = 4
DEFAULT_DETECTOR_TIMEOUT = 30.0


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'")


def _env_severity(name: str) -> Optional[Severity]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return Severity.from_string(raw)


@dataclass(frozen=True)
class EngineConfig:
    """Scan settings shared by the indexer, scheduler and aggregator."""

    workers: int = DEFAULT_WORKERS
    deadline: Optional[float] = None  # seconds from scan start
    detector_timeout: Optional[float] = DEFAULT_DETECTOR_TIMEOUT
    min_severity: Optional[Severity] = None
    fail_on: Severity = Severity.HIGH
    clock: Callable[[], float] = field(default=time.monotonic, compare=False)

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        workers = os.getenv("KESTREL_WORKERS")
        timeout = _env_float("KESTREL_DETECTOR_TIMEOUT")
        return cls(
            workers=int(workers) if workers else DEFAULT_WORKERS,
            deadline=_env_float("KESTREL_DEADLINE"),
            detector_timeout=timeout if timeout is not None else DEFAULT_DETECTOR_TIMEOUT,
            min_severity=_env_severity("KESTREL_MIN_SEVERITY"),
            fail_on=_env_severity("KESTREL_FAIL_ON") or Severity.HIGH,
        )

    def with_overrides(self, **overrides) -> "EngineConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
