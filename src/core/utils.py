import os
import sys

_DEBUG_ENABLED = bool(os.getenv("KESTREL_DEBUG"))
_COLORS_ENABLED = not os.getenv("KESTREL_NO_COLORS")


def _prefix(label: str, style: str) -> str:
    if not _COLORS_ENABLED:
        return f"[{label}]"
    return f"\033[{style}m[{label}]\033[0m"


def _log(label: str, style: str, args, kwargs):
    # stderr keeps report output on stdout machine-readable
    kwargs.setdefault("file", sys.stderr)
    print(_prefix(label, style), *args, **kwargs)


def debug(*args, **kwargs):
    if _DEBUG_ENABLED:
        _log("DEBUG", "1", args, kwargs)


def info(*args, **kwargs):
    _log("INFO", "1;34", args, kwargs)


def warn(*args, **kwargs):
    _log("WARNING", "1;33", args, kwargs)


def error(*args, **kwargs):
    _log("ERROR", "1;31", args, kwargs)
