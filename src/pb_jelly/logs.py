import os
import re
import tempfile
from typing import Optional

ANSI_ESCAPE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")


def writable_logfile(preferred: str) -> str:
    """Return ``preferred`` if it can be created, else a temp-dir fallback."""
    logdir = os.path.dirname(preferred)
    try:
        os.makedirs(logdir, exist_ok=True)
        with open(preferred, "a"):
            pass
        return preferred
    except OSError:
        fallback = os.path.join(tempfile.gettempdir(), os.path.basename(preferred))
        try:
            with open(fallback, "a"):
                pass
            return fallback
        except OSError:
            raise RuntimeError(f"Unable to create log file in {preferred} or {fallback}")


def clear_log(log_path: str) -> None:
    if os.path.exists(log_path):
        with open(log_path, "w"):
            pass


def log_content(log_path: str) -> Optional[str]:
    if os.path.exists(log_path):
        with open(log_path, "r", errors="replace") as f:
            return ANSI_ESCAPE.sub("", f.read())
    return None


def tail(log_path: str, lines: int = 50) -> Optional[str]:
    content = log_content(log_path)
    if content is None:
        return None
    if lines <= 0:
        return ""
    return "\n".join(content.splitlines()[-lines:])
