"""
Error log for memo-echo.

Indexing keeps going past a broken note and the CLI prints one line per
failure, so the tracebacks go to `memo-echo-errors.log` in the store.
Each entry starts with a header naming the operation, the note and, for
concept-store failures, the store location:

    ============================================================
    [2024-05-01T12:00:00+00:00] index note=kafka.md
    OSError: disk error
    Traceback (most recent call last):
    ...
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ERROR_LOG_FILENAME = "memo-echo-errors.log"


def error_log_path(store_path: Optional[Path] = None) -> Path:
    """Error log inside `store_path`, else MEMOECHO_STORE_PATH or ~/.memo-echo."""
    if store_path is None:
        env = os.environ.get("MEMOECHO_STORE_PATH")
        store_path = Path(env) if env else Path.home() / ".memo-echo"
    return Path(store_path) / ERROR_LOG_FILENAME


def format_entry(
    exc: BaseException,
    operation: str = "",
    *,
    note_id: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> str:
    """Render one log entry: header line, summary line, traceback."""
    header = [f"[{timestamp or datetime.now(timezone.utc).isoformat()}]"]
    if operation:
        header.append(operation)
    if note_id:
        header.append(f"note={note_id}")
    # ConceptStoreUnavailable and RegistryConnectionError carry the store
    location = getattr(exc, "location", "")
    if location:
        header.append(f"store={location}")

    lines = [
        "=" * 60,
        " ".join(header),
        f"{type(exc).__name__}: {exc}",
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip(),
    ]
    return "\n" + "\n".join(lines) + "\n"


def log_exception(
    exc: BaseException,
    operation: str = "",
    *,
    note_id: Optional[str] = None,
    store_path: Optional[Path] = None,
) -> Path:
    """
    Append `exc` to the error log and return the log's path.

    Args:
        exc: The exception that occurred
        operation: What was running, e.g. "index" or "memo-echo CLI"
        note_id: The note being processed, if any
        store_path: Store directory; defaults as in error_log_path()
    """
    log_path = error_log_path(store_path)
    entry = format_entry(exc, operation, note_id=note_id)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        pass  # an unwritable log must not mask the original error
    return log_path
