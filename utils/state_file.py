"""Inter-process file locking, atomic JSON replace and JSONL append helpers."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Iterator, List

try:  # pragma: no cover - platform specific
    import msvcrt
except ImportError:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

E_STATE_LOCKED = "E_STATE_LOCKED"
E_JSON_CORRUPT = "E_JSON_CORRUPT"

_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_TRANSIENT_REPLACE_WINERRORS = {5, 32, 33}


class StateFileLockError(RuntimeError):
    """Raised when the `<path>.lock` sidecar cannot be acquired in time."""

    code = E_STATE_LOCKED


class StateFileCorruptError(ValueError):
    """Raised when a state document exists but is not valid JSON."""

    code = E_JSON_CORRUPT


def _lock_fd(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
        return
    if fcntl is not None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _unlock_fd(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Hold an exclusive lock on `<target_path>.lock` for the duration of the block."""

    lock_path = f"{target_path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    with open(lock_path, "a+b") as handle:
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            # msvcrt locks a byte range, so the sidecar must not be empty.
            handle.write(b"0")
            handle.flush()
        handle.seek(0)
        while True:
            try:
                _lock_fd(handle)
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(f"{E_STATE_LOCKED}: state lock timeout path={target_path}") from exc
                time.sleep(poll)
        try:
            yield
        finally:
            try:
                _unlock_fd(handle)
            except OSError:
                pass


def _replace_with_retries(tmp_path: str, target_path: str, retries: int) -> None:
    for attempt in range(retries + 1):
        try:
            os.replace(tmp_path, target_path)
            return
        except OSError as exc:
            winerror = int(getattr(exc, "winerror", 0) or 0)
            transient = exc.errno in _TRANSIENT_REPLACE_ERRNOS or winerror in _TRANSIENT_REPLACE_WINERRORS
            if not transient or attempt >= retries:
                raise
            time.sleep(0.03 * (1.5**attempt))


def atomic_write_json(path: str, payload: Any, *, replace_retries: int = 8, indent: int = 2) -> None:
    """Write JSON to a temp file in the target directory, fsync, then os.replace it in."""

    state_dir = os.path.dirname(path) or "."
    os.makedirs(state_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(path)}.", suffix=".tmp", dir=state_dir, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        _replace_with_retries(tmp_path, path, max(0, int(replace_retries)))
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: str, *, default: Any = None) -> Any:
    """Read a JSON document without locking; the caller holds the sidecar lock."""

    if not os.path.exists(path):
        return default
    with open(path, "r", encoding="utf-8-sig") as f:
        raw = f.read()
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateFileCorruptError(f"{E_JSON_CORRUPT}: path={path} error={exc}") from exc


def append_jsonl(path: str, row: dict) -> None:
    """Append one JSON object as a line and fsync; the file is only ever appended to."""

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    line = json.dumps(row, ensure_ascii=False, sort_keys=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def read_jsonl(path: str) -> List[dict]:
    """Read every well-formed object row; a torn trailing line from a crash is skipped."""

    if not os.path.exists(path):
        return []
    rows: List[dict] = []
    with open(path, "r", encoding="utf-8-sig") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            try:
                row = json.loads(text)
            except json.JSONDecodeError:
                continue
            if isinstance(row, dict):
                rows.append(row)
    return rows
