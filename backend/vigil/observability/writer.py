"""
Append-only JSONL session log with size-based rotation.

File layout inside a session directory:

    test-logs.jsonl      active file (always the newest records)
    test-logs-1.jsonl    first rotated part
    test-logs-2.jsonl    second rotated part, ...

Every file starts with a session header record. Entry records are one
JSON object per line. Meta records (header, flush markers) carry a
"record_type" key; entry records never do.

INVARIANT: rotation renames the full active file and opens a fresh one
under the lock, so no record is lost or written twice.
"""

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, IO, Iterator, List, Optional

from .errors import LogWriteError

logger = logging.getLogger(__name__)

LOG_FORMAT = "jsonl"
FRAMEWORK = "vigil"
HEADER_RECORD = "session_header"
FLUSH_RECORD = "session_flush"


class JsonlLogWriter:
    """
    Single-writer JSONL appender.

    The size check and the rename/reopen swap run under one lock; that is
    the only shared state.
    """

    def __init__(self, path: Path, max_bytes: int, header: Dict[str, Any]):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._header = dict(header)
        self._lock = threading.Lock()
        self._handle: Optional[IO[str]] = None
        self._size = 0
        self.rotation_count = len([p for p in log_files(self.path) if p != self.path])
        self.records_written = 0

    def open(self) -> None:
        with self._lock:
            self._open_locked()

    def _open_locked(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not self.path.exists() or self.path.stat().st_size == 0
        self._handle = open(self.path, "a", encoding="utf-8")
        self._size = self.path.stat().st_size
        if is_new:
            header = {
                "record_type": HEADER_RECORD,
                **self._header,
                "framework": FRAMEWORK,
                "log_format": LOG_FORMAT,
                "part": self.rotation_count,
            }
            self._write_line_locked(json.dumps(header, default=str))

    def _write_line_locked(self, line: str) -> None:
        data = line + "\n"
        self._handle.write(data)
        self._handle.flush()
        self._size += len(data.encode("utf-8"))

    def _rotated_path(self, index: int) -> Path:
        return self.path.with_name(f"{self.path.stem}-{index}{self.path.suffix}")

    def _rotate_locked(self) -> None:
        self._handle.close()
        self._handle = None
        self.rotation_count += 1
        target = self._rotated_path(self.rotation_count)
        self.path.rename(target)
        logger.info(f"[VIGIL:WRITER] Log file rotated to: {target}")
        self._open_locked()

    def write(self, record: Dict[str, Any]) -> None:
        """
        Append one record, rotating first when the active file is full.

        Raises:
            LogWriteError: The record could not be persisted
        """
        line = json.dumps(record, default=str)
        try:
            with self._lock:
                if self._handle is None:
                    self._open_locked()
                if self._size >= self.max_bytes:
                    self._rotate_locked()
                self._write_line_locked(line)
                self.records_written += 1
        except OSError as e:
            raise LogWriteError(f"Failed to append to {self.path}: {e}") from e

    def write_meta(self, record_type: str, payload: Dict[str, Any]) -> None:
        try:
            with self._lock:
                if self._handle is None:
                    self._open_locked()
                self._write_line_locked(json.dumps({"record_type": record_type, **payload}, default=str))
        except OSError as e:
            raise LogWriteError(f"Failed to append to {self.path}: {e}") from e

    def flush(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None


def log_files(path: Path) -> List[Path]:
    """Rotated parts in rotation order, then the active file."""
    path = Path(path)
    pattern = re.compile(rf"^{re.escape(path.stem)}-(\d+){re.escape(path.suffix)}$")
    rotated = []
    if path.parent.exists():
        for candidate in path.parent.iterdir():
            match = pattern.match(candidate.name)
            if match:
                rotated.append((int(match.group(1)), candidate))
    files = [p for _, p in sorted(rotated)]
    if path.exists():
        files.append(path)
    return files


def iter_records(path: Path, include_meta: bool = False) -> Iterator[Dict[str, Any]]:
    """
    Yield records from every part of a session log in write order.

    Lines that are not valid JSON are skipped with a warning.
    """
    for file_path in log_files(path):
        with open(file_path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"[VIGIL:WRITER] Skipping corrupt line {file_path}:{line_no}: {e}")
                    continue
                if "record_type" in record and not include_meta:
                    continue
                yield record


def read_entries(path: Path) -> List[Dict[str, Any]]:
    return list(iter_records(path))
