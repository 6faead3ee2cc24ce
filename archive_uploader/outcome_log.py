"""
Per-file outcome records and the append-only log they are written to.

The outcome log is the only record of what a run achieved, and it is what a
later run reads back (see ``progress.py``) to decide which files to skip.
Every line is a complete record, flushed as soon as it is written, so a log
cut short by a crash is still valid up to its last full line.
"""

import json
import logging
import queue
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import SerializationError
from .models import OutputFormat

logger = logging.getLogger("archive_uploader.outcome_log")

# Filenames that are not valid UTF-8 come back from os.fsdecode with
# surrogate escapes; keep the original bytes when writing them out.
LOG_ENCODING = "utf-8"
LOG_ERRORS = "surrogateescape"


class LogFormat(Enum):
    TSV = "tsv"
    NDJSON = "ndjson"

    @property
    def extension(self) -> str:
        return self.value

    @classmethod
    def for_output(cls, output_format: OutputFormat) -> "LogFormat":
        return cls.TSV if output_format is OutputFormat.TSV else cls.NDJSON

    @classmethod
    def from_path(cls, path: Path) -> "LogFormat":
        suffix = path.suffix.lower()
        if suffix == ".tsv":
            return cls.TSV
        if suffix in (".ndjson", ".json", ".jsonl"):
            return cls.NDJSON
        raise ValueError(
            f"Cannot tell the format of '{path}': expected a .tsv or .ndjson extension"
        )


class FailureStage(Enum):
    UPLOAD_METADATA = "UploadMetadata"
    UPLOAD_DATA = "UploadData"

    @property
    def tsv_name(self) -> str:
        return _TSV_STAGES[self]


_TSV_STAGES = {
    FailureStage.UPLOAD_METADATA: "failed_to_upload_metadata",
    FailureStage.UPLOAD_DATA: "failed_to_upload_data",
}
_STAGES_BY_TSV_NAME = {name: stage for stage, name in _TSV_STAGES.items()}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Outcome:
    """Terminal result of one attempted file. Never mutated once built."""

    path: str
    size: int
    start_millis: int
    end_millis: int
    failure_stage: Optional[FailureStage] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, path: str, size: int, start_millis: int, end_millis: int) -> "Outcome":
        return cls(path, size, start_millis, end_millis)

    @classmethod
    def failure(
        cls,
        path: str,
        size: int,
        start_millis: int,
        end_millis: int,
        stage: FailureStage,
        reason: str,
    ) -> "Outcome":
        return cls(path, size, start_millis, end_millis, stage, reason)

    @property
    def is_success(self) -> bool:
        return self.failure_stage is None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_line(self, log_format: LogFormat) -> str:
        if log_format is LogFormat.TSV:
            return self.to_tsv_row()
        if log_format is LogFormat.NDJSON:
            return self.to_json_line()
        raise SerializationError(f"Unknown log format: {log_format}")

    def to_tsv_row(self) -> str:
        if self.is_success:
            status, stage, reason = "success", "", ""
        else:
            status, stage, reason = "failure", self.failure_stage.tsv_name, self.reason or ""
        columns = [
            status,
            _escape_tsv(self.path),
            str(self.size),
            str(self.start_millis),
            str(self.end_millis),
            stage,
            _escape_tsv(reason),
        ]
        return "\t".join(columns) + "\n"

    def to_json_line(self) -> str:
        payload: Dict[str, Any] = {
            "status": "Success" if self.is_success else "Failure",
            "path": self.path,
            "size": self.size,
            "start_millis": self.start_millis,
            "end_millis": self.end_millis,
        }
        if not self.is_success:
            payload["failure_stage"] = self.failure_stage.value
            payload["reason"] = self.reason or ""
        # ensure_ascii keeps surrogate-escaped paths representable
        return json.dumps(payload, separators=(",", ":")) + "\n"


_TSV_ESCAPES = {"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r"}
_TSV_UNESCAPES = {v[1]: k for k, v in _TSV_ESCAPES.items()}
_TSV_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)


def _escape_tsv(value: str) -> str:
    return "".join(_TSV_ESCAPES.get(ch, ch) for ch in value)


def _unescape_tsv(value: str) -> str:
    """Inverse of ``_escape_tsv``. Raises ValueError on a malformed escape."""
    if _TSV_ESCAPE_RE.sub("", value).count("\\"):
        raise ValueError("dangling backslash in escaped column")

    def replace(match: "re.Match[str]") -> str:
        ch = match.group(1)
        if ch not in _TSV_UNESCAPES:
            raise ValueError(f"unknown escape sequence '\\{ch}'")
        return _TSV_UNESCAPES[ch]

    return _TSV_ESCAPE_RE.sub(replace, value)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_line(line: str, log_format: LogFormat) -> Outcome:
    """Parse one log line. Raises ValueError if it is not a valid record."""
    line = line.rstrip("\r\n")
    if log_format is LogFormat.TSV:
        return _parse_tsv_row(line)
    if log_format is LogFormat.NDJSON:
        return _parse_json_line(line)
    raise ValueError(f"Unknown log format: {log_format}")


def _parse_tsv_row(line: str) -> Outcome:
    cols = line.split("\t")
    if len(cols) < 5:
        raise ValueError(f"expected at least 5 tab-separated columns, found {len(cols)}")

    status, path = cols[0], _unescape_tsv(cols[1])
    size, start, end = (int(c) for c in cols[2:5])

    if status == "success":
        return Outcome.success(path, size, start, end)
    if status == "failure":
        if len(cols) < 7:
            raise ValueError("failure row is missing its stage or reason column")
        try:
            stage = _STAGES_BY_TSV_NAME[cols[5]]
        except KeyError:
            raise ValueError(f"unknown failure stage '{cols[5]}'")
        return Outcome.failure(path, size, start, end, stage, _unescape_tsv(cols[6]))
    raise ValueError(f"unknown status '{status}'")


def _parse_json_line(line: str) -> Outcome:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc}")
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object")

    try:
        status = payload["status"]
        path = payload["path"]
        size = int(payload["size"])
        start = int(payload["start_millis"])
        end = int(payload["end_millis"])
    except KeyError as exc:
        raise ValueError(f"missing field {exc}")
    except (TypeError, ValueError):
        raise ValueError("size and timestamps must be integers")
    if not isinstance(path, str):
        raise ValueError("path must be a string")

    if status == "Success":
        return Outcome.success(path, size, start, end)
    if status == "Failure":
        try:
            stage = FailureStage(payload.get("failure_stage"))
        except ValueError:
            raise ValueError(f"unknown failure stage {payload.get('failure_stage')!r}")
        return Outcome.failure(path, size, start, end, stage, str(payload.get("reason", "")))
    raise ValueError(f"unknown status {status!r}")


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

_STOP = object()


class OutcomeLogger:
    """Single writer for the outcome log.

    Any number of threads may call ``send``; one background thread owns the
    file and appends each record as a flushed line. ``close`` drains what is
    queued, stops the writer and raises ``SerializationError`` if any write
    failed. The log is opened for append, so a resumed run may write to the
    log it resumes from.
    """

    def __init__(self, path: Path, log_format: LogFormat) -> None:
        self.path = path
        self.log_format = log_format
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None
        self._written = 0

    @property
    def failed(self) -> bool:
        return self._error is not None

    @property
    def written(self) -> int:
        return self._written

    def start(self) -> "OutcomeLogger":
        try:
            fh = self.path.open("a", encoding=LOG_ENCODING, errors=LOG_ERRORS, newline="")
        except OSError as exc:
            raise SerializationError(f"Cannot open outcome log '{self.path}': {exc}")

        self._thread = threading.Thread(
            target=self._run, args=(fh,), name="outcome-logger", daemon=True
        )
        self._thread.start()
        logger.debug(f"Writing outcomes to {self.path} ({self.log_format.value})")
        return self

    def send(self, outcome: Outcome) -> None:
        self._queue.put(outcome)

    def close(self) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None
        if self._error is not None:
            raise SerializationError(
                f"Failed to write outcome log '{self.path}': {self._error}"
            )

    def __enter__(self) -> "OutcomeLogger":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return
        # Already unwinding: report a log failure but let the original error through
        try:
            self.close()
        except SerializationError as log_exc:
            logger.error(f"{log_exc} (while handling {exc_type.__name__}: {exc})")

    def _run(self, fh) -> None:
        try:
            while True:
                item = self._queue.get()
                if item is _STOP:
                    break
                if self._error is not None:
                    # Keep draining so producers never block on a dead writer
                    continue
                try:
                    fh.write(item.to_line(self.log_format))
                    fh.flush()
                    self._written += 1
                except (OSError, ValueError, SerializationError) as exc:
                    self._error = exc
                    logger.error(f"Outcome log write failed: {exc}")
        finally:
            try:
                fh.close()
            except OSError as exc:
                if self._error is None:
                    self._error = exc
