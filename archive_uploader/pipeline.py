"""
Ingestion pipeline: walk a source tree and upload every file into the archive.

Each file becomes two objects in the store: a JSON metadata envelope that
tells the catalog where the file belongs, then the raw file content. Up to
``concurrency`` files are in flight at once. Every attempted file produces
exactly one outcome record, sent to the outcome log; a failed file never
stops the others. Files recorded as succeeded by a previous run are skipped.
"""

import logging
import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from pathlib import Path, PurePath
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, Tuple

from .models import FileMetadata, FileRecord, Language
from .outcome_log import FailureStage, Outcome, OutcomeLogger
from .progress import EMPTY_INDEX, ProgressIndex
from .uri import Uri

logger = logging.getLogger("archive_uploader.pipeline")

DEFAULT_CONCURRENCY = 128

DATA_PREFIX = "data"
METADATA_PREFIX = "metadata"
DATA_SUFFIX = "data"
METADATA_SUFFIX = "metadata.json"


# ---------------------------------------------------------------------------
# Directory walking
# ---------------------------------------------------------------------------

def iter_source_files(
    root: Path, on_error: Optional[Callable[[OSError], None]] = None
) -> Iterator[Path]:
    """Yield regular, non-symlink files under ``root`` in name order.

    A ``root`` that is itself a regular file yields just that file. Errors
    reading a directory go to ``on_error`` when given and are ignored
    otherwise; the walk carries on either way.
    """
    if root.is_file() and not root.is_symlink():
        yield root
        return

    stack = [root]
    while stack:
        directory = stack.pop()
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            if on_error is not None:
                on_error(exc)
            continue

        subdirs = []
        for entry in entries:
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False):
                    yield Path(entry.path)
            except OSError as exc:
                if on_error is not None:
                    on_error(exc)
        stack.extend(reversed(subdirs))


def count_source_files(root: Path) -> int:
    # Only an estimate for progress reporting, so traversal errors are ignored
    return sum(1 for _ in iter_source_files(root))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_millis() -> int:
    return int(time.time() * 1000)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _fmt_seconds(s: float) -> str:
    if s <= 0:
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"


def object_keys(start_millis: int) -> Tuple[str, str]:
    """Return (metadata key, data key) for one file.

    Both share a time + random identifier; keys are unique, not content based.
    """
    object_id = f"{start_millis}_{uuid.uuid4()}"
    return (
        f"{METADATA_PREFIX}/{object_id}.{METADATA_SUFFIX}",
        f"{DATA_PREFIX}/{object_id}.{DATA_SUFFIX}",
    )


@dataclass
class PipelineStats:
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    walk_errors: int = 0
    elapsed_seconds: float = 0.0

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data["elapsed_seconds"] = round(self.elapsed_seconds, 3)
        return data


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class IngestionPipeline:
    """Uploads one source tree into one ingestion.

    ``store`` needs ``put_json(key, payload)`` and ``put_file(key, path)``;
    ``BlobStore`` is the production implementation.
    """

    def __init__(
        self,
        store,
        outcome_log: OutcomeLogger,
        ingestion_uri: Uri,
        languages: Sequence[Language],
        progress_index: ProgressIndex = EMPTY_INDEX,
        concurrency: int = DEFAULT_CONCURRENCY,
        progress_every: int = 100,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.outcome_log = outcome_log
        self.ingestion_uri = ingestion_uri
        self.languages = tuple(languages)
        self.progress_index = progress_index
        self.concurrency = concurrency
        self.progress_every = max(progress_every, 1)

        self._permits = threading.BoundedSemaphore(concurrency)
        self._lock = threading.Lock()
        self._stats = PipelineStats()
        self._t0 = 0.0

    # ------------------------------------------------------------------
    # Per-file work
    # ------------------------------------------------------------------

    def _relative_path(self, root: Path, path: Path) -> PurePath:
        if path == root:
            return PurePath(path.name)
        return path.relative_to(root)

    def upload_file(self, root: Path, path: Path) -> Outcome:
        """Upload metadata then data for one file. Never raises."""
        start = _now_millis()
        size = 0

        # Stage 1: anything that goes wrong before the metadata is stored,
        # including the file vanishing since the walk, counts as metadata.
        try:
            record = FileRecord.from_path(
                self.ingestion_uri, path, self._relative_path(root, path)
            )
            size = record.size
            metadata = FileMetadata.build(self.ingestion_uri, record, self.languages)
            metadata_key, data_key = object_keys(start)
            self.store.put_json(metadata_key, metadata.to_json())
        except Exception as exc:
            return Outcome.failure(
                str(path), size, start, _now_millis(), FailureStage.UPLOAD_METADATA, _describe(exc)
            )

        # Stage 2: the metadata object stays behind if this fails
        try:
            self.store.put_file(data_key, path)
        except Exception as exc:
            return Outcome.failure(
                str(path), size, start, _now_millis(), FailureStage.UPLOAD_DATA, _describe(exc)
            )

        return Outcome.success(str(path), size, start, _now_millis())

    def _run_one(self, root: Path, path: Path) -> Outcome:
        outcome = self.upload_file(root, path)
        self.outcome_log.send(outcome)
        return outcome

    def _on_done(self, future: "Future[Outcome]") -> None:
        self._permits.release()
        exc = future.exception()
        if exc is not None:
            # upload_file catches everything; reaching this is a bug
            logger.error(f"Upload task crashed: {_describe(exc)}")
            return

        outcome = future.result()
        if not outcome.is_success:
            logger.warning(
                f"Failed ({outcome.failure_stage.value}): {outcome.path}: {outcome.reason}"
            )
        else:
            logger.debug(f"Uploaded {outcome.path} ({outcome.size:,} bytes)")

        with self._lock:
            stats = self._stats
            stats.processed += 1
            if outcome.is_success:
                stats.succeeded += 1
            else:
                stats.failed += 1
            if stats.processed % self.progress_every == 0:
                self._log_progress(stats)

    def _log_progress(self, stats: PipelineStats) -> None:
        done = stats.processed + stats.skipped
        elapsed = max(time.monotonic() - self._t0, 0.001)
        rate = stats.processed / elapsed
        remaining = max(stats.total - done, 0)
        pct = done / stats.total * 100 if stats.total else 100.0
        eta_s = remaining / rate if rate else 0
        logger.info(
            f"[{pct:5.1f}%] {done:,}/{stats.total:,} files  "
            f"ok={stats.succeeded:,} failed={stats.failed:,}  "
            f"rate={rate:.1f} files/s  eta={_fmt_seconds(eta_s)}"
        )

    def _on_walk_error(self, exc: OSError) -> None:
        logger.error(f"Cannot read {getattr(exc, 'filename', None) or 'path'}: {exc}")
        with self._lock:
            self._stats.walk_errors += 1

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(self, source_root: Path) -> PipelineStats:
        """Upload everything under ``source_root`` and return the run's counts.

        The caller owns ``outcome_log`` and must close it afterwards.
        """
        self._stats = PipelineStats()
        self._t0 = time.monotonic()

        logger.info("Counting files ...")
        self._stats.total = count_source_files(source_root)
        logger.info(
            f"Processing {self._stats.total:,} file(s) with up to {self.concurrency} in flight"
        )

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="upload"
        ) as pool:
            for path in iter_source_files(source_root, on_error=self._on_walk_error):
                if str(path) in self.progress_index:
                    with self._lock:
                        self._stats.skipped += 1
                    continue

                if self.outcome_log.failed:
                    logger.error("Outcome log can no longer be written. Stopping the walk.")
                    break

                # Blocks while `concurrency` files are in flight
                self._permits.acquire()
                try:
                    future = pool.submit(self._run_one, source_root, path)
                except RuntimeError:
                    self._permits.release()
                    raise
                future.add_done_callback(self._on_done)

        stats = self._stats
        stats.elapsed_seconds = time.monotonic() - self._t0

        logger.info("=" * 60)
        logger.info(
            f"  Summary: {stats.succeeded:,}/{stats.processed:,} processed file(s) uploaded, "
            f"{stats.skipped:,} skipped, elapsed {_fmt_seconds(stats.elapsed_seconds)}"
        )
        if stats.failed:
            logger.warning(f"  {stats.failed:,} file(s) failed. Re-run with --progress-from to retry them.")
        if stats.walk_errors:
            logger.warning(f"  {stats.walk_errors:,} path(s) could not be read during the walk.")
        logger.info("=" * 60)
        return stats
