"""
Progress index: which files a previous run already uploaded.

A prior outcome log is read once, up front. Only files whose outcome was a
success are indexed; failed files are left out so the new run retries them.
"""

import logging
from pathlib import Path
from typing import FrozenSet, Optional

from .errors import InputError
from .outcome_log import LOG_ENCODING, LOG_ERRORS, LogFormat, parse_line

logger = logging.getLogger("archive_uploader.progress")

ProgressIndex = FrozenSet[str]

EMPTY_INDEX: ProgressIndex = frozenset()


def load_progress_index(path: Optional[Path], log_format: Optional[LogFormat] = None) -> ProgressIndex:
    """Build the set of already-succeeded paths from the log at ``path``.

    ``log_format`` defaults to the one implied by the file extension. It is
    decided once for the whole file. Raises InputError if the log cannot be
    read or any line in it is not a valid record.
    """
    if path is None:
        return EMPTY_INDEX

    if log_format is None:
        try:
            log_format = LogFormat.from_path(path)
        except ValueError as exc:
            raise InputError(str(exc))

    succeeded = set()
    failed = 0
    try:
        with path.open("r", encoding=LOG_ENCODING, errors=LOG_ERRORS, newline="") as fh:
            for line_no, line in enumerate(fh, 1):
                if not line.strip():
                    continue
                try:
                    outcome = parse_line(line, log_format)
                except ValueError as exc:
                    raise InputError(f"Invalid record in log file {path} at line {line_no}: {exc}")
                if outcome.is_success:
                    succeeded.add(outcome.path)
                else:
                    failed += 1
    except OSError as exc:
        raise InputError(f"Cannot read progress log {path}: {exc}")

    logger.info(
        f"Progress log {path}: {len(succeeded):,} file(s) already uploaded, "
        f"{failed:,} failure record(s) will be retried"
    )
    return frozenset(succeeded)
