"""
Runtime configuration and logging setup.

Settings come from the environment, after loading a ``.env`` file from the
working directory if one exists. Only ``ingest`` needs Azure credentials, so
the connection string is checked lazily by ``require_conn_str``.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .errors import InputError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
LOGGER_NAME = "archive_uploader"


def build_logger(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Configure the package logger.

    Console output goes to stderr so stdout carries only command results.
    When ``log_dir`` is given a DEBUG-level file log is kept there as well.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_dir / "archive_uploader.log", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(fh)

    return logger


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

_DEFAULTS = {
    "CONCURRENCY": 128,
    "CATALOG_TIMEOUT": 30,
    "PROGRESS_EVERY": 100,
}


def _int_setting(name: str, minimum: int = 1) -> int:
    raw = os.getenv(name, str(_DEFAULTS[name]))
    try:
        value = int(raw)
    except ValueError:
        raise InputError(f"{name} must be an integer. Got '{raw}'.")
    if value < minimum:
        raise InputError(f"{name} must be at least {minimum}. Got {value}.")
    return value


class Config:
    def __init__(self) -> None:
        load_dotenv(find_dotenv(usecwd=True))

        self.conn_str: Optional[str] = os.getenv("AZURE_CONN_STR")
        self.container_name: str = os.getenv("CONTAINER_NAME", "")
        self.concurrency: int = _int_setting("CONCURRENCY")
        self.catalog_timeout: int = _int_setting("CATALOG_TIMEOUT")
        self.progress_every: int = _int_setting("PROGRESS_EVERY")

        log_dir = os.getenv("LOG_DIR")
        self.log_dir: Optional[Path] = Path(log_dir).expanduser() if log_dir else None

        home = os.getenv("ARCHIVE_UPLOADER_HOME")
        self.home: Optional[Path] = Path(home).expanduser() if home else None

    def require_conn_str(self) -> str:
        """Return the Azure connection string, validated, or raise InputError."""
        if not self.conn_str:
            raise InputError(
                "AZURE_CONN_STR not set. Add it to the environment or to a .env file."
            )
        validate_connection_string(self.conn_str)
        return self.conn_str.strip()


def validate_connection_string(conn_str: str) -> None:
    """Check the shape of an Azure storage connection string before connecting."""
    cs = conn_str.strip()

    parts = {}
    for segment in cs.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise InputError(
                f"Malformed AZURE_CONN_STR: segment '{segment}' has no '=' separator."
            )
        key, _, value = segment.partition("=")
        parts[key.strip()] = value.strip()

    if parts.get("UseDevelopmentStorage", "").lower() == "true":
        return

    for required in ("AccountName", "AccountKey"):
        if not parts.get(required):
            raise InputError(f"AZURE_CONN_STR is missing the '{required}' field.")

    protocol = parts.get("DefaultEndpointsProtocol", "https").lower()
    if protocol not in ("http", "https"):
        raise InputError(
            f"AZURE_CONN_STR has an unknown DefaultEndpointsProtocol '{protocol}'."
        )
