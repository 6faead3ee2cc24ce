"""Shared fixtures for archive_uploader tests."""

import logging
import threading
import time
from pathlib import Path

import pytest

from archive_uploader.uri import Uri


class FakeStore:
    """In-memory stand-in for BlobStore.

    Files are matched by name: names in ``fail_metadata`` / ``fail_data``
    make the corresponding stage raise.
    """

    def __init__(self, fail_metadata=(), fail_data=(), delay=0.0):
        self.fail_metadata = set(fail_metadata)
        self.fail_data = set(fail_data)
        self.delay = delay
        self.metadata = {}
        self.data = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def ensure_container(self):
        pass

    def put_json(self, key, payload):
        name = payload["file"]["uri"].rsplit("/", 1)[-1]
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if name in self.fail_metadata:
                raise OSError(f"metadata upload refused for {name}")
            with self._lock:
                self.metadata[key] = payload
        finally:
            with self._lock:
                self.in_flight -= 1

    def put_file(self, key, path):
        if path.name in self.fail_data:
            raise OSError(f"data upload refused for {path.name}")
        with self._lock:
            self.data[key] = Path(path).read_bytes()

    @property
    def data_names(self):
        # Data keys are opaque, so recover names from the matching metadata
        names = []
        for key, payload in self.metadata.items():
            data_key = key.replace("metadata/", "data/").replace(".metadata.json", ".data")
            if data_key in self.data:
                names.append(payload["file"]["uri"].rsplit("/", 1)[-1])
        return sorted(names)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """cli.run installs handlers bound to captured streams; drop them after each test."""
    yield
    package_logger = logging.getLogger("archive_uploader")
    package_logger.handlers.clear()
    package_logger.propagate = True


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def ingestion_uri():
    return Uri.parse("leaks/disk-1")


@pytest.fixture
def source_tree(tmp_path):
    """A small tree: a.txt (10 bytes), b.txt (20 bytes), sub/c.txt (5 bytes)."""
    root = tmp_path / "source"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"a" * 10)
    (root / "b.txt").write_bytes(b"b" * 20)
    (root / "sub" / "c.txt").write_bytes(b"c" * 5)
    return root
