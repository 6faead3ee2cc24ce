"""Tests for the ingestion pipeline: walking, skipping, uploading, logging."""

import os
import sys

import pytest

from archive_uploader.models import Language
from archive_uploader.outcome_log import FailureStage, LogFormat, Outcome, OutcomeLogger, parse_line
from archive_uploader.pipeline import (
    IngestionPipeline,
    count_source_files,
    iter_source_files,
    object_keys,
)
from archive_uploader.progress import load_progress_index

from .conftest import FakeStore

pytestmark = pytest.mark.unit


def _run(store, root, ingestion_uri, log_path, progress_index=frozenset(), concurrency=4):
    log_format = LogFormat.from_path(log_path)
    with OutcomeLogger(log_path, log_format) as outcome_log:
        pipeline = IngestionPipeline(
            store=store,
            outcome_log=outcome_log,
            ingestion_uri=ingestion_uri,
            languages=[Language.ENGLISH],
            progress_index=progress_index,
            concurrency=concurrency,
        )
        stats = pipeline.run(root)
    outcomes = [parse_line(line, log_format) for line in log_path.read_text().splitlines()]
    return stats, outcomes


class TestWalk:
    def test_yields_regular_files_in_name_order(self, source_tree):
        names = [p.relative_to(source_tree).as_posix() for p in iter_source_files(source_tree)]
        assert names == ["a.txt", "b.txt", "sub/c.txt"]

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
    def test_skips_symlinks(self, source_tree):
        os.symlink(source_tree / "a.txt", source_tree / "link.txt")
        os.symlink(source_tree / "sub", source_tree / "linkdir")
        assert count_source_files(source_tree) == 3

    def test_single_file_root(self, source_tree):
        assert list(iter_source_files(source_tree / "a.txt")) == [source_tree / "a.txt"]

    def test_unreadable_directory_reported_to_callback(self, tmp_path):
        errors = []
        assert list(iter_source_files(tmp_path / "missing", on_error=errors.append)) == []
        assert len(errors) == 1

    def test_count_pass_swallows_errors(self, tmp_path):
        assert count_source_files(tmp_path / "missing") == 0


class TestObjectKeys:
    def test_metadata_and_data_share_an_id(self):
        metadata_key, data_key = object_keys(1700000000000)
        assert metadata_key.startswith("metadata/1700000000000_")
        assert metadata_key.endswith(".metadata.json")
        assert data_key.startswith("data/1700000000000_")
        assert data_key.endswith(".data")
        assert metadata_key[len("metadata/"):-len(".metadata.json")] == data_key[len("data/"):-len(".data")]

    def test_keys_are_unique(self):
        assert object_keys(1) != object_keys(1)


class TestRun:
    def test_two_files_all_succeed(self, tmp_path, ingestion_uri):
        root = tmp_path / "src"
        root.mkdir()
        (root / "a.txt").write_bytes(b"x" * 10)
        (root / "b.txt").write_bytes(b"y" * 20)
        store = FakeStore()

        stats, outcomes = _run(store, root, ingestion_uri, tmp_path / "run.tsv")

        assert stats.succeeded == 2
        assert stats.failed == 0
        assert stats.processed == 2
        assert sorted((o.path, o.size) for o in outcomes) == [
            (str(root / "a.txt"), 10),
            (str(root / "b.txt"), 20),
        ]
        assert all(o.is_success for o in outcomes)
        assert sorted(store.data.values()) == [b"x" * 10, b"y" * 20]

    def test_one_outcome_per_file(self, tmp_path, ingestion_uri):
        root = tmp_path / "src"
        for i in range(40):
            d = root / f"d{i % 4}"
            d.mkdir(parents=True, exist_ok=True)
            (d / f"f{i}.bin").write_bytes(b"z" * i)

        stats, outcomes = _run(FakeStore(), root, ingestion_uri, tmp_path / "run.ndjson", concurrency=8)

        paths = [o.path for o in outcomes]
        assert len(paths) == 40
        assert set(paths) == {str(p) for p in iter_source_files(root)}
        assert stats.total == 40

    def test_metadata_failure_skips_data_upload(self, tmp_path, source_tree, ingestion_uri):
        store = FakeStore(fail_metadata={"b.txt"})

        stats, outcomes = _run(store, source_tree, ingestion_uri, tmp_path / "run.ndjson")

        by_name = {os.path.basename(o.path): o for o in outcomes}
        assert by_name["b.txt"].failure_stage is FailureStage.UPLOAD_METADATA
        assert "refused" in by_name["b.txt"].reason
        assert by_name["a.txt"].is_success
        assert by_name["c.txt"].is_success
        assert store.data_names == ["a.txt", "c.txt"]
        assert len(store.data) == 2
        assert (stats.succeeded, stats.failed) == (2, 1)

    def test_data_failure_leaves_metadata_behind(self, tmp_path, source_tree, ingestion_uri):
        store = FakeStore(fail_data={"a.txt"})

        stats, outcomes = _run(store, source_tree, ingestion_uri, tmp_path / "run.tsv")

        failed = [o for o in outcomes if not o.is_success]
        assert len(failed) == 1
        assert failed[0].failure_stage is FailureStage.UPLOAD_DATA
        assert failed[0].size == 10
        assert len(store.metadata) == 3
        assert len(store.data) == 2

    def test_empty_tree_yields_no_outcomes(self, tmp_path, ingestion_uri):
        root = tmp_path / "empty"
        root.mkdir()

        stats, outcomes = _run(FakeStore(), root, ingestion_uri, tmp_path / "run.tsv")

        assert outcomes == []
        assert stats.processed == 0
        assert stats.total == 0

    def test_concurrency_is_bounded(self, tmp_path, ingestion_uri):
        root = tmp_path / "src"
        root.mkdir()
        for i in range(20):
            (root / f"f{i}").write_bytes(b"1")
        store = FakeStore(delay=0.02)

        _run(store, root, ingestion_uri, tmp_path / "run.tsv", concurrency=3)

        assert 1 <= store.max_in_flight <= 3

    def test_metadata_envelope(self, tmp_path, source_tree, ingestion_uri):
        store = FakeStore()

        _run(store, source_tree, ingestion_uri, tmp_path / "run.tsv")

        envelope = next(
            p for p in store.metadata.values() if p["file"]["uri"].endswith("c.txt")
        )
        assert envelope["ingestion"] == "leaks/disk-1"
        assert envelope["languages"] == ["english"]
        assert envelope["file"]["uri"] == "leaks/disk-1/sub/c.txt"
        assert envelope["file"]["parentUri"] == "leaks/disk-1/sub"
        assert envelope["file"]["size"] == 5
        assert envelope["file"]["isRegularFile"] is True
        assert envelope["file"]["lastModifiedTime"]

    def test_top_level_file_parent_is_ingestion(self, tmp_path, source_tree, ingestion_uri):
        store = FakeStore()
        _run(store, source_tree, ingestion_uri, tmp_path / "run.tsv")
        envelope = next(p for p in store.metadata.values() if p["file"]["uri"].endswith("a.txt"))
        assert envelope["file"]["parentUri"] == "leaks/disk-1"

    def test_vanished_file_fails_at_metadata_stage(self, tmp_path, source_tree, ingestion_uri):
        pipeline = IngestionPipeline(
            store=FakeStore(),
            outcome_log=OutcomeLogger(tmp_path / "unused.tsv", LogFormat.TSV),
            ingestion_uri=ingestion_uri,
            languages=[Language.ENGLISH],
        )
        outcome = pipeline.upload_file(source_tree, source_tree / "gone.txt")

        assert outcome.failure_stage is FailureStage.UPLOAD_METADATA
        assert outcome.size == 0
        assert "FileNotFoundError" in outcome.reason

    def test_single_file_source(self, tmp_path, source_tree, ingestion_uri):
        store = FakeStore()
        stats, outcomes = _run(store, source_tree / "b.txt", ingestion_uri, tmp_path / "run.tsv")
        assert stats.succeeded == 1
        assert [p["file"]["uri"] for p in store.metadata.values()] == ["leaks/disk-1/b.txt"]


class TestResume:
    def test_rerun_skips_successes_and_retries_failures(self, tmp_path, source_tree, ingestion_uri):
        prior = tmp_path / "first.ndjson"
        _run(FakeStore(fail_metadata={"b.txt"}, fail_data={"c.txt"}), source_tree, ingestion_uri, prior)

        index = load_progress_index(prior)
        assert index == frozenset({str(source_tree / "a.txt")})

        store = FakeStore()
        stats, outcomes = _run(store, source_tree, ingestion_uri, tmp_path / "second.ndjson", index)

        assert stats.skipped == 1
        assert sorted(os.path.basename(o.path) for o in outcomes) == ["b.txt", "c.txt"]
        assert all(o.is_success for o in outcomes)
        assert store.data_names == ["b.txt", "c.txt"]

    def test_resume_appending_to_same_log(self, tmp_path, source_tree, ingestion_uri):
        log = tmp_path / "run.tsv"
        _run(FakeStore(fail_data={"a.txt"}), source_tree, ingestion_uri, log)

        _run(FakeStore(), source_tree, ingestion_uri, log, load_progress_index(log))

        assert load_progress_index(log) == frozenset(str(p) for p in iter_source_files(source_tree))

    @pytest.mark.skipif(sys.platform == "win32", reason="tab and backslash are not valid in Windows file names")
    def test_tsv_resume_tells_tab_from_backslash_t(self, tmp_path, ingestion_uri):
        """A failed file whose name escapes like a succeeded one is still retried."""
        root = tmp_path / "tree"
        root.mkdir()
        (root / "x\ty").write_bytes(b"tab")
        (root / "x\\ty").write_bytes(b"backslash-t")
        log = tmp_path / "run.tsv"

        _run(FakeStore(fail_data={"x\\ty"}), root, ingestion_uri, log)
        index = load_progress_index(log)
        assert index == frozenset({str(root / "x\ty")})

        store = FakeStore()
        stats, _ = _run(store, root, ingestion_uri, tmp_path / "second.tsv", index)

        assert stats.skipped == 1
        assert list(store.data.values()) == [b"backslash-t"]

    def test_all_done_uploads_nothing(self, tmp_path, source_tree, ingestion_uri):
        index = frozenset(str(p) for p in iter_source_files(source_tree))
        store = FakeStore()

        stats, outcomes = _run(store, source_tree, ingestion_uri, tmp_path / "run.tsv", index)

        assert outcomes == []
        assert stats.skipped == 3
        assert store.metadata == {}


def test_outcomes_are_frozen():
    outcome = Outcome.success("/a", 1, 1, 2)
    with pytest.raises(Exception):
        outcome.size = 2
