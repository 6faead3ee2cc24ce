"""Tests for the Azure-backed BlobStore, with the container client mocked."""

import json
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ResourceExistsError

from archive_uploader.object_store import BlobStore

pytestmark = pytest.mark.unit


@pytest.fixture
def container():
    client = MagicMock()
    client.container_name = "ingest-data"
    return client


def test_put_json_uploads_utf8_json(container):
    BlobStore(container).put_json("metadata/1_x.metadata.json", {"ingestion": "a/b"})

    kwargs = container.upload_blob.call_args.kwargs
    assert kwargs["name"] == "metadata/1_x.metadata.json"
    assert json.loads(kwargs["data"]) == {"ingestion": "a/b"}
    assert kwargs["length"] == len(kwargs["data"])
    assert kwargs["overwrite"] is True


def test_put_file_streams_file(container, tmp_path):
    path = tmp_path / "a.txt"
    path.write_bytes(b"hello")
    seen = {}

    def capture(**kwargs):
        seen["name"] = kwargs["name"]
        seen["body"] = kwargs["data"].read()

    container.upload_blob.side_effect = capture
    BlobStore(container).put_file("data/1_x.data", path)

    assert seen == {"name": "data/1_x.data", "body": b"hello"}


def test_put_file_missing_file_raises(container, tmp_path):
    with pytest.raises(FileNotFoundError):
        BlobStore(container).put_file("data/k", tmp_path / "gone")
    container.upload_blob.assert_not_called()


def test_ensure_container_tolerates_existing(container):
    container.create_container.side_effect = ResourceExistsError("exists")
    BlobStore(container).ensure_container()
    container.create_container.assert_called_once()
