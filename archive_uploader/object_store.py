"""
Put-only object store backed by an Azure Blob Storage container.

Callers pick the keys; the store only writes. Transient network errors are
retried by the Azure SDK's own retry policy.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings

logger = logging.getLogger("archive_uploader.object_store")


class BlobStore:
    def __init__(self, container_client: ContainerClient) -> None:
        self.container_client = container_client

    @classmethod
    def from_connection_string(cls, conn_str: str, container_name: str) -> "BlobStore":
        svc = BlobServiceClient.from_connection_string(
            conn_str,
            connection_timeout=30,
            read_timeout=120,
        )
        return cls(svc.get_container_client(container_name))

    @property
    def container_name(self) -> str:
        return self.container_client.container_name

    def ensure_container(self) -> None:
        try:
            self.container_client.create_container()
            logger.info(f"Created container '{self.container_name}'.")
        except ResourceExistsError:
            logger.debug(f"Container '{self.container_name}' already exists.")

    def put_json(self, key: str, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.container_client.upload_blob(
            name=key,
            data=body,
            length=len(body),
            overwrite=True,
            content_settings=ContentSettings(content_type="application/json"),
        )

    def put_file(self, key: str, path: Path) -> None:
        with path.open("rb") as fh:
            self.container_client.upload_blob(
                name=key,
                data=fh,
                overwrite=True,
                content_settings=ContentSettings(content_type="application/octet-stream"),
            )
