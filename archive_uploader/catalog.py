"""
HTTP client for the archive catalog.

The catalog owns collections, the ingestions inside them, and the blobs
registered against those ingestions. Every request carries the bearer token
from the credential store. The server may hand back a replacement token in
the ``X-Offer-Authorization`` header on any response; the client then swaps
to it for every later request and saves it, so long uploads survive token
rotation.
"""

import logging
import threading
from pathlib import Path
from typing import Any, List, Optional, Sequence
from urllib.parse import quote

import httpx

from . import auth_store
from .errors import AuthError, InputError, RequestError, UnexpectedResponse
from .models import Blob, Collection, Language, ListBlobsFilter
from .uri import Uri

logger = logging.getLogger("archive_uploader.catalog")

ROTATION_HEADER = "X-Offer-Authorization"

# The catalog returns at most this many blobs per listing
BLOB_PAGE_SIZE = 500


def _segment(value: str) -> str:
    return quote(value, safe="")


class CatalogClient:
    def __init__(
        self,
        server_uri: str,
        token: Optional[str] = None,
        home: Optional[Path] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.server_uri = server_uri.rstrip("/")
        self._store_key = server_uri
        self._home = home
        # A client built from the store re-reads it before every request, so a
        # token rotated by another process is picked up mid-run.
        self._from_store = token is None
        self._token = token if token is not None else auth_store.get_token(server_uri, home)
        self._token_lock = threading.Lock()
        self._client = httpx.Client(
            base_url=self.server_uri,
            timeout=timeout,
            transport=transport,
        )

    @property
    def token(self) -> str:
        return self._token

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "CatalogClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = self._current_token()
        try:
            response = self._client.request(
                method, path, headers={"Authorization": token}, **kwargs
            )
        except httpx.HTTPError as exc:
            raise RequestError(f"{method} {self.server_uri}{path} failed: {exc}")

        offered = response.headers.get(ROTATION_HEADER)
        if offered:
            self._rotate_token(offered)
        else:
            logger.debug(f"No {ROTATION_HEADER} header in response to {method} {path}")
        return response

    def _current_token(self) -> str:
        with self._token_lock:
            if self._from_store:
                try:
                    self._token = auth_store.get_token(self._store_key, self._home)
                except (InputError, OSError) as exc:
                    logger.debug(f"Keeping the in-memory token, auth store unreadable: {exc}")
            return self._token

    def _rotate_token(self, new_token: str) -> None:
        with self._token_lock:
            if new_token == self._token:
                return
            logger.info(
                f"Catalog offered a new token in {ROTATION_HEADER}. Refreshing client and auth store."
            )
            self._token = new_token
            try:
                auth_store.set_token(self._store_key, new_token, self._home)
            except OSError as exc:
                logger.warning(
                    f"Could not save the rotated token ({exc}); it is used for this run only."
                )
                self._from_store = False

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise UnexpectedResponse(response.status_code, "body is not valid JSON")

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def check_hash_exists(self, file_hash: str) -> bool:
        res = self._request(
            "GET", f"/api/resources/{_segment(file_hash)}", params={"basic": "true"}
        )
        if res.status_code == 401:
            raise AuthError()
        return res.status_code == 200

    # ------------------------------------------------------------------
    # Collections and ingestions
    # ------------------------------------------------------------------

    def get_or_insert_collection(self, ingestion_uri: Uri) -> Collection:
        """Fetch the collection named by ``ingestion_uri``, creating it if absent."""
        name = ingestion_uri.collection()

        res = self._request("GET", f"/api/collections/{_segment(name)}")
        if res.status_code == 401:
            raise AuthError()

        if res.status_code == 404:
            logger.info(f"Collection '{name}' not found, creating it")
            res = self._request("POST", "/api/collections", json={"name": name})
            if res.status_code == 401:
                raise AuthError()
            if res.status_code != 201:
                raise UnexpectedResponse(res.status_code, f"creating collection '{name}'")
            return Collection.from_json(self._json(res))

        if not res.is_success:
            raise UnexpectedResponse(res.status_code, f"fetching collection '{name}'")

        logger.debug(f"Collection '{name}' already exists")
        return Collection.from_json(self._json(res))

    def get_or_insert_ingestion(
        self,
        ingestion_uri: Uri,
        collection: Collection,
        path: Path,
        languages: Sequence[Language],
    ) -> None:
        if collection.has_ingestion(ingestion_uri):
            logger.debug(f"Ingestion '{ingestion_uri}' already exists")
            return

        name = ingestion_uri.collection()
        form = {
            "path": str(path),
            "name": ingestion_uri.ingestion(),
            "languages": [lang.value for lang in languages],
            "fixed": False,
            "default": False,
        }
        logger.info(f"Creating ingestion '{ingestion_uri}'")
        res = self._request("POST", f"/api/collections/{_segment(name)}", json=form)
        if res.status_code == 401:
            raise AuthError()
        if res.status_code != 200:
            raise UnexpectedResponse(res.status_code, f"creating ingestion '{ingestion_uri}'")

    def delete_collection(self, collection: str) -> None:
        res = self._request("DELETE", f"/api/collections/{_segment(collection)}")
        if res.status_code == 401:
            raise AuthError()
        if res.status_code != 204:
            raise UnexpectedResponse(res.status_code, f"deleting collection '{collection}'")

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def get_blobs_in_collection(self, collection: str, blob_filter: ListBlobsFilter) -> List[Blob]:
        """List one page (at most BLOB_PAGE_SIZE) of blobs in ``collection``."""
        params = {
            "inMultiple": "true" if blob_filter is ListBlobsFilter.IN_MULTIPLE else "false",
            "collection": collection,
        }
        res = self._request("GET", "/api/blobs", params=params)
        if res.status_code == 401:
            raise AuthError()
        if res.status_code != 200:
            raise UnexpectedResponse(res.status_code, f"listing blobs in '{collection}'")

        payload = self._json(res)
        try:
            blobs = payload["blobs"]
        except (KeyError, TypeError):
            raise UnexpectedResponse(res.status_code, "blob listing has no 'blobs' field")
        return [Blob.from_json(b) for b in blobs]

    def delete_blob(self, blob_uri: str) -> None:
        # checkChildren=false also removes archives that contain further files
        res = self._request(
            "DELETE", f"/api/blobs/{_segment(blob_uri)}", params={"checkChildren": "false"}
        )
        if res.status_code == 401:
            raise AuthError()
        if res.status_code != 204:
            raise UnexpectedResponse(res.status_code, f"deleting blob '{blob_uri}'")

    def delete_collection_with_blobs(self, collection: str) -> int:
        """Delete every blob in ``collection`` page by page, then the collection.

        Returns the number of blobs deleted.
        """
        deleted = 0
        while True:
            blobs = self.get_blobs_in_collection(collection, ListBlobsFilter.ALL)
            for blob in blobs:
                self.delete_blob(blob.uri)
                deleted += 1
            if blobs:
                logger.info(f"Deleted {deleted:,} blob(s) from '{collection}' so far")
            if len(blobs) < BLOB_PAGE_SIZE:
                break

        self.delete_collection(collection)
        logger.info(f"Deleted collection '{collection}' ({deleted:,} blob(s))")
        return deleted
