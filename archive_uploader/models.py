"""
Domain models shared by the catalog client, the pipeline and the CLI.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePath
from typing import Any, Dict, List, Optional, Sequence

from .errors import UnexpectedResponse
from .uri import Uri


class Language(str, Enum):
    ARABIC = "arabic"
    ENGLISH = "english"
    FRENCH = "french"
    GERMAN = "german"
    RUSSIAN = "russian"
    PORTUGUESE = "portuguese"
    PERSIAN = "persian"


class OutputFormat(str, Enum):
    TSV = "tsv"
    JSON = "json"


class ListBlobsFilter(str, Enum):
    ALL = "all"
    IN_MULTIPLE = "in-multiple"


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def _timestamp(epoch_seconds: Optional[float]) -> Optional[str]:
    if epoch_seconds is None:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class FileRecord:
    """Snapshot of one source file, taken just before it is uploaded."""

    uri: Uri
    parent_uri: Uri
    size: int
    last_access_time: Optional[str] = None
    last_modified_time: Optional[str] = None
    creation_time: Optional[str] = None
    is_regular_file: bool = True

    @classmethod
    def from_path(cls, ingestion_uri: Uri, path: Path, relative_path: PurePath) -> "FileRecord":
        """Stat ``path`` and place it under ``ingestion_uri``.

        Raises OSError if the file can no longer be read.
        """
        st = os.stat(path)
        parent = relative_path.parent
        if parent.as_posix() in ("", "."):
            parent_uri = ingestion_uri
        else:
            parent_uri = ingestion_uri.extend(parent)

        return cls(
            uri=ingestion_uri.extend(relative_path),
            parent_uri=parent_uri,
            size=st.st_size,
            last_access_time=_timestamp(st.st_atime),
            last_modified_time=_timestamp(st.st_mtime),
            # Linux has no portable birth time
            creation_time=_timestamp(getattr(st, "st_birthtime", None)),
            is_regular_file=True,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "uri": self.uri.as_str(),
            "parentUri": self.parent_uri.as_str(),
            "size": self.size,
            "lastAccessTime": self.last_access_time,
            "lastModifiedTime": self.last_modified_time,
            "creationTime": self.creation_time,
            "isRegularFile": self.is_regular_file,
        }


@dataclass(frozen=True)
class FileMetadata:
    """Envelope uploaded next to each file so the catalog can place it."""

    file: FileRecord
    ingestion: str  # the full ingestion URI
    languages: Sequence[Language]

    @classmethod
    def build(cls, ingestion_uri: Uri, file: FileRecord, languages: Sequence[Language]) -> "FileMetadata":
        return cls(file=file, ingestion=ingestion_uri.as_str(), languages=tuple(languages))

    def to_json(self) -> Dict[str, Any]:
        return {
            "file": self.file.to_json(),
            "ingestion": self.ingestion,
            "languages": [lang.value for lang in self.languages],
        }


@dataclass(frozen=True)
class HashFileOutput:
    hash: str
    path: str


# ---------------------------------------------------------------------------
# Catalog entities
# ---------------------------------------------------------------------------

def _require(payload: Dict[str, Any], key: str, entity: str) -> Any:
    try:
        return payload[key]
    except (KeyError, TypeError):
        raise UnexpectedResponse(200, f"{entity} response is missing '{key}'")


@dataclass(frozen=True)
class Ingestion:
    uri: str
    display: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    path: Optional[str] = None
    failure_message: Optional[str] = None
    languages: List[str] = field(default_factory=list)
    fixed: bool = False
    default: bool = False

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "Ingestion":
        return cls(
            uri=_require(payload, "uri", "Ingestion"),
            display=payload.get("display", ""),
            start_time=payload.get("startTime"),
            end_time=payload.get("endTime"),
            path=payload.get("path"),
            failure_message=payload.get("failureMessage"),
            languages=list(payload.get("languages") or []),
            fixed=bool(payload.get("fixed", False)),
            default=bool(payload.get("default", False)),
        )


@dataclass(frozen=True)
class Collection:
    uri: str
    display: str
    ingestions: List[Ingestion] = field(default_factory=list)
    created_by: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "Collection":
        return cls(
            uri=_require(payload, "uri", "Collection"),
            display=payload.get("display", ""),
            ingestions=[Ingestion.from_json(i) for i in payload.get("ingestions") or []],
            created_by=payload.get("createdBy"),
        )

    def has_ingestion(self, ingestion_uri: Uri) -> bool:
        return any(i.uri == ingestion_uri.as_str() for i in self.ingestions)


@dataclass(frozen=True)
class Blob:
    uri: str
    ingestions: List[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "Blob":
        return cls(
            uri=_require(payload, "uri", "Blob"),
            ingestions=list(payload.get("ingestion") or []),
        )
