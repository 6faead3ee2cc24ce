"""Catalog identifiers of the form ``collection/ingestion[/path...]``."""

import re
from pathlib import PurePath
from typing import Union

from .errors import InputError

# A segment is anything but '/', '.' or a newline.
_URI_PATTERN = re.compile(r"[^\n/.]+(?:/[^\n/.]+)+")


class Uri:
    """Immutable, validated catalog URI.

    ``parse`` is the only way user input becomes a ``Uri``; ``extend`` builds
    file URIs underneath an ingestion and does not re-validate the appended
    path, since file names are free to contain dots.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        object.__setattr__(self, "_value", value)

    def __setattr__(self, name, value):  # type: ignore[override]
        raise AttributeError("Uri is immutable")

    @classmethod
    def parse(cls, value: str) -> "Uri":
        if not _URI_PATTERN.fullmatch(value or ""):
            raise InputError(
                f"URI must be in the form 'collection/ingestion'. Provided '{value}'"
            )
        return cls(value)

    def collection(self) -> str:
        return self._value.split("/")[0]

    def ingestion(self) -> str:
        return self._value.split("/")[1]

    def extend(self, relative_path: Union[str, PurePath]) -> "Uri":
        if isinstance(relative_path, PurePath):
            path = relative_path.as_posix()
        else:
            path = str(relative_path)
        path = path.rstrip("/")

        if path.startswith("/"):
            # Only happens when ingesting from the filesystem root
            return Uri(f"{self._value}{path}")
        return Uri(f"{self._value}/{path}")

    def as_str(self) -> str:
        return self._value

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"Uri({self._value!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Uri):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)
