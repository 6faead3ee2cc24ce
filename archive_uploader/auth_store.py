"""
Credential store: one file per catalog server holding its raw bearer token.

Files live under ``~/.archive-uploader`` (or ``ARCHIVE_UPLOADER_HOME``) and
are named after the percent-encoded server URI.
"""

import os
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from .errors import InputError, UnsupportedSystemError

DEFAULT_DIR_NAME = ".archive-uploader"


def _store_dir(home: Optional[Path]) -> Path:
    if home is not None:
        return home
    try:
        return Path.home() / DEFAULT_DIR_NAME
    except RuntimeError:
        raise UnsupportedSystemError()


def token_path(server_uri: str, home: Optional[Path] = None) -> Path:
    directory = _store_dir(home)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / quote(server_uri, safe="")


def get_token(server_uri: str, home: Optional[Path] = None) -> str:
    path = token_path(server_uri, home)
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        raise InputError(
            f"No token stored for {server_uri}. Run 'login {server_uri} <token>' first."
        )


def set_token(server_uri: str, token: str, home: Optional[Path] = None) -> None:
    path = token_path(server_uri, home)
    # Write then rename so concurrent readers never see a half-written token
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        fh.write(token)
    os.chmod(tmp, 0o600)
    tmp.replace(path)
