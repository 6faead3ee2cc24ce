import base64
import hashlib
from pathlib import Path

from .models import HashFileOutput

_READ_SIZE = 1024 * 1024


def hash_file(path: str) -> HashFileOutput:
    """SHA-512 of the file at ``path``, URL-safe base64 without padding.

    This is the form the catalog uses to identify resources.
    """
    hasher = hashlib.sha512()
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(_READ_SIZE), b""):
            hasher.update(chunk)

    digest = base64.urlsafe_b64encode(hasher.digest()).rstrip(b"=").decode("ascii")
    return HashFileOutput(hash=digest, path=path)
