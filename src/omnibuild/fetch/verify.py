"""Content digest verification for fetched sources."""

from __future__ import annotations

import hashlib
import hmac
from pathlib import Path

from omnibuild.errors import FetchError, MismatchError

CHUNK_SIZE = 1024 * 1024


def file_sha256(path: str | Path) -> str:
    digest = hashlib.sha256()
    try:
        with Path(path).open("rb") as handle:
            for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
                digest.update(chunk)
    except OSError as exc:
        raise FetchError(
            "Unable to read fetched content for verification.",
            context={"path": str(path), "error": str(exc)},
        ) from exc
    return digest.hexdigest()


def verify(path: str | Path, expected_digest: str) -> None:
    """Raise :class:`MismatchError` unless ``path`` hashes to ``expected_digest``."""
    actual = file_sha256(path)
    if not hmac.compare_digest(actual, expected_digest.lower()):
        raise MismatchError(path=str(path), expected=expected_digest, actual=actual)
