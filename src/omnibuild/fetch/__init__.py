"""Source retrieval, integrity verification, and archive extraction."""

from .extract import extract_archive
from .fetcher import SourceFetcher, register_scheme
from .verify import file_sha256, verify

__all__ = ["SourceFetcher", "extract_archive", "file_sha256", "register_scheme", "verify"]
