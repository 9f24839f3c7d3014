"""Content-addressed source fetcher with pluggable URL schemes."""

from __future__ import annotations

import os
import shutil
import threading
from collections.abc import Callable, Mapping
from pathlib import Path
from urllib.error import URLError
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname, urlopen

from omnibuild.errors import FetchError
from omnibuild.models import SourceDescriptor
from omnibuild.policy import Policy, ensure_network_allowed

# A handler copies the resource behind ``url`` into ``target``.
SchemeHandler = Callable[[str, Path], None]

NETWORK_SCHEMES = frozenset({"http", "https", "ftp"})
DEFAULT_TIMEOUT = 60.0


def _fetch_url(url: str, target: Path) -> None:
    with urlopen(url, timeout=DEFAULT_TIMEOUT) as response:  # noqa: S310 - digest is verified after fetch
        with target.open("wb") as handle:
            shutil.copyfileobj(response, handle)


def _fetch_file(url: str, target: Path) -> None:
    shutil.copyfile(_local_path(url), target)


def _local_path(url: str) -> Path:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(url2pathname(unquote(parsed.path)))
    return Path(url)


_SCHEME_HANDLERS: dict[str, SchemeHandler] = {
    "http": _fetch_url,
    "https": _fetch_url,
    "ftp": _fetch_url,
    "file": _fetch_file,
}


def register_scheme(scheme: str, handler: SchemeHandler) -> None:
    """Register ``handler`` for ``scheme`` on every fetcher created afterwards."""
    _SCHEME_HANDLERS[scheme.lower()] = handler


def _scheme_of(url: str) -> str:
    scheme = urlparse(url).scheme.lower()
    # Bare paths and Windows drive letters are local files.
    if len(scheme) <= 1:
        return "file"
    return scheme


class SourceFetcher:
    """Retrieves source archives into ``<cache_dir>/<sha256>/<name>``.

    The cache key is the expected digest, so a descriptor seen before never
    touches the network again. Verification is left to the caller.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        *,
        policy: Policy | None = None,
        handlers: Mapping[str, SchemeHandler] | None = None,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.policy = policy or Policy()
        self._handlers = dict(_SCHEME_HANDLERS)
        if handlers:
            self._handlers.update({key.lower(): value for key, value in handlers.items()})
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def cached_path(self, descriptor: SourceDescriptor) -> Path:
        return self.cache_dir / descriptor.sha256 / archive_name(descriptor.url)

    def is_cached(self, descriptor: SourceDescriptor) -> bool:
        return self.cached_path(descriptor).is_file()

    def fetch(self, descriptor: SourceDescriptor, destination: str | Path | None = None) -> Path:
        """Return the path of the retrieved archive, downloading it on a cache miss."""
        with self._lock_for(descriptor.sha256):
            cached = self.cached_path(descriptor)
            if not cached.is_file():
                self._download(descriptor, cached)
        if destination is None:
            return cached
        target = Path(destination)
        if target.is_dir():
            target = target / cached.name
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(cached, target)
        except OSError as exc:
            raise FetchError(
                "Unable to copy cached archive to destination.",
                context={"path": str(cached), "destination": str(target), "error": str(exc)},
            ) from exc
        return target

    def evict(self, descriptor: SourceDescriptor) -> None:
        shutil.rmtree(self.cache_dir / descriptor.sha256, ignore_errors=True)

    def _download(self, descriptor: SourceDescriptor, cached: Path) -> None:
        scheme = _scheme_of(descriptor.url)
        handler = self._handlers.get(scheme)
        if handler is None:
            raise FetchError(
                f"Unsupported URL scheme `{scheme}`.",
                hint="Register a handler with register_scheme() or use https/file URLs.",
                context={"url": descriptor.url},
            )
        if scheme in NETWORK_SCHEMES:
            ensure_network_allowed(policy=self.policy, operation="fetch", url=descriptor.url)

        cached.parent.mkdir(parents=True, exist_ok=True)
        temp_path = cached.with_name(cached.name + ".part")
        try:
            handler(descriptor.url, temp_path)
            os.replace(temp_path, cached)
        except (OSError, URLError, ValueError) as exc:
            raise FetchError(
                "Unable to fetch source archive.",
                hint="Check the URL and network access, then re-run.",
                context={"url": descriptor.url, "error": str(exc)},
            ) from exc
        finally:
            temp_path.unlink(missing_ok=True)

    def _lock_for(self, digest: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(digest, threading.Lock())


def archive_name(url: str) -> str:
    name = Path(unquote(urlparse(url).path)).name
    return name or "source"
