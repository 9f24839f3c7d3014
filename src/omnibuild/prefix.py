"""The shared install prefix and its per-component completion records."""

from __future__ import annotations

import hashlib
import json
import os
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from omnibuild.models import Component

LAYOUT = ("bin", "lib", "include", "share")
STATE_DIR = ".omnibuild"


class InstallPrefix:
    """Shared installation root every component builds into.

    Components append to their own subpaths under ``embedded/``. Nothing is
    ever rolled back; completion records make a re-run skip what already
    finished. Steps that rewrite shared index files take
    :meth:`shared_index_lock`.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._index_lock = threading.Lock()

    def __fspath__(self) -> str:
        return str(self.root)

    def __repr__(self) -> str:
        return f"InstallPrefix({str(self.root)!r})"

    @property
    def embedded(self) -> Path:
        return self.root / "embedded"

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR / "completed"

    def prepare(self) -> None:
        for name in LAYOUT:
            (self.embedded / name).mkdir(parents=True, exist_ok=True)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def shared_index_lock(self) -> Iterator[None]:
        with self._index_lock:
            yield

    def completion_record(self, name: str) -> dict[str, Any] | None:
        path = self.state_dir / f"{name}.json"
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        return parsed if isinstance(parsed, dict) else None

    def is_complete(self, name: str, fingerprint: str) -> bool:
        record = self.completion_record(name)
        return record is not None and record.get("fingerprint") == fingerprint

    def mark_complete(self, name: str, record: Mapping[str, Any]) -> Path:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.state_dir / f"{name}.json"
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(dict(record), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(temp_path, path)
        return path

    def clear(self, name: str) -> None:
        (self.state_dir / f"{name}.json").unlink(missing_ok=True)


def component_fingerprint(
    component: Component,
    *,
    platform: str,
    dependency_fingerprints: Mapping[str, str],
    patch_digests: Mapping[str, str] | None = None,
) -> str:
    """Digest of everything that decides a component's build output.

    Dependency fingerprints are folded in so rebuilding a dependency
    invalidates its dependents.
    """
    version = component.version_for(platform)
    source = component.source_for(platform)
    payload = {
        "name": component.name,
        "version": version,
        "platform": platform,
        "source": {"url": source.url, "sha256": source.sha256},
        "patches": [
            [patch.path, patch.strip, (patch_digests or {}).get(patch.path, "")]
            for patch in component.patches
        ],
        "env": [[o.variable, o.action, o.value] for o in component.env_overrides],
        "steps": [repr(step) for step in component.build_steps],
        "relative_path": component.relative_path,
        "dependencies": {
            name: dependency_fingerprints[name] for name in sorted(component.dependencies)
        },
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
