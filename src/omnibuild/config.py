"""Run configuration and its JSON loader."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from omnibuild.errors import DefinitionError
from omnibuild.policy import Policy


def _default_workers() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Locations and limits for one orchestrator run.

    ``jobs`` bounds how many components build at once; ``workers`` is the
    parallelism handed to each build step through the ``{workers}`` template.
    """

    install_dir: Path
    cache_dir: Path = field(default_factory=lambda: Path("cache"))
    work_dir: Path = field(default_factory=lambda: Path("work"))
    jobs: int = 1
    workers: int = field(default_factory=_default_workers)
    kill_on_cancel: bool = False
    policy: Policy = field(default_factory=Policy)

    def __post_init__(self) -> None:
        object.__setattr__(self, "install_dir", Path(self.install_dir))
        object.__setattr__(self, "cache_dir", Path(self.cache_dir))
        object.__setattr__(self, "work_dir", Path(self.work_dir))
        if self.jobs < 1:
            raise DefinitionError("jobs must be at least 1.", context={"jobs": str(self.jobs)})
        if self.workers < 1:
            raise DefinitionError(
                "workers must be at least 1.",
                context={"workers": str(self.workers)},
            )


def load_config(path: str | Path, **overrides: Any) -> BuildConfig:
    """Read a JSON config file; keyword ``overrides`` that are not None win."""
    config_path = Path(path)
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise DefinitionError(
            "Config file does not exist.",
            context={"path": str(config_path)},
        ) from exc
    except json.JSONDecodeError as exc:
        raise DefinitionError(
            "Invalid config JSON.",
            hint=str(exc),
            context={"path": str(config_path)},
        ) from exc
    if not isinstance(payload, dict):
        raise DefinitionError("Config file must contain a JSON object.")
    return config_from_mapping(payload, **overrides)


def config_from_mapping(payload: dict[str, Any], **overrides: Any) -> BuildConfig:
    known = {"install_dir", "cache_dir", "work_dir", "jobs", "workers", "kill_on_cancel", "network_mode"}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise DefinitionError(f"Unknown config keys: {', '.join(unknown)}.")

    values: dict[str, Any] = {}
    for key in ("install_dir", "cache_dir", "work_dir"):
        if key in payload:
            values[key] = Path(_expect(payload, key, str))
    for key in ("jobs", "workers"):
        if key in payload:
            values[key] = _expect(payload, key, int)
    if "kill_on_cancel" in payload:
        values["kill_on_cancel"] = _expect(payload, "kill_on_cancel", bool)
    network_mode = payload.get("network_mode", "online")
    values.update({key: value for key, value in overrides.items() if value is not None})
    if "network_mode" in values:
        network_mode = values.pop("network_mode")
    if network_mode not in ("online", "offline"):
        raise DefinitionError(f"Invalid config `network_mode` value: {network_mode}")
    if "install_dir" not in values:
        raise DefinitionError("Config requires an `install_dir`.")
    return BuildConfig(policy=Policy(network_mode=network_mode), **values)


def _expect(payload: dict[str, Any], key: str, kind: type) -> Any:
    value = payload[key]
    # bool is an int subclass; keep the two apart.
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise DefinitionError(f"Invalid config `{key}` value.")
    if kind is str and not value:
        raise DefinitionError(f"Invalid config `{key}` value.")
    return value
