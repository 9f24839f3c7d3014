"""Core typed dataclasses for component definitions and build actions."""

from __future__ import annotations

import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

from omnibuild.errors import CyclicDependencyError, DefinitionError

Platform = Literal["linux", "darwin", "freebsd", "windows"]
PLATFORMS: tuple[Platform, ...] = ("linux", "darwin", "freebsd", "windows")

OverrideAction = Literal["set", "append", "prepend", "remove", "unset"]
OVERRIDE_ACTIONS: tuple[OverrideAction, ...] = ("set", "append", "prepend", "remove", "unset")

SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def host_platform() -> Platform:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("freebsd"):
        return "freebsd"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    raise DefinitionError(
        f"Unsupported host platform `{sys.platform}`.",
        hint=f"Pass one of {', '.join(PLATFORMS)} explicitly.",
    )


@dataclass(frozen=True, slots=True)
class SourceDescriptor:
    url: str
    sha256: str

    def __post_init__(self) -> None:
        if not self.url:
            raise DefinitionError("Source descriptor requires a URL.")
        if not SHA256_PATTERN.fullmatch(self.sha256):
            raise DefinitionError(
                "Source descriptor requires a lowercase hex SHA-256 digest.",
                context={"url": self.url, "sha256": self.sha256},
            )


@dataclass(frozen=True, slots=True)
class PatchRef:
    path: str
    strip: int = 1


@dataclass(frozen=True, slots=True)
class EnvOverride:
    variable: str
    action: OverrideAction = "set"
    value: str = ""

    def __post_init__(self) -> None:
        if not self.variable:
            raise DefinitionError("Environment override requires a variable name.")
        if self.action not in OVERRIDE_ACTIONS:
            raise DefinitionError(
                f"Unsupported environment override action `{self.action}`.",
                context={"variable": self.variable},
            )


# ── Build step variants ─────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class CommandStep:
    """Run an external command; argv elements are templates."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: tuple[EnvOverride, ...] = ()
    shared_index: bool = False
    kind: Literal["command"] = field(default="command", init=False)


@dataclass(frozen=True, slots=True)
class ShellStep:
    """Opaque fallback: a free-form shell line run through ``/bin/sh -c``."""

    script: str
    cwd: str | None = None
    env: tuple[EnvOverride, ...] = ()
    shared_index: bool = False
    kind: Literal["shell"] = field(default="shell", init=False)


@dataclass(frozen=True, slots=True)
class EnvStep:
    """Apply overrides to the environment of every later step."""

    overrides: tuple[EnvOverride, ...]
    kind: Literal["env"] = field(default="env", init=False)


@dataclass(frozen=True, slots=True)
class CopyStep:
    source: str
    destination: str
    kind: Literal["copy"] = field(default="copy", init=False)


@dataclass(frozen=True, slots=True)
class MkdirStep:
    path: str
    kind: Literal["mkdir"] = field(default="mkdir", init=False)


BuildStep = CommandStep | ShellStep | EnvStep | CopyStep | MkdirStep


# ── Components and projects ─────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Component:
    name: str
    default_version: str
    versions: Mapping[str, SourceDescriptor]
    dependencies: tuple[str, ...] = ()
    platforms: tuple[Platform, ...] = ()
    version_pins: Mapping[str, str] = field(default_factory=dict)
    patches: tuple[PatchRef, ...] = ()
    build_steps: tuple[BuildStep, ...] = ()
    env_overrides: tuple[EnvOverride, ...] = ()
    relative_path: str | None = None
    license: str | None = None
    license_file: str | None = None
    skip_transitive_dependency_licensing: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise DefinitionError("Component requires a non-empty name.")
        if self.default_version not in self.versions:
            raise DefinitionError(
                f"Component `{self.name}` default version is not in its version mapping.",
                hint="Add a source descriptor for the version or change default_version.",
                context={"component": self.name, "version": self.default_version},
            )
        for platform, version in self.version_pins.items():
            if version not in self.versions:
                raise DefinitionError(
                    f"Component `{self.name}` pins unknown version for {platform}.",
                    context={"component": self.name, "platform": platform, "version": version},
                )
        if self.name in self.dependencies:
            raise CyclicDependencyError((self.name, self.name))
        # Duplicate edges collapse onto the first occurrence.
        object.__setattr__(self, "dependencies", tuple(dict.fromkeys(self.dependencies)))

    def applies_to(self, platform: str) -> bool:
        return not self.platforms or platform in self.platforms

    def version_for(self, platform: str) -> str:
        return self.version_pins.get(platform, self.default_version)

    def source_for(self, platform: str) -> SourceDescriptor:
        return self.versions[self.version_for(platform)]


@dataclass(frozen=True, slots=True)
class ProjectDependency:
    name: str
    platforms: tuple[Platform, ...] = ()

    def applies_to(self, platform: str) -> bool:
        return not self.platforms or platform in self.platforms


@dataclass(frozen=True, slots=True)
class Project:
    name: str
    install_dir: str
    dependencies: tuple[ProjectDependency, ...] = ()
    maintainer: str | None = None
    homepage: str | None = None

    def requested_for(self, platform: str) -> tuple[str, ...]:
        return tuple(dep.name for dep in self.dependencies if dep.applies_to(platform))
