"""Component definition and project manifest parsing.

Definitions are JSON objects, one component per ``*.json`` file. Patch files
for a component live under ``<definitions>/patches/<component>/``.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from omnibuild.errors import DefinitionError
from omnibuild.executor import render_template
from omnibuild.graph import DependencyGraph
from omnibuild.models import (
    PLATFORMS,
    BuildStep,
    CommandStep,
    Component,
    CopyStep,
    EnvOverride,
    EnvStep,
    MkdirStep,
    PatchRef,
    Platform,
    Project,
    ProjectDependency,
    ShellStep,
    SourceDescriptor,
)

PATCHES_DIRNAME = "patches"

COMPONENT_KEYS = frozenset(
    {
        "name",
        "default_version",
        "versions",
        "version_pins",
        "dependencies",
        "platforms",
        "patches",
        "build_steps",
        "env",
        "relative_path",
        "license",
        "license_file",
        "skip_transitive_dependency_licensing",
    }
)

STEP_KEYS: dict[str, frozenset[str]] = {
    "command": frozenset({"argv", "cwd", "env", "shared_index"}),
    "shell": frozenset({"script", "cwd", "env", "shared_index"}),
    "env": frozenset({"overrides"}),
    "copy": frozenset({"source", "destination"}),
    "mkdir": frozenset({"path"}),
    "make": frozenset({"args", "cwd", "env"}),
    "configure": frozenset({"args", "bin", "prefix", "cwd", "env"}),
    "cmake": frozenset({"args", "cwd", "env"}),
    "meson": frozenset({"args", "cwd", "env"}),
}


def parse_component(payload: Any, *, origin: str = "<memory>") -> Component:
    if not isinstance(payload, dict):
        raise DefinitionError("Component definition must be a JSON object.", context={"origin": origin})
    _reject_unknown(payload, COMPONENT_KEYS, what="component", origin=origin)
    name = _required_str(payload, "name", origin=origin)
    default_version = _required_str(payload, "default_version", origin=origin)
    template_vars = {"name": name}

    versions_raw = payload.get("versions")
    if not isinstance(versions_raw, dict) or not versions_raw:
        raise DefinitionError("Invalid component `versions` value.", context={"origin": origin})
    versions: dict[str, SourceDescriptor] = {}
    for version, source in versions_raw.items():
        if not isinstance(source, dict):
            raise DefinitionError(
                f"Invalid source for version `{version}`.",
                context={"origin": origin},
            )
        variables = {**template_vars, "version": version}
        versions[version] = SourceDescriptor(
            url=render_template(_required_str(source, "url", origin=origin), variables),
            sha256=_required_str(source, "sha256", origin=origin),
        )

    pins = payload.get("version_pins", {})
    if not isinstance(pins, dict) or not all(isinstance(v, str) for v in pins.values()):
        raise DefinitionError("Invalid component `version_pins` value.", context={"origin": origin})
    for platform in pins:
        _check_platform(platform, origin=origin)

    license_value = payload.get("license")
    license_file = payload.get("license_file")
    relative_path = payload.get("relative_path")
    for key, value in (("license", license_value), ("license_file", license_file), ("relative_path", relative_path)):
        if value is not None and not isinstance(value, str):
            raise DefinitionError(f"Invalid component `{key}` value.", context={"origin": origin})
    skip_licensing = payload.get("skip_transitive_dependency_licensing", False)
    if not isinstance(skip_licensing, bool):
        raise DefinitionError(
            "Invalid component `skip_transitive_dependency_licensing` value.",
            context={"origin": origin},
        )

    return Component(
        name=name,
        default_version=default_version,
        versions=versions,
        version_pins=dict(pins),
        dependencies=tuple(_str_list(payload, "dependencies", origin=origin)),
        platforms=_platforms(payload, origin=origin),
        patches=tuple(_parse_patch(item, origin=origin) for item in _list(payload, "patches", origin)),
        build_steps=tuple(
            step
            for item in _list(payload, "build_steps", origin)
            for step in parse_step(item, origin=origin)
        ),
        env_overrides=_parse_overrides(payload.get("env", []), origin=origin),
        relative_path=relative_path,
        license=license_value,
        license_file=license_file,
        skip_transitive_dependency_licensing=skip_licensing,
    )


def parse_step(payload: Any, *, origin: str = "<memory>") -> list[BuildStep]:
    """Parse one build step; recipe helpers expand to several plain steps."""
    if not isinstance(payload, dict):
        raise DefinitionError("Build step must be a JSON object.", context={"origin": origin})
    kind = payload.get("kind")
    if kind not in STEP_KEYS:
        raise DefinitionError(f"Unknown build step kind `{kind}`.", context={"origin": origin})
    _reject_unknown(payload, STEP_KEYS[kind] | {"kind"}, what=f"{kind} step", origin=origin)

    cwd = payload.get("cwd")
    if cwd is not None and not isinstance(cwd, str):
        raise DefinitionError("Invalid build step `cwd` value.", context={"origin": origin})
    env = _parse_overrides(payload.get("env", []), origin=origin)
    shared_index = payload.get("shared_index", False)
    if not isinstance(shared_index, bool):
        raise DefinitionError("Invalid build step `shared_index` value.", context={"origin": origin})

    if kind == "command":
        argv = _str_list(payload, "argv", origin=origin)
        if not argv:
            raise DefinitionError("Command step requires a non-empty argv.", context={"origin": origin})
        return [CommandStep(argv=tuple(argv), cwd=cwd, env=env, shared_index=shared_index)]
    if kind == "shell":
        script = _required_str(payload, "script", origin=origin)
        return [ShellStep(script=script, cwd=cwd, env=env, shared_index=shared_index)]
    if kind == "env":
        return [EnvStep(overrides=_parse_overrides(payload.get("overrides"), origin=origin))]
    if kind == "copy":
        return [
            CopyStep(
                source=_required_str(payload, "source", origin=origin),
                destination=_required_str(payload, "destination", origin=origin),
            )
        ]
    if kind == "mkdir":
        return [MkdirStep(path=_required_str(payload, "path", origin=origin))]

    args = tuple(_str_list(payload, "args", origin=origin))
    if kind == "make":
        return [CommandStep(argv=("make", *args), cwd=cwd, env=env)]
    if kind == "configure":
        binary = payload.get("bin", "./configure")
        prefix = payload.get("prefix", "{embedded_dir}")
        if not isinstance(binary, str) or not isinstance(prefix, str):
            raise DefinitionError("Invalid configure step value.", context={"origin": origin})
        return [CommandStep(argv=(binary, f"--prefix={prefix}", *args), cwd=cwd, env=env)]
    build_dir = f"{cwd}/build" if cwd else "build"
    if kind == "cmake":
        return [
            MkdirStep(path=build_dir),
            CommandStep(
                argv=(
                    "cmake",
                    "..",
                    "-DCMAKE_INSTALL_PREFIX={embedded_dir}",
                    "-DCMAKE_INSTALL_LIBDIR=lib",
                    "-DCMAKE_PREFIX_PATH={embedded_dir}",
                    *args,
                ),
                cwd=build_dir,
                env=env,
            ),
            CommandStep(argv=("make", "-j{workers}"), cwd=build_dir, env=env),
            CommandStep(argv=("make", "install"), cwd=build_dir, env=env),
        ]
    # meson
    return [
        CommandStep(
            argv=("meson", "setup", "--prefix={embedded_dir}", "--libdir=lib", *args, "builddir"),
            cwd=cwd,
            env=env,
        ),
        CommandStep(argv=("ninja", "-C", "builddir"), cwd=cwd, env=env),
        CommandStep(argv=("ninja", "-C", "builddir", "install"), cwd=cwd, env=env),
    ]


def load_component(path: str | Path) -> Component:
    definition_path = Path(path)
    return parse_component(_read_json(definition_path), origin=str(definition_path))


def load_definitions(directory: str | Path) -> DependencyGraph:
    """Load every ``*.json`` definition under ``directory`` into a graph."""
    root = Path(directory)
    if not root.is_dir():
        raise DefinitionError("Definitions directory does not exist.", context={"path": str(root)})
    return DependencyGraph(load_component(path) for path in sorted(root.glob("*.json")))


def patches_dir_for(definitions_dir: str | Path, component: str) -> Path:
    return Path(definitions_dir) / PATCHES_DIRNAME / component


def parse_project(payload: Any, *, origin: str = "<memory>") -> Project:
    if not isinstance(payload, dict):
        raise DefinitionError("Project manifest must be a JSON object.", context={"origin": origin})
    _reject_unknown(
        payload,
        frozenset({"name", "install_dir", "maintainer", "homepage", "dependencies"}),
        what="project",
        origin=origin,
    )
    dependencies: list[ProjectDependency] = []
    for item in _list(payload, "dependencies", origin):
        if isinstance(item, str) and item:
            dependencies.append(ProjectDependency(name=item))
        elif isinstance(item, dict):
            _reject_unknown(item, frozenset({"name", "platforms"}), what="project dependency", origin=origin)
            dependencies.append(
                ProjectDependency(
                    name=_required_str(item, "name", origin=origin),
                    platforms=_platforms(item, origin=origin),
                )
            )
        else:
            raise DefinitionError("Invalid project dependency entry.", context={"origin": origin})
    maintainer = payload.get("maintainer")
    homepage = payload.get("homepage")
    return Project(
        name=_required_str(payload, "name", origin=origin),
        install_dir=_required_str(payload, "install_dir", origin=origin),
        dependencies=tuple(dependencies),
        maintainer=maintainer if isinstance(maintainer, str) else None,
        homepage=homepage if isinstance(homepage, str) else None,
    )


def load_project(path: str | Path) -> Project:
    project_path = Path(path)
    return parse_project(_read_json(project_path), origin=str(project_path))


def _read_json(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise DefinitionError("Definition file does not exist.", context={"path": str(path)}) from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DefinitionError("Invalid definition JSON.", hint=str(exc), context={"path": str(path)}) from exc


def _parse_patch(item: Any, *, origin: str) -> PatchRef:
    if isinstance(item, str) and item:
        return PatchRef(path=item)
    if isinstance(item, dict):
        _reject_unknown(item, frozenset({"path", "strip"}), what="patch", origin=origin)
        strip = item.get("strip", 1)
        if not isinstance(strip, int) or isinstance(strip, bool) or strip < 0:
            raise DefinitionError("Invalid patch `strip` value.", context={"origin": origin})
        return PatchRef(path=_required_str(item, "path", origin=origin), strip=strip)
    raise DefinitionError("Invalid patch entry.", context={"origin": origin})


def _parse_overrides(raw: Any, *, origin: str) -> tuple[EnvOverride, ...]:
    if not isinstance(raw, list):
        raise DefinitionError("Environment overrides must be a list.", context={"origin": origin})
    overrides: list[EnvOverride] = []
    for item in raw:
        if not isinstance(item, dict):
            raise DefinitionError("Invalid environment override entry.", context={"origin": origin})
        _reject_unknown(item, frozenset({"variable", "action", "value"}), what="override", origin=origin)
        value = item.get("value", "")
        action = item.get("action", "set")
        if not isinstance(value, str) or not isinstance(action, str):
            raise DefinitionError("Invalid environment override entry.", context={"origin": origin})
        overrides.append(
            EnvOverride(
                variable=_required_str(item, "variable", origin=origin),
                action=action,  # type: ignore[arg-type]
                value=value,
            )
        )
    return tuple(overrides)


def _platforms(payload: dict[str, Any], *, origin: str) -> tuple[Platform, ...]:
    return tuple(_check_platform(value, origin=origin) for value in _str_list(payload, "platforms", origin=origin))


def _check_platform(value: str, *, origin: str) -> Platform:
    if value not in PLATFORMS:
        raise DefinitionError(
            f"Unknown platform `{value}`.",
            hint=f"Use one of {', '.join(PLATFORMS)}.",
            context={"origin": origin},
        )
    return value  # type: ignore[return-value]


def _reject_unknown(payload: dict[str, Any], allowed: Iterable[str], *, what: str, origin: str) -> None:
    unknown = sorted(set(payload) - set(allowed))
    if unknown:
        raise DefinitionError(
            f"Unknown {what} keys: {', '.join(unknown)}.",
            context={"origin": origin},
        )


def _list(payload: dict[str, Any], key: str, origin: str) -> list[Any]:
    value = payload.get(key, [])
    if not isinstance(value, list):
        raise DefinitionError(f"Invalid `{key}` value.", context={"origin": origin})
    return value


def _str_list(payload: dict[str, Any], key: str, *, origin: str) -> list[str]:
    value = _list(payload, key, origin)
    if not all(isinstance(item, str) and item for item in value):
        raise DefinitionError(f"Invalid `{key}` value.", context={"origin": origin})
    return value


def _required_str(payload: dict[str, Any], key: str, *, origin: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise DefinitionError(f"Invalid `{key}` value.", context={"origin": origin})
    return value
