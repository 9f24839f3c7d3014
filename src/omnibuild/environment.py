"""Build environment construction rooted at the shared install prefix.

Everything here is a pure function of its inputs: callers get a fresh
mapping back and nothing touches ``os.environ``.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from omnibuild.errors import DefinitionError
from omnibuild.models import EnvOverride

PATH_LIST_VARIABLES = frozenset(
    {"PATH", "PKG_CONFIG_PATH", "LD_LIBRARY_PATH", "LD_RUN_PATH", "DYLD_LIBRARY_PATH"}
)

# Variables a build step inherits from the calling process when no base is given.
PASSTHROUGH_VARIABLES = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "USER", "SHELL", "TERM")


@dataclass(frozen=True, slots=True)
class PlatformDefaults:
    name: str
    cflags: tuple[str, ...] = ("-O2",)
    ldflags: tuple[str, ...] = ()
    rpath: bool = True
    variables: Mapping[str, str] = field(default_factory=dict)


PLATFORM_DEFAULTS: dict[str, PlatformDefaults] = {
    "linux": PlatformDefaults(
        name="linux",
        cflags=("-O2", "-D_FORTIFY_SOURCE=2", "-fstack-protector"),
    ),
    "darwin": PlatformDefaults(
        name="darwin",
        cflags=("-O2", "-D_FORTIFY_SOURCE=2", "-fstack-protector"),
        rpath=False,
        variables={"MACOSX_DEPLOYMENT_TARGET": "10.12"},
    ),
    "freebsd": PlatformDefaults(
        name="freebsd",
        cflags=("-O2",),
        variables={"CC": "clang", "CXX": "clang++"},
    ),
    "windows": PlatformDefaults(
        name="windows",
        cflags=("-O2",),
        rpath=False,
    ),
}


def platform_defaults(platform: str) -> PlatformDefaults:
    try:
        return PLATFORM_DEFAULTS[platform]
    except KeyError:
        raise DefinitionError(
            f"No platform defaults for `{platform}`.",
            hint=f"Use one of {', '.join(sorted(PLATFORM_DEFAULTS))}.",
        ) from None


def build_environment(
    install_prefix: str | os.PathLike[str],
    platform_defaults: PlatformDefaults,
    overrides: Iterable[EnvOverride] = (),
    *,
    base: Mapping[str, str] | None = None,
    workers: int | None = None,
) -> dict[str, str]:
    """Return the variables a build step sees.

    Compiler and linker flags point at ``<prefix>/embedded`` so each component
    finds what its dependencies installed; ``PATH`` gets the embedded and
    top-level ``bin`` directories first. ``overrides`` apply last, in order.
    """
    install_dir = Path(install_prefix)
    embedded = install_dir / "embedded"
    if base is None:
        base = {key: os.environ[key] for key in PASSTHROUGH_VARIABLES if key in os.environ}
    env = dict(base)

    include_flag = f"-I{embedded / 'include'}"
    lib_dir = str(embedded / "lib")
    cflags = " ".join((include_flag, *platform_defaults.cflags))
    # The preprocessor only takes include paths and macro definitions.
    defines = [flag for flag in platform_defaults.cflags if flag.startswith("-D")]
    cppflags = " ".join((include_flag, *defines))
    ldflags = [f"-L{lib_dir}", *platform_defaults.ldflags]
    if platform_defaults.rpath:
        ldflags.insert(0, f"-Wl,-rpath,{lib_dir}")
        env["LD_RUN_PATH"] = lib_dir

    env.update(platform_defaults.variables)
    env["CFLAGS"] = cflags
    env["CXXFLAGS"] = cflags
    env["CPPFLAGS"] = cppflags
    env["LDFLAGS"] = " ".join(ldflags)
    env["PKG_CONFIG_PATH"] = str(embedded / "lib" / "pkgconfig")
    env["PATH"] = os.pathsep.join(
        part
        for part in (str(embedded / "bin"), str(install_dir / "bin"), base.get("PATH", ""))
        if part
    )
    env["OMNIBUILD_INSTALL_DIR"] = str(install_dir)
    if workers is not None:
        env["MAKEFLAGS"] = f"-j{workers}"
    return apply_overrides(env, overrides)


def apply_overrides(env: Mapping[str, str], overrides: Iterable[EnvOverride]) -> dict[str, str]:
    result = dict(env)
    for override in overrides:
        variable = override.variable
        separator = os.pathsep if variable in PATH_LIST_VARIABLES else " "
        current = [token for token in result.get(variable, "").split(separator) if token]
        tokens = [token for token in override.value.split(separator) if token]
        if override.action == "set":
            result[variable] = override.value
        elif override.action == "unset":
            result.pop(variable, None)
        elif override.action == "append":
            result[variable] = separator.join([*current, *tokens])
        elif override.action == "prepend":
            result[variable] = separator.join([*tokens, *current])
        elif override.action == "remove":
            result[variable] = separator.join(token for token in current if token not in tokens)
    return result
