import os
from pathlib import Path

import pytest

from omnibuild.environment import apply_overrides, build_environment, platform_defaults
from omnibuild.errors import DefinitionError
from omnibuild.models import EnvOverride

BASE = {"PATH": "/usr/bin", "HOME": "/home/builder"}


def test_environment_points_at_the_embedded_prefix() -> None:
    env = build_environment("/opt/nikos", platform_defaults("linux"), base=BASE)

    assert env["CFLAGS"].startswith("-I/opt/nikos/embedded/include ")
    assert "-D_FORTIFY_SOURCE=2" in env["CFLAGS"].split()
    assert "-L/opt/nikos/embedded/lib" in env["LDFLAGS"].split()
    assert "-Wl,-rpath,/opt/nikos/embedded/lib" in env["LDFLAGS"].split()
    assert env["PKG_CONFIG_PATH"] == "/opt/nikos/embedded/lib/pkgconfig"
    assert env["PATH"].split(os.pathsep) == ["/opt/nikos/embedded/bin", "/opt/nikos/bin", "/usr/bin"]
    assert env["HOME"] == "/home/builder"


def test_environment_is_pure() -> None:
    base = dict(BASE)
    before = dict(os.environ)

    first = build_environment(Path("/opt/nikos"), platform_defaults("linux"), base=base, workers=4)
    second = build_environment(Path("/opt/nikos"), platform_defaults("linux"), base=base, workers=4)

    assert first == second
    assert first is not second
    assert base == BASE
    assert dict(os.environ) == before
    assert first["MAKEFLAGS"] == "-j4"


def test_overrides_apply_last_and_last_write_wins() -> None:
    overrides = [
        EnvOverride("CC", "set", "gcc"),
        EnvOverride("CC", "set", "clang"),
    ]

    env = build_environment("/opt/nikos", platform_defaults("linux"), overrides, base=BASE)

    assert env["CC"] == "clang"


def test_remove_drops_a_default_flag() -> None:
    # glibc refuses to build with _FORTIFY_SOURCE set.
    overrides = [
        EnvOverride("CFLAGS", "remove", "-D_FORTIFY_SOURCE=2"),
        EnvOverride("CPPFLAGS", "remove", "-D_FORTIFY_SOURCE=2"),
    ]

    env = build_environment("/opt/nikos", platform_defaults("linux"), overrides, base=BASE)

    assert "-D_FORTIFY_SOURCE=2" not in env["CFLAGS"].split()
    assert "-D_FORTIFY_SOURCE=2" not in env["CPPFLAGS"].split()
    assert "-D_FORTIFY_SOURCE=2" in env["CXXFLAGS"].split()


def test_cppflags_carry_only_preprocessor_flags() -> None:
    env = build_environment("/opt/nikos", platform_defaults("linux"), base=BASE)

    assert env["CPPFLAGS"].split() == ["-I/opt/nikos/embedded/include", "-D_FORTIFY_SOURCE=2"]
    assert "-O2" in env["CFLAGS"].split()
    assert "-fstack-protector" in env["CXXFLAGS"].split()


def test_path_lists_use_the_path_separator() -> None:
    env = apply_overrides(
        {"PATH": "/usr/bin"},
        [
            EnvOverride("PATH", "prepend", "/opt/tools/bin"),
            EnvOverride("PATH", "append", "/sbin"),
        ],
    )

    assert env["PATH"].split(os.pathsep) == ["/opt/tools/bin", "/usr/bin", "/sbin"]


def test_append_and_unset() -> None:
    env = apply_overrides(
        {"LDFLAGS": "-L/a", "CCACHE_DIR": "/tmp/ccache"},
        [EnvOverride("LDFLAGS", "append", "-lrt"), EnvOverride("CCACHE_DIR", "unset")],
    )

    assert env == {"LDFLAGS": "-L/a -lrt"}


def test_darwin_skips_rpath_and_sets_deployment_target() -> None:
    env = build_environment("/opt/nikos", platform_defaults("darwin"), base=BASE)

    assert "LD_RUN_PATH" not in env
    assert not any(flag.startswith("-Wl,-rpath") for flag in env["LDFLAGS"].split())
    assert env["MACOSX_DEPLOYMENT_TARGET"] == "10.12"


def test_unknown_platform_is_rejected() -> None:
    with pytest.raises(DefinitionError):
        platform_defaults("plan9")
