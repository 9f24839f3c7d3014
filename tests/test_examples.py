from pathlib import Path

from omnibuild.definitions import load_definitions, load_project
from omnibuild.models import CommandStep, MkdirStep

NIKOS = Path(__file__).resolve().parents[1] / "examples" / "nikos"


def test_nikos_definitions_resolve_for_the_project() -> None:
    graph = load_definitions(NIKOS / "components")
    project = load_project(NIKOS / "project.json")

    requested = project.requested_for("linux")
    order = graph.for_platform("linux").resolve_order(requested)

    assert requested == ("libdnf", "apk-tools")
    assert order == (
        "apk-tools",
        "glibc",
        "librepo",
        "zstd",
        "rpm",
        "libmodulemd",
        "libsolv",
        "libdnf",
    )
    assert project.requested_for("darwin") == ()


def test_nikos_glibc_recipe() -> None:
    glibc = load_definitions(NIKOS / "components").get("glibc")

    assert glibc.platforms == ("linux",)
    assert set(glibc.versions) == {"2.17", "2.32"}
    assert glibc.source_for("linux").url == "https://ftp.gnu.org/gnu/glibc/glibc-2.32.tar.bz2"
    assert glibc.build_steps[0] == MkdirStep("builddir")
    assert isinstance(glibc.build_steps[1], CommandStep)
    assert glibc.build_steps[1].argv[0] == "../configure"


def test_libdnf_drops_glibc_off_linux() -> None:
    darwin = load_definitions(NIKOS / "components").for_platform("darwin")

    assert "glibc" not in darwin
    assert "glibc" not in darwin.get("libdnf").dependencies
