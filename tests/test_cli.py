import io
import json
from pathlib import Path

import pytest

from omnibuild.cli import EXIT_BUILD_FAILED, EXIT_INVALID, EXIT_OK, main

INSTALL = "echo {name}-{version} > {embedded_dir}/lib/{name}.installed"


def test_build_succeeds_and_installs_components(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)
    stderr = io.StringIO()

    code = main([*_build_args(tmp_path, definitions), "apk-tools"], stderr=stderr)

    assert code == EXIT_OK
    lib = tmp_path / "opt" / "embedded" / "lib"
    assert sorted(path.name for path in lib.iterdir()) == [
        "apk-tools.installed",
        "openssl.installed",
        "zlib.installed",
    ]
    assert "[apk-tools] Installed apk-tools 1.0." in stderr.getvalue()


def test_build_failure_reports_component_step_and_chain(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script="exit 3")
    stderr = io.StringIO()

    code = main([*_build_args(tmp_path, definitions), "apk-tools"], stderr=stderr)

    output = stderr.getvalue()
    assert code == EXIT_BUILD_FAILED
    assert "failed component: openssl" in output
    assert "failed step: 1" in output
    assert "exit status: 3" in output
    assert "could not complete: openssl, apk-tools" in output
    assert (tmp_path / "opt" / "embedded" / "lib" / "zlib.installed").exists()
    assert not (tmp_path / "opt" / "embedded" / "lib" / "apk-tools.installed").exists()


def test_unknown_component_is_a_validation_error(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)
    stderr = io.StringIO()

    code = main([*_build_args(tmp_path, definitions), "pacman"], stderr=stderr)

    assert code == EXIT_INVALID
    assert "pacman" in stderr.getvalue()
    assert not (tmp_path / "opt").exists()


def test_cycle_is_a_validation_error(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)
    payload = json.loads((definitions / "zlib.json").read_text())
    payload["dependencies"] = ["apk-tools"]
    (definitions / "zlib.json").write_text(json.dumps(payload))
    stderr = io.StringIO()

    code = main(["order", "linux", "apk-tools", "--definitions", str(definitions)], stderr=stderr)

    assert code == EXIT_INVALID
    assert "Dependency cycle detected" in stderr.getvalue()


def test_order_prints_the_resolved_order(tmp_path: Path, make_source, capsys: pytest.CaptureFixture[str]) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)

    code = main(["order", "linux", "apk-tools", "--definitions", str(definitions)])

    assert code == EXIT_OK
    assert capsys.readouterr().out.split() == ["zlib", "openssl", "apk-tools"]


def test_order_rejects_unknown_component(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)
    stderr = io.StringIO()

    code = main(["order", "linux", "nosuch", "--definitions", str(definitions)], stderr=stderr)

    assert code == EXIT_INVALID
    assert "nosuch" in stderr.getvalue()


def test_components_may_be_interleaved_with_options(
    tmp_path: Path, make_source, capsys: pytest.CaptureFixture[str]
) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)

    code = main(["order", "linux", "zlib", "--definitions", str(definitions), "apk-tools"])

    assert code == EXIT_OK
    assert capsys.readouterr().out.split() == ["zlib", "openssl", "apk-tools"]


def test_unrecognized_option_is_a_usage_error(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)

    with pytest.raises(SystemExit) as excinfo:
        main(["order", "linux", "zlib", "--definitions", str(definitions), "--bogus"])

    assert excinfo.value.code == 2


def test_project_file_supplies_components_and_install_dir(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)
    project = tmp_path / "project.json"
    project.write_text(
        json.dumps(
            {
                "name": "nikos",
                "install_dir": str(tmp_path / "project-prefix"),
                "dependencies": [{"name": "openssl", "platforms": ["linux"]}],
            }
        )
    )

    code = main(
        [
            "build",
            "linux",
            "--definitions",
            str(definitions),
            "--project",
            str(project),
            "--cache-dir",
            str(tmp_path / "cache"),
            "--work-dir",
            str(tmp_path / "work"),
        ],
        stderr=io.StringIO(),
    )

    assert code == EXIT_OK
    assert (tmp_path / "project-prefix" / "embedded" / "lib" / "openssl.installed").exists()


def test_missing_install_dir_is_a_validation_error(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)
    stderr = io.StringIO()

    code = main(["build", "linux", "zlib", "--definitions", str(definitions)], stderr=stderr)

    assert code == EXIT_INVALID
    assert "install_dir" in stderr.getvalue()


def test_no_components_requested(tmp_path: Path, make_source) -> None:
    definitions = _definitions(tmp_path, make_source, openssl_script=INSTALL)

    code = main(["order", "linux", "--definitions", str(definitions)], stderr=io.StringIO())

    assert code == EXIT_INVALID


def test_offline_build_fails_on_cache_miss(tmp_path: Path) -> None:
    definitions = tmp_path / "definitions"
    definitions.mkdir()
    (definitions / "zstd.json").write_text(
        json.dumps(
            {
                "name": "zstd",
                "default_version": "1.4.5",
                "versions": {
                    "1.4.5": {
                        "url": "https://example.invalid/zstd-1.4.5.tar.gz",
                        "sha256": "98e91c7c6bf162bf90e4e70fdbc41a8188b9fa8de5ad840c401198014406ce9e",
                    }
                },
            }
        )
    )
    stderr = io.StringIO()

    code = main([*_build_args(tmp_path, definitions), "--offline", "zstd"], stderr=stderr)

    assert code == EXIT_BUILD_FAILED
    assert "disabled by policy" in stderr.getvalue()


def _build_args(tmp_path: Path, definitions: Path) -> list[str]:
    return [
        "build",
        "linux",
        "--definitions",
        str(definitions),
        "--install-dir",
        str(tmp_path / "opt"),
        "--cache-dir",
        str(tmp_path / "cache"),
        "--work-dir",
        str(tmp_path / "work"),
        "--jobs",
        "1",
        "--workers",
        "2",
    ]


def _definitions(tmp_path: Path, make_source, *, openssl_script: str) -> Path:
    definitions = tmp_path / "definitions"
    definitions.mkdir()
    recipes = {
        "zlib": ([], INSTALL),
        "openssl": (["zlib"], openssl_script),
        "apk-tools": (["zlib", "openssl"], INSTALL),
    }
    for name, (dependencies, script) in recipes.items():
        source = make_source(name)
        payload = {
            "name": name,
            "default_version": "1.0",
            "versions": {"1.0": {"url": source.url, "sha256": source.sha256}},
            "dependencies": dependencies,
            "build_steps": [{"kind": "shell", "script": script}],
        }
        (definitions / f"{name}.json").write_text(json.dumps(payload))
    return definitions
