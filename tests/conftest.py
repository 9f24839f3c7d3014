"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import io
import tarfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from omnibuild.config import BuildConfig
from omnibuild.models import BuildStep, Component, ShellStep, SourceDescriptor

SourceFactory = Callable[..., SourceDescriptor]
ComponentFactory = Callable[..., Component]


@pytest.fixture
def make_source(tmp_path: Path) -> SourceFactory:
    """Write a ``<name>-<version>/`` tarball and return its descriptor."""
    upstream = tmp_path / "upstream"
    upstream.mkdir()

    def factory(
        name: str,
        version: str = "1.0",
        files: Mapping[str, str] | None = None,
    ) -> SourceDescriptor:
        archive = upstream / f"{name}-{version}.tar.gz"
        contents = files or {"README": f"{name} {version}\n"}
        with tarfile.open(archive, "w:gz") as bundle:
            for relative, text in sorted(contents.items()):
                payload = text.encode("utf-8")
                info = tarfile.TarInfo(f"{name}-{version}/{relative}")
                info.size = len(payload)
                info.mode = 0o644
                bundle.addfile(info, io.BytesIO(payload))
        digest = hashlib.sha256(archive.read_bytes()).hexdigest()
        return SourceDescriptor(url=archive.as_uri(), sha256=digest)

    return factory


@pytest.fixture
def make_component(make_source: SourceFactory) -> ComponentFactory:
    def factory(
        name: str,
        dependencies: Sequence[str] = (),
        steps: Sequence[BuildStep] | None = None,
        **kwargs: object,
    ) -> Component:
        version = "1.0"
        if steps is None:
            steps = (
                ShellStep(script="echo {name}-{version} > {embedded_dir}/lib/{name}.installed"),
            )
        return Component(
            name=name,
            default_version=version,
            versions={version: make_source(name, version)},
            dependencies=tuple(dependencies),
            build_steps=tuple(steps),
            **kwargs,  # type: ignore[arg-type]
        )

    return factory


@pytest.fixture
def build_config(tmp_path: Path) -> BuildConfig:
    return BuildConfig(
        install_dir=tmp_path / "opt" / "nikos",
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        workers=2,
    )
