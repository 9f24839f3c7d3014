import hashlib
import io
import tarfile
from pathlib import Path

import pytest

from omnibuild.errors import FetchError, MismatchError, PolicyError
from omnibuild.fetch import SourceFetcher, extract_archive, file_sha256, register_scheme, verify
from omnibuild.models import SourceDescriptor
from omnibuild.policy import Policy


def test_fetch_then_verify_round_trip(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path, b"zstd source")
    fetcher = SourceFetcher(tmp_path / "cache")

    archive = fetcher.fetch(descriptor)
    verify(archive, descriptor.sha256)

    assert file_sha256(archive) == descriptor.sha256
    assert archive.parent == tmp_path / "cache" / descriptor.sha256


def test_corrupted_byte_fails_verification(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path, b"zstd source")
    archive = SourceFetcher(tmp_path / "cache").fetch(descriptor)

    payload = bytearray(archive.read_bytes())
    payload[0] ^= 0xFF
    archive.write_bytes(bytes(payload))

    with pytest.raises(MismatchError) as excinfo:
        verify(archive, descriptor.sha256)
    assert excinfo.value.expected == descriptor.sha256
    assert excinfo.value.actual == hashlib.sha256(bytes(payload)).hexdigest()


def test_fetch_is_served_from_cache_by_digest(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path, b"original")
    fetcher = SourceFetcher(tmp_path / "cache")

    first = fetcher.fetch(descriptor)
    Path(descriptor.url.removeprefix("file://")).unlink()
    second = fetcher.fetch(descriptor)

    assert first == second
    assert second.read_bytes() == b"original"


def test_fetch_copies_to_destination(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path, b"payload")
    destination = tmp_path / "dest"
    destination.mkdir()

    path = SourceFetcher(tmp_path / "cache").fetch(descriptor, destination)

    assert path == destination / "upstream.tar.gz"
    assert path.read_bytes() == b"payload"


def test_missing_source_raises_fetch_error(tmp_path: Path) -> None:
    descriptor = SourceDescriptor(url=(tmp_path / "absent.tar.gz").as_uri(), sha256="0" * 64)

    with pytest.raises(FetchError):
        SourceFetcher(tmp_path / "cache").fetch(descriptor)
    assert not list((tmp_path / "cache" / ("0" * 64)).glob("*"))


def test_unsupported_scheme_raises_fetch_error(tmp_path: Path) -> None:
    descriptor = SourceDescriptor(url="gopher://example.com/a.tar.gz", sha256="0" * 64)

    with pytest.raises(FetchError) as excinfo:
        SourceFetcher(tmp_path / "cache").fetch(descriptor)
    assert "gopher" in str(excinfo.value)


def test_offline_policy_blocks_network_but_not_cache(tmp_path: Path) -> None:
    payload = b"cached upstream"
    digest = hashlib.sha256(payload).hexdigest()
    descriptor = SourceDescriptor(url="https://example.invalid/zlib-1.2.tar.gz", sha256=digest)
    fetcher = SourceFetcher(tmp_path / "cache", policy=Policy(network_mode="offline"))

    with pytest.raises(PolicyError):
        fetcher.fetch(descriptor)

    cached = tmp_path / "cache" / digest / "zlib-1.2.tar.gz"
    cached.parent.mkdir(parents=True)
    cached.write_bytes(payload)
    assert fetcher.fetch(descriptor) == cached


def test_custom_scheme_handlers_are_pluggable(tmp_path: Path) -> None:
    payload = b"mirror content"
    digest = hashlib.sha256(payload).hexdigest()
    seen: list[str] = []

    def mirror(url: str, target: Path) -> None:
        seen.append(url)
        target.write_bytes(payload)

    fetcher = SourceFetcher(tmp_path / "cache", handlers={"mirror": mirror})
    archive = fetcher.fetch(SourceDescriptor(url="mirror://pool/zstd.tar.gz", sha256=digest))

    assert seen == ["mirror://pool/zstd.tar.gz"]
    verify(archive, digest)


def test_register_scheme_applies_to_new_fetchers(tmp_path: Path) -> None:
    register_scheme("s3test", lambda url, target: target.write_bytes(b"s3"))
    digest = hashlib.sha256(b"s3").hexdigest()

    archive = SourceFetcher(tmp_path / "cache").fetch(
        SourceDescriptor(url="s3test://bucket/key.tar", sha256=digest)
    )

    assert archive.read_bytes() == b"s3"


def test_extract_archive_returns_single_top_level_directory(tmp_path: Path) -> None:
    archive = tmp_path / "rpm-4.16.0.tar.gz"
    with tarfile.open(archive, "w:gz") as bundle:
        data = b"int main(void) { return 0; }\n"
        info = tarfile.TarInfo("rpm-4.16.0/main.c")
        info.size = len(data)
        bundle.addfile(info, io.BytesIO(data))

    tree = extract_archive(archive, tmp_path / "work")

    assert tree == tmp_path / "work" / "rpm-4.16.0"
    assert (tree / "main.c").is_file()


def test_extract_archive_rejects_missing_relative_path(tmp_path: Path) -> None:
    archive = tmp_path / "a.tar"
    with tarfile.open(archive, "w") as bundle:
        info = tarfile.TarInfo("a/file")
        bundle.addfile(info, io.BytesIO(b""))

    with pytest.raises(FetchError):
        extract_archive(archive, tmp_path / "work", relative_path="b")


def _descriptor(tmp_path: Path, payload: bytes) -> SourceDescriptor:
    source = tmp_path / "upstream.tar.gz"
    source.write_bytes(payload)
    return SourceDescriptor(url=source.as_uri(), sha256=hashlib.sha256(payload).hexdigest())
