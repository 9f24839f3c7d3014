"""Archive extraction into per-component working directories."""

from __future__ import annotations

import shutil
import tarfile
import zipfile
from pathlib import Path

from omnibuild.errors import FetchError


def extract_archive(
    archive: str | Path,
    destination: str | Path,
    *,
    relative_path: str | None = None,
) -> Path:
    """Unpack ``archive`` under ``destination`` and return the source tree.

    The source tree is ``relative_path`` when given, else the single top-level
    directory of the archive, else ``destination`` itself. Plain files that
    are not archives are copied as-is.
    """
    archive_path = Path(archive)
    root = Path(destination)
    root.mkdir(parents=True, exist_ok=True)
    try:
        if tarfile.is_tarfile(archive_path):
            with tarfile.open(archive_path, mode="r:*") as bundle:
                bundle.extractall(root, filter="data")
        elif zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path) as bundle:
                _check_zip_members(bundle, root)
                bundle.extractall(root)
        else:
            shutil.copy2(archive_path, root / archive_path.name)
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as exc:
        raise FetchError(
            "Unable to extract source archive.",
            hint="The archive may be truncated; clear its cache entry and refetch.",
            context={"path": str(archive_path), "error": str(exc)},
        ) from exc

    if relative_path:
        tree = root / relative_path
        if not tree.is_dir():
            raise FetchError(
                "Archive does not contain the expected source directory.",
                hint="Fix the component's relative_path.",
                context={"path": str(archive_path), "relative_path": relative_path},
            )
        return tree
    entries = list(root.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return root


def _check_zip_members(bundle: zipfile.ZipFile, root: Path) -> None:
    resolved_root = root.resolve()
    for member in bundle.namelist():
        target = (root / member).resolve()
        if not target.is_relative_to(resolved_root):
            raise FetchError(
                "Archive member escapes the extraction directory.",
                context={"member": member},
            )
