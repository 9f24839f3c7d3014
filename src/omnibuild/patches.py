"""Ordered patch application against extracted source trees."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from omnibuild.errors import PatchConflictError
from omnibuild.models import PatchRef


@dataclass(slots=True)
class PatchApplier:
    """Applies patches with the system ``patch`` tool, stopping at the first conflict.

    Each patch gets a forward dry run before it touches the tree, so a failing
    patch leaves no rejects behind. A patch whose reverse applies cleanly is
    already present in the source and is reported rather than skipped.
    """

    patches_dir: Path | None = None
    tool: str = "patch"

    def resolve(self, patch: PatchRef) -> Path:
        path = Path(patch.path)
        if not path.is_absolute() and self.patches_dir is not None:
            path = self.patches_dir / path
        return path

    def apply(self, source_tree: str | Path, patches: Sequence[PatchRef]) -> list[Path]:
        tree = Path(source_tree)
        applied: list[Path] = []
        if patches and shutil.which(self.tool) is None:
            raise PatchConflictError(
                patches[0].path,
                index=1,
                hint=f"`{self.tool}` is not installed on this host.",
            )
        for index, patch in enumerate(patches, start=1):
            path = self.resolve(patch)
            if not path.is_file():
                raise PatchConflictError(
                    patch.path,
                    index=index,
                    hint=f"Patch file not found at {path}.",
                )
            check = self._run(tree, path, patch.strip, "--dry-run", "--forward")
            if check.returncode != 0:
                already_applied = (
                    self._run(tree, path, patch.strip, "--dry-run", "--reverse").returncode == 0
                )
                raise PatchConflictError(
                    patch.path,
                    index=index,
                    hint=(
                        "The patch appears to be already applied upstream; drop it from the recipe."
                        if already_applied
                        else None
                    ),
                    output=check.stdout + check.stderr,
                )
            result = self._run(tree, path, patch.strip, "--forward")
            if result.returncode != 0:
                raise PatchConflictError(
                    patch.path,
                    index=index,
                    output=result.stdout + result.stderr,
                )
            applied.append(path)
        return applied

    def _run(
        self,
        tree: Path,
        path: Path,
        strip: int,
        *flags: str,
    ) -> subprocess.CompletedProcess[str]:
        command = [
            self.tool,
            f"-p{strip}",
            "--batch",
            "--silent",
            "--fuzz=0",
            *flags,
            "-i",
            str(path.resolve()),
        ]
        return subprocess.run(
            command,
            cwd=tree,
            check=False,
            text=True,
            capture_output=True,
        )
