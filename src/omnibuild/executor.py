"""Runs a component's build steps inside its source tree."""

from __future__ import annotations

import errno
import os
import re
import shlex
import shutil
import signal
import subprocess
import tempfile
import threading
from collections.abc import Mapping
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from omnibuild.environment import apply_overrides
from omnibuild.errors import BuildCancelledError, BuildStepFailedError
from omnibuild.models import (
    BuildStep,
    CommandStep,
    Component,
    CopyStep,
    EnvOverride,
    EnvStep,
    MkdirStep,
    ShellStep,
)
from omnibuild.observability import StructuredLogger
from omnibuild.prefix import InstallPrefix

TEMPLATE_PATTERN = re.compile(r"\{(\w+)\}")

EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126
EXIT_STEP_ERROR = 1


def render_template(text: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{name}`` for known names only; other braces pass through."""
    return TEMPLATE_PATTERN.sub(lambda m: variables.get(m.group(1), m.group(0)), text)


@dataclass(slots=True)
class BuildExecutor:
    """Executes build steps in order and stops at the first failure.

    Each external command runs in its own process session so the whole
    process group can be terminated. Cancellation is checked between steps;
    with ``kill_on_cancel`` a running step is terminated as well.
    """

    workers: int = 1
    log_dir: Path | None = None
    kill_on_cancel: bool = False
    poll_interval: float = 0.1
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def build(
        self,
        component: Component,
        source_tree: str | Path,
        environment: Mapping[str, str],
        install_prefix: InstallPrefix,
        *,
        platform: str,
        cancel: threading.Event | None = None,
    ) -> None:
        tree = Path(source_tree)
        variables = {
            "install_dir": str(install_prefix.root),
            "embedded_dir": str(install_prefix.embedded),
            "project_dir": str(tree),
            "name": component.name,
            "version": component.version_for(platform),
            "workers": str(self.workers),
            "platform": platform,
        }
        env = dict(environment)
        log_path = self._log_path(component.name)

        for index, step in enumerate(component.build_steps, start=1):
            if cancel is not None and cancel.is_set():
                raise BuildCancelledError(component.name, step_index=index)
            self.logger.log(
                operation="build_step_start",
                component=component.name,
                phase="build",
                step=index,
                message=f"Running {step.kind} step.",
            )
            if isinstance(step, EnvStep):
                env = apply_overrides(env, _render_overrides(step.overrides, variables))
            elif isinstance(step, (CommandStep, ShellStep)):
                self._run_process(
                    component.name,
                    index,
                    step,
                    tree=tree,
                    env=env,
                    variables=variables,
                    install_prefix=install_prefix,
                    log_path=log_path,
                    cancel=cancel,
                )
            else:
                self._run_file_step(component.name, index, step, tree=tree, variables=variables)
            self.logger.log(
                operation="build_step_complete",
                component=component.name,
                phase="build",
                step=index,
                message=f"Completed {step.kind} step.",
            )

    def _run_process(
        self,
        name: str,
        index: int,
        step: CommandStep | ShellStep,
        *,
        tree: Path,
        env: Mapping[str, str],
        variables: Mapping[str, str],
        install_prefix: InstallPrefix,
        log_path: Path | None,
        cancel: threading.Event | None,
    ) -> None:
        if isinstance(step, CommandStep):
            argv = [render_template(arg, variables) for arg in step.argv]
        else:
            argv = ["/bin/sh", "-c", render_template(step.script, variables)]
        cwd = tree / render_template(step.cwd, variables) if step.cwd else tree
        step_env = apply_overrides(env, _render_overrides(step.env, variables))
        command = shlex.join(argv)

        if not cwd.is_dir():
            raise BuildStepFailedError(
                component=name,
                step_index=index,
                exit_status=EXIT_STEP_ERROR,
                command=command,
                log_path=str(log_path or ""),
                output=f"Working directory {cwd} is not a directory.",
            )

        lock = install_prefix.shared_index_lock() if step.shared_index else nullcontext()
        with lock, _open_log(log_path) as log:
            log.write(f"$ {command}\n".encode())
            log.flush()
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=cwd,
                    env=step_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=os.name == "posix",
                )
            except OSError as exc:
                raise BuildStepFailedError(
                    component=name,
                    step_index=index,
                    exit_status=_launch_exit_status(exc),
                    command=command,
                    log_path=str(log_path or ""),
                    output=str(exc),
                ) from exc

            returncode = self._wait(process, name=name, index=index, cancel=cancel)
            if returncode != 0:
                raise BuildStepFailedError(
                    component=name,
                    step_index=index,
                    exit_status=returncode,
                    command=command,
                    log_path=str(log_path or ""),
                    output=_tail(log),
                )

    def _wait(
        self,
        process: subprocess.Popen[bytes],
        *,
        name: str,
        index: int,
        cancel: threading.Event | None,
    ) -> int:
        while True:
            try:
                return process.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set() and self.kill_on_cancel:
                    _terminate(process)
                    raise BuildCancelledError(name, step_index=index) from None

    def _run_file_step(
        self,
        name: str,
        index: int,
        step: BuildStep,
        *,
        tree: Path,
        variables: Mapping[str, str],
    ) -> None:
        try:
            if isinstance(step, MkdirStep):
                (tree / render_template(step.path, variables)).mkdir(parents=True, exist_ok=True)
            elif isinstance(step, CopyStep):
                source = tree / render_template(step.source, variables)
                destination = tree / render_template(step.destination, variables)
                destination.parent.mkdir(parents=True, exist_ok=True)
                if source.is_dir():
                    shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
                else:
                    shutil.copy2(source, destination)
        except OSError as exc:
            raise BuildStepFailedError(
                component=name,
                step_index=index,
                exit_status=EXIT_STEP_ERROR,
                command=step.kind,
                output=str(exc),
            ) from exc

    def _log_path(self, name: str) -> Path | None:
        if self.log_dir is None:
            return None
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return self.log_dir / f"{name}.log"


def _render_overrides(
    overrides: tuple[EnvOverride, ...],
    variables: Mapping[str, str],
) -> list[EnvOverride]:
    return [
        EnvOverride(
            variable=override.variable,
            action=override.action,
            value=render_template(override.value, variables),
        )
        for override in overrides
    ]


def _launch_exit_status(exc: OSError) -> int:
    """Map a failed process launch onto the exit status a shell would report."""
    if isinstance(exc, FileNotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.ENOEXEC):
        return EXIT_NOT_EXECUTABLE
    return EXIT_STEP_ERROR


def _open_log(path: Path | None) -> IO[bytes]:
    if path is None:
        return tempfile.TemporaryFile()
    return path.open("a+b")


def _tail(log: IO[bytes], limit: int = 4000) -> str:
    log.flush()
    size = log.seek(0, os.SEEK_END)
    log.seek(max(0, size - limit))
    return log.read().decode("utf-8", errors="replace")


def _terminate(process: subprocess.Popen[bytes]) -> None:
    if os.name == "posix":
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
    else:
        process.terminate()
    try:
        process.wait(timeout=10)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
        process.wait()
