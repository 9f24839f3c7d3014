"""Command-line entry point.

Usage:
    omnibuild build <platform> <component...> --definitions DIR
    omnibuild build <platform> --project FILE --definitions DIR
    omnibuild order <platform> <component...> --definitions DIR
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any, TextIO

from omnibuild.assembler import ProjectAssembler
from omnibuild.config import BuildConfig, config_from_mapping, load_config
from omnibuild.definitions import PATCHES_DIRNAME, load_definitions, load_project
from omnibuild.errors import (
    DefinitionError,
    OmnibuildError,
    RunAbortedError,
    UnknownComponentError,
    ValidationError,
)
from omnibuild.models import PLATFORMS, Project
from omnibuild.observability import StructuredLogger

EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_INVALID = 2

PROGRESS_OPERATIONS = frozenset(
    {"component_start", "component_complete", "component_up_to_date", "skip_component"}
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="omnibuild",
        description="Fetch, verify, patch and build components into a shared install prefix.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("build", "Build the requested components and their dependencies"),
        ("order", "Print the resolved build order"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("platform", choices=PLATFORMS)
        command.add_argument("components", nargs="*")
        command.add_argument("--definitions", type=Path, required=True, help="Component definitions directory")
        command.add_argument("--project", type=Path, help="Project manifest file")
        if name == "build":
            command.add_argument("--config", type=Path, help="JSON config file")
            command.add_argument("--install-dir", type=Path)
            command.add_argument("--cache-dir", type=Path)
            command.add_argument("--work-dir", type=Path)
            command.add_argument("--jobs", type=int)
            command.add_argument("--workers", type=int)
            command.add_argument("--offline", action="store_true", help="Refuse network fetches")
    return parser


def main(argv: Sequence[str] | None = None, *, stderr: TextIO | None = None) -> int:
    err = stderr or sys.stderr
    args = _parse_args(argv)
    try:
        graph = load_definitions(args.definitions)
        project = load_project(args.project) if args.project else None
        requested = _requested(args.components, project, args.platform)
        if args.command == "order":
            for name in requested:
                if name not in graph:
                    raise UnknownComponentError(name)
            applicable = graph.for_platform(args.platform)
            for name in applicable.resolve_order(n for n in requested if n in applicable):
                print(name)
            return EXIT_OK
        config = _config(args, project)
    except ValidationError as exc:
        print(f"error: {exc}", file=err)
        return EXIT_INVALID

    logger = StructuredLogger(sinks=[lambda record: _progress(record, err)])
    cancel = threading.Event()
    assembler = ProjectAssembler(
        graph,
        config,
        patches_root=args.definitions / PATCHES_DIRNAME,
        logger=logger,
        cancel=cancel,
    )
    previous = _install_interrupt_handler(cancel)
    try:
        report = assembler.run(args.platform, requested)
    except ValidationError as exc:
        print(f"error: {exc}", file=err)
        return EXIT_INVALID
    except RunAbortedError as exc:
        _print_failure(exc, err)
        return EXIT_BUILD_FAILED
    except OmnibuildError as exc:
        print(f"error: {exc}", file=err)
        return EXIT_BUILD_FAILED
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
    print(
        f"built {len(report.built)}, up to date {len(report.up_to_date)}; report: {report.report_path}",
        file=err,
    )
    return EXIT_OK


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    # Component names may follow the options; argparse stops filling a
    # positional list at the first option, so the leftovers are collected here.
    parser = build_parser()
    args, extras = parser.parse_known_args(argv)
    unknown = [item for item in extras if item.startswith("-")]
    if unknown:
        parser.error(f"unrecognized arguments: {' '.join(unknown)}")
    args.components = [*args.components, *extras]
    return args


def _requested(components: list[str], project: Project | None, platform: str) -> list[str]:
    if components:
        return components
    if project is not None:
        return list(project.requested_for(platform))
    raise DefinitionError(
        "No components requested.",
        hint="Name components on the command line or pass --project.",
    )


def _config(args: argparse.Namespace, project: Project | None) -> BuildConfig:
    overrides: dict[str, Any] = {
        "install_dir": args.install_dir,
        "cache_dir": args.cache_dir,
        "work_dir": args.work_dir,
        "jobs": args.jobs,
        "workers": args.workers,
        "network_mode": "offline" if args.offline else None,
    }
    if args.config is not None:
        return load_config(args.config, **overrides)
    payload: dict[str, Any] = {}
    if project is not None:
        payload["install_dir"] = project.install_dir
    return config_from_mapping(payload, **overrides)


def _progress(record: dict[str, Any], stream: TextIO) -> None:
    if record["operation"] in PROGRESS_OPERATIONS:
        print(f"[{record['component']}] {record['message']}", file=stream)


def _print_failure(exc: RunAbortedError, stream: TextIO) -> None:
    print(f"error: {exc.failure}", file=stream)
    print(f"failed component: {exc.component}", file=stream)
    step = exc.failure.context.get("step")
    if step:
        print(f"failed step: {step}", file=stream)
    status = exc.failure.context.get("exit_status")
    if status:
        print(f"exit status: {status}", file=stream)
    print(f"could not complete: {', '.join(exc.chain)}", file=stream)


def _install_interrupt_handler(cancel: threading.Event) -> Any:
    if threading.current_thread() is not threading.main_thread():
        return None

    def handler(signum: int, frame: object) -> None:
        cancel.set()

    return signal.signal(signal.SIGINT, handler)


if __name__ == "__main__":
    sys.exit(main())
