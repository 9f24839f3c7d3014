"""Top-level driver: resolve the build order and run every component through the pipeline."""

from __future__ import annotations

import json
import shutil
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from omnibuild.config import BuildConfig
from omnibuild.environment import PlatformDefaults, build_environment, platform_defaults
from omnibuild.errors import (
    BuildCancelledError,
    MismatchError,
    OmnibuildError,
    RunAbortedError,
    UnknownComponentError,
)
from omnibuild.executor import BuildExecutor, render_template
from omnibuild.fetch import SourceFetcher, extract_archive, file_sha256, verify
from omnibuild.graph import DependencyGraph
from omnibuild.models import Component, Project
from omnibuild.observability import StructuredLogger
from omnibuild.patches import PatchApplier
from omnibuild.prefix import InstallPrefix, component_fingerprint


@dataclass(slots=True)
class RunReport:
    platform: str
    order: tuple[str, ...]
    built: list[str] = field(default_factory=list)
    up_to_date: list[str] = field(default_factory=list)
    inapplicable: tuple[str, ...] = ()
    report_path: Path | None = None

    @property
    def completed(self) -> list[str]:
        done = set(self.built) | set(self.up_to_date)
        return [name for name in self.order if name in done]


class ProjectAssembler:
    """Drives fetch, verify, extract, patch and build for each component in order.

    The first failing component stops the run: nothing new is scheduled,
    in-flight builds finish, and a :class:`RunAbortedError` names the failure
    and every component blocked behind it. The install prefix keeps whatever
    completed components produced; a later run skips those whose completion
    record still matches.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        config: BuildConfig,
        *,
        patches_root: str | Path | None = None,
        fetcher: SourceFetcher | None = None,
        executor: BuildExecutor | None = None,
        logger: StructuredLogger | None = None,
        cancel: threading.Event | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.graph = graph
        self.config = config
        self.patches_root = Path(patches_root) if patches_root is not None else None
        self.logger = logger or StructuredLogger()
        self.fetcher = fetcher or SourceFetcher(config.cache_dir, policy=config.policy)
        self.executor = executor or BuildExecutor(
            workers=config.workers,
            log_dir=config.work_dir / "logs",
            kill_on_cancel=config.kill_on_cancel,
            logger=self.logger,
        )
        self.cancel = cancel or threading.Event()
        self.base_env = base_env
        self.prefix = InstallPrefix(config.install_dir)

    def run_project(self, project: Project, platform: str) -> RunReport:
        return self.run(platform, project.requested_for(platform))

    def run(self, platform: str, requested: Iterable[str]) -> RunReport:
        requested_names = sorted(set(requested))
        defaults = platform_defaults(platform)
        applicable_graph = self.graph.for_platform(platform)
        inapplicable: list[str] = []
        roots: list[str] = []
        for name in requested_names:
            if name not in self.graph:
                raise UnknownComponentError(name)
            if name in applicable_graph:
                roots.append(name)
            else:
                inapplicable.append(name)
                self.logger.log(
                    operation="skip_component",
                    component=name,
                    phase="resolve",
                    message=f"Component does not apply to {platform}.",
                )
        applicable_graph.validate()
        order = applicable_graph.resolve_order(roots)
        self.logger.log(
            operation="resolve_order",
            component=None,
            phase="resolve",
            message="Resolved build order.",
            extra={"order": list(order), "platform": platform},
        )

        run = _Run(
            assembler=self,
            graph=applicable_graph,
            platform=platform,
            order=order,
            env_defaults=defaults,
        )
        report = RunReport(platform=platform, order=order, inapplicable=tuple(inapplicable))
        aborted: RunAbortedError | None = None
        try:
            failure = run.execute(report)
            if failure is not None:
                aborted = _aborted(report, applicable_graph, *failure)
        finally:
            report.report_path = self._write_report(report, requested_names, aborted)

        if aborted is not None:
            raise aborted from aborted.failure
        return report

    def _write_report(
        self,
        report: RunReport,
        requested: list[str],
        aborted: RunAbortedError | None,
    ) -> Path:
        work_dir = self.config.work_dir
        work_dir.mkdir(parents=True, exist_ok=True)
        report_path = work_dir / "report.json"
        payload = {
            "platform": report.platform,
            "requested": requested,
            "order": list(report.order),
            "completed": report.completed,
            "built": report.built,
            "up_to_date": report.up_to_date,
            "inapplicable": list(report.inapplicable),
            "failure": (
                {"component": aborted.component, **aborted.failure.to_dict()}
                if aborted is not None
                else None
            ),
            "blocked": list(aborted.blocked) if aborted is not None else [],
            "not_attempted": list(aborted.not_attempted) if aborted is not None else [],
            "logs": list(self.logger.records),
        }
        report_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        return report_path


def _aborted(
    report: RunReport,
    graph: DependencyGraph,
    failed_name: str,
    error: OmnibuildError,
) -> RunAbortedError:
    completed = report.completed
    unbuilt = [name for name in report.order if name not in completed and name != failed_name]
    dependents = graph.transitive_dependents((failed_name,))
    return RunAbortedError(
        component=failed_name,
        failure=error,
        completed=completed,
        blocked=[name for name in unbuilt if name in dependents],
        not_attempted=[name for name in unbuilt if name not in dependents],
    )


@dataclass(slots=True)
class _Run:
    assembler: ProjectAssembler
    graph: DependencyGraph
    platform: str
    order: tuple[str, ...]
    env_defaults: PlatformDefaults
    fingerprints: dict[str, str] = field(default_factory=dict)
    _prefetched: dict[str, Future[Path]] = field(default_factory=dict)

    def execute(self, report: RunReport) -> tuple[str, OmnibuildError] | None:
        self.assembler.prefix.prepare()
        for name in self.order:
            self.fingerprints[name] = self._fingerprint(self.graph.get(name))
        if self.assembler.config.jobs == 1:
            return self._execute_sequential(report)
        return self._execute_parallel(report)

    def _execute_sequential(self, report: RunReport) -> tuple[str, OmnibuildError] | None:
        for name in self.order:
            try:
                self._process(name, report)
            except OmnibuildError as exc:
                return self._failed(name, exc)
        return None

    def _execute_parallel(self, report: RunReport) -> tuple[str, OmnibuildError] | None:
        jobs = self.assembler.config.jobs
        prefix = self.assembler.prefix
        failure: tuple[str, OmnibuildError] | None = None
        done: set[str] = set()
        pending = list(self.order)
        running: dict[Future[None], str] = {}

        with (
            ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="omnibuild-fetch") as fetch_pool,
            ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="omnibuild-build") as build_pool,
        ):
            # Fetches only touch the source cache, so they run ahead of builds.
            for name in self.order:
                if not prefix.is_complete(name, self.fingerprints[name]):
                    component = self.graph.get(name)
                    self._prefetched[name] = fetch_pool.submit(self._fetch_verified, component)

            while True:
                if failure is None:
                    failure = self._prefetch_failure(pending)
                if failure is None and not self.assembler.cancel.is_set():
                    ready = [
                        name
                        for name in pending
                        if set(self.graph.get(name).dependencies) <= done
                    ]
                    for name in sorted(ready):
                        pending.remove(name)
                        running[build_pool.submit(self._process, name, report)] = name
                if not running:
                    if pending and failure is None:
                        # Cancelled before the remaining components could start.
                        failure = self._failed(pending[0], BuildCancelledError(pending[0]))
                    break
                # A failed prefetch wakes the loop as well, so a bad digest aborts
                # without waiting for the component's turn.
                fetching = [
                    self._prefetched[name]
                    for name in pending
                    if name in self._prefetched and not self._prefetched[name].done()
                ]
                finished, _ = wait([*running, *fetching], return_when=FIRST_COMPLETED)
                for future in finished:
                    if future not in running:
                        continue
                    name = running.pop(future)
                    exc = future.exception()
                    if exc is None:
                        done.add(name)
                    elif isinstance(exc, OmnibuildError):
                        if failure is None:
                            failure = self._failed(name, exc)
                    else:
                        raise exc
            fetch_pool.shutdown(cancel_futures=True)
        return failure

    def _prefetch_failure(self, pending: list[str]) -> tuple[str, OmnibuildError] | None:
        for name in pending:
            future = self._prefetched.get(name)
            if future is None or not future.done() or future.cancelled():
                continue
            exc = future.exception()
            if isinstance(exc, OmnibuildError):
                return self._failed(name, exc)
        return None

    def _process(self, name: str, report: RunReport) -> None:
        assembler = self.assembler
        component = self.graph.get(name)
        fingerprint = self.fingerprints[name]
        prefix = assembler.prefix
        if prefix.is_complete(name, fingerprint):
            report.up_to_date.append(name)
            assembler.logger.log(
                operation="component_up_to_date",
                component=name,
                phase="build",
                message="Completion record matches; skipping.",
            )
            return
        if assembler.cancel.is_set():
            raise BuildCancelledError(name)

        prefix.clear(name)
        version = component.version_for(self.platform)
        assembler.logger.log(
            operation="component_start",
            component=name,
            phase="fetch",
            message=f"Building {name} {version}.",
        )
        prefetched = self._prefetched.get(name)
        archive = prefetched.result() if prefetched is not None else self._fetch_verified(component)

        work_dir = assembler.config.work_dir / f"{name}-{version}"
        shutil.rmtree(work_dir, ignore_errors=True)
        relative_path = component.relative_path
        if relative_path is not None:
            relative_path = render_template(relative_path, {"name": name, "version": version})
        source_tree = extract_archive(archive, work_dir / "src", relative_path=relative_path)

        if component.patches:
            assembler.logger.log(
                operation="apply_patches",
                component=name,
                phase="patch",
                message=f"Applying {len(component.patches)} patch(es).",
            )
            self._patch_applier(name).apply(source_tree, component.patches)

        environment = build_environment(
            prefix,
            self.env_defaults,
            component.env_overrides,
            base=assembler.base_env,
            workers=assembler.config.workers,
        )
        assembler.executor.build(
            component,
            source_tree,
            environment,
            prefix,
            platform=self.platform,
            cancel=assembler.cancel,
        )
        source = component.source_for(self.platform)
        prefix.mark_complete(
            name,
            {
                "name": name,
                "version": version,
                "platform": self.platform,
                "sha256": source.sha256,
                "fingerprint": fingerprint,
                "license": component.license,
            },
        )
        report.built.append(name)
        assembler.logger.log(
            operation="component_complete",
            component=name,
            phase="build",
            message=f"Installed {name} {version}.",
        )

    def _fetch_verified(self, component: Component) -> Path:
        fetcher = self.assembler.fetcher
        source = component.source_for(self.platform)
        self.assembler.logger.log(
            operation="fetch_source",
            component=component.name,
            phase="fetch",
            message="Fetching source archive.",
            extra={"url": source.url, "cached": fetcher.is_cached(source)},
        )
        archive = fetcher.fetch(source)
        try:
            verify(archive, source.sha256)
        except MismatchError:
            fetcher.evict(source)
            raise
        return archive

    def _patch_applier(self, name: str) -> PatchApplier:
        root = self.assembler.patches_root
        return PatchApplier(patches_dir=root / name if root is not None else None)

    def _fingerprint(self, component: Component) -> str:
        applier = self._patch_applier(component.name)
        patch_digests: dict[str, str] = {}
        for patch in component.patches:
            path = applier.resolve(patch)
            if path.is_file():
                patch_digests[patch.path] = file_sha256(path)
        return component_fingerprint(
            component,
            platform=self.platform,
            dependency_fingerprints=self.fingerprints,
            patch_digests=patch_digests,
        )

    def _failed(self, name: str, exc: OmnibuildError) -> tuple[str, OmnibuildError]:
        self.assembler.logger.log(
            operation="component_failed",
            component=name,
            phase="build",
            level="error",
            message=exc.message,
            extra=exc.to_dict(),
        )
        return name, exc
