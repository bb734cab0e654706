# shran/engine.py
"""
engine.py - BuildEngine: spec -> resolution -> source -> provider -> pipeline -> report

ConfigError and ResolutionError abort before the workspace is touched or any process
is spawned. Source preparation errors (FetchError / GitHubError) abort before configure.
Stage failures are data in the returned BuildReport.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional, Union

from shran.executor import StageExecutor
from shran.fetcher import Fetcher
from shran.github import GitHubClient
from shran.logging import get_logger
from shran.logsink import FileLogSink
from shran.manifest import ManifestManager
from shran.pipeline import FailurePolicy, PipelineController
from shran.providers import EnvironmentProvider, select_provider
from shran.report import BuildReport
from shran.resolver import DependencyGraph, OrderedTargets, resolve
from shran.specloader import BuildSpec, load_file
from shran.workspace import PreparedSource, Workspace, prepare_source

logger = get_logger("engine")


class BuildEngine:
    def __init__(self, spec: BuildSpec, work_root: Union[str, Path, None] = None,
                 source_dir: Union[str, Path, None] = None, jobs: Optional[int] = None,
                 log_sink: Any = None, provider: Optional[EnvironmentProvider] = None,
                 github: Optional[GitHubClient] = None, fetcher: Optional[Fetcher] = None,
                 manifest: Optional[ManifestManager] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.spec = spec
        self.workspace = Workspace.for_spec(spec, work_root=work_root, source_dir=source_dir)
        self.jobs = jobs
        self.log_sink = log_sink
        self.provider = provider
        self.github = github
        self.fetcher = fetcher
        self.manifest = manifest
        self.cancel_event = cancel_event or threading.Event()
        self.controller: Optional[PipelineController] = None
        self.source: Optional[PreparedSource] = None

    @classmethod
    def from_file(cls, path: str, **kwargs: Any) -> "BuildEngine":
        return cls(load_file(path), **kwargs)

    def plan(self) -> OrderedTargets:
        return resolve(self.spec)

    def graph(self) -> DependencyGraph:
        return DependencyGraph.from_spec(self.spec)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def report(self) -> Optional[BuildReport]:
        """The in-flight (or final) report, once the pipeline has started."""
        return self.controller.report if self.controller else None

    def run(self) -> BuildReport:
        targets = self.plan()

        self.workspace.create()
        fetcher = self.fetcher or Fetcher()
        self.source = prepare_source(self.spec, self.workspace, github=self.github,
                                     fetcher=fetcher, manifest=self.manifest)

        provider = self.provider or select_provider(
            self.spec.execution_mode,
            workspace_root=self.workspace.root,
            libs_root=self.workspace.artifacts_dir,
            source_root=self.workspace.src_dir,
            image=self.spec.container_image,
        )
        sink = self.log_sink or FileLogSink(self.workspace.logs_dir)
        executor = StageExecutor(self.spec, self.workspace, sink, fetcher=fetcher, jobs=self.jobs)
        self.controller = PipelineController(self.spec, executor, policy=FailurePolicy.from_spec(self.spec),
                                             cancel_event=self.cancel_event)
        logger.info("building %s at %s (%d targets, %s mode)", self.spec.target, self.spec.source_ref,
                    len(targets), self.spec.execution_mode.value)
        report = self.controller.run_pipeline(targets, provider)
        report.write_json(str(self.workspace.logs_dir / "report.json"))
        return report


def build(spec_path: str, **kwargs: Any) -> BuildReport:
    return BuildEngine.from_file(spec_path, **kwargs).run()
