"""
Pipeline driver for ``build-and-deploy`` jobs.

The stage sequence is a langgraph state graph. Every node returns a stage
result; anything but ``Ok`` routes to the failure exit, which cleans up,
records the failure and notifies. The job's outcome for the task queue is
decided from the final result only (see ``results.raise_for``).

    initialize -> cloning -> building -> resolving -> uploading -> configuring -> completing
    (any of them) -> failing
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, TypedDict

from langgraph.graph import END, StateGraph
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from shipyard_common.config import ProjectConfig, Settings
from shipyard_common.errors import (
    FatalStageError,
    UnrecoverableError,
    ValidationError,
    VerificationError,
)
from shipyard_common.logging import get_logger
from shipyard_common.models import BuildAndDeploy, NotificationEvent, ProjectStage, UploadTarget
from shipyard_common.queue.base import JobRecord, ProgressFn
from shipyard_common.reporter import DeploymentTracker, StatusReporter
from shipyard_common.utils import chunked

from .adapters.base import ArtifactTransfer, Builder, Notifier, ProxyControl, SourceAcquirer, TargetResolver
from .backup import guarded_mutation, target_lock
from .results import Fatal, Ok, Retryable, StageResult, raise_for

log = get_logger(__name__)

# coarse job progress reported at stage boundaries
PROGRESS = {
    "initialize": 5,
    "cloning": 20,
    "building": 50,
    "resolving": 60,
    "uploading": 80,
    "configuring": 90,
    "completing": 100,
}

SEQUENCE = ["initialize", "cloning", "building", "resolving", "uploading", "configuring", "completing"]


@dataclass
class Adapters:
    source: SourceAcquirer
    builder: Builder
    resolver: TargetResolver
    transfer: ArtifactTransfer
    proxy: ProxyControl
    notifier: Notifier


@dataclass
class Run:
    """Everything one pipeline execution owns."""
    deployment: BuildAndDeploy
    tracker: DeploymentTracker
    progress: ProgressFn
    projects: Dict[str, ProjectConfig] = field(default_factory=dict)
    artifacts: Dict[str, Path] = field(default_factory=dict)
    target: Optional[UploadTarget] = None
    stage: str = "initialize"
    attempt: int = 1
    max_attempts: int = 1

    @property
    def deployment_id(self) -> str:
        return self.deployment.deployment_id


class RunState(TypedDict, total=False):
    run: Run
    outcome: Any


def _stage(name: str):
    """Wrap a node: bind logging context, turn stray exceptions into results, report progress on Ok."""

    def deco(fn):
        # no functools.wraps: langgraph takes the input schema from the
        # signature, which must stay (state: RunState)
        async def node(self, state: RunState) -> RunState:
            run = state["run"]
            run.stage = name
            slog = log.bind(deployment_id=run.deployment_id, stage=name)
            try:
                outcome = await fn(self, run)
            except UnrecoverableError as e:
                slog.error("stage_fatal", error=str(e))
                outcome = Fatal(e)
            except Exception as e:
                slog.exception("stage_error")
                outcome = Retryable(e)
            if isinstance(outcome, Ok):
                run.progress(PROGRESS[name])
                slog.info("stage_done")
            return {"outcome": outcome}

        node.__name__ = fn.__name__
        node.__qualname__ = fn.__qualname__
        node.__doc__ = fn.__doc__
        return node

    return deco


class PipelineDriver:
    job_type = "build-and-deploy"

    def __init__(self, settings: Settings, projects: Mapping[str, ProjectConfig], adapters: Adapters,
                 reporter: StatusReporter, upload_wait=None):
        self.settings = settings
        self.projects = projects
        self.adapters = adapters
        self.reporter = reporter
        self.upload_wait = upload_wait or wait_exponential(multiplier=1, max=10)
        self.graph = self._build_graph()

    def _build_graph(self):
        g = StateGraph(RunState)
        for name in SEQUENCE:
            g.add_node(name, getattr(self, name))
        g.add_node("failing", self.failing)

        g.set_entry_point("initialize")
        for cur, nxt in zip(SEQUENCE, SEQUENCE[1:]):
            g.add_conditional_edges(cur, self._route_to(nxt), {nxt: nxt, "failing": "failing"})
        g.add_edge("completing", END)
        g.add_edge("failing", END)
        return g.compile()

    @staticmethod
    def _route_to(nxt: str):
        def route(state: RunState) -> str:
            return nxt if isinstance(state.get("outcome"), Ok) else "failing"
        return route

    async def handle(self, job: JobRecord, progress: ProgressFn) -> Any:
        """Task queue processor entry point."""
        deployment: BuildAndDeploy = job.payload
        attempt = max(job.attempts, 1)
        run = Run(
            deployment=deployment,
            tracker=self.reporter.track(deployment, attempt=attempt),
            progress=progress,
            attempt=attempt,
            max_attempts=max(job.max_attempts, attempt),
        )
        final = await self.graph.ainvoke({"run": run, "outcome": Ok()})
        return raise_for(final["outcome"])

    # -- stages --------------------------------------------------------

    @_stage("initialize")
    async def initialize(self, run: Run) -> StageResult:
        ids = run.deployment.projects
        if not ids:
            return Fatal(ValidationError("deployment has no projects"))
        if len(ids) > self.settings.max_projects:
            return Fatal(ValidationError(f"deployment has {len(ids)} projects, max is {self.settings.max_projects}"))
        unknown = [pid for pid in ids if pid not in self.projects]
        if unknown:
            return Fatal(ValidationError(f"unknown projects: {', '.join(unknown)}"))
        run.projects = {pid: self.projects[pid] for pid in ids}
        run.tracker.start()
        return Ok()

    @_stage("cloning")
    async def cloning(self, run: Run) -> StageResult:
        t = run.tracker
        ids = t.active()
        t.stage(ids, ProjectStage.CLONING, "acquiring source")
        results = await asyncio.gather(
            *(self.adapters.source.acquire(run.projects[pid], run.deployment.branch, run.deployment.commit_ref)
              for pid in ids),
            return_exceptions=True,
        )
        failed = []
        for pid, res in zip(ids, results):
            if isinstance(res, BaseException):
                t.fail_project(pid, "source acquisition failed", str(res))
                failed.append(pid)
            else:
                t.project(pid, ProjectStage.CLONING, "source ready", 100)
        if failed:
            # an incomplete source set never reaches the build stage
            return Retryable(FatalStageError(f"source acquisition failed for {', '.join(failed)}", "cloning"))
        return Ok()

    @_stage("building")
    async def building(self, run: Run) -> StageResult:
        t = run.tracker
        ids = t.active()
        t.stage(ids, ProjectStage.BUILDING, "waiting for build slot")
        for chunk in chunked(ids, self.settings.concurrent_builds):
            for pid in chunk:
                t.project(pid, ProjectStage.BUILDING, "building", 10)
            results = await asyncio.gather(
                *(self.adapters.builder.build(run.projects[pid]) for pid in chunk),
                return_exceptions=True,
            )
            for pid, res in zip(chunk, results):
                if isinstance(res, BaseException):
                    t.fail_project(pid, "build failed", str(res))
                else:
                    run.artifacts[pid] = res
                    t.project(pid, ProjectStage.BUILDING, "build complete", 100)
                    t.record("info", "build complete", project_id=pid, artifact=str(res))
        failed = t.failed()
        if failed:
            return Retryable(FatalStageError(f"build failed for {', '.join(failed)}", "building"))
        return Ok()

    @_stage("resolving")
    async def resolving(self, run: Run) -> StageResult:
        first = run.tracker.active()[0]
        try:
            run.target = await self.adapters.resolver.resolve_target(run.deployment_id, first)
        except Exception as e:
            run.tracker.record("error", "upload target resolution failed", error=str(e))
            if isinstance(e, FatalStageError):
                return Retryable(e)
            return Retryable(FatalStageError(f"upload target resolution failed: {e}", "resolving"))
        run.tracker.record("info", "upload target resolved", host=run.target.host)
        return Ok()

    async def _upload_one(self, run: Run, pid: str) -> None:
        project = run.projects[pid]
        artifact = run.artifacts[pid]
        transfer = self.adapters.transfer
        ulog = log.bind(deployment_id=run.deployment_id, project_id=pid, stage="uploading")

        async def mutate():
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.settings.upload_attempts)),
                wait=self.upload_wait,
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        ulog.warning("upload_retry", attempt=attempt.retry_state.attempt_number)
                    await transfer.upload(artifact, project.remote_path, run.target)

        async def verify():
            # the transfer's own success is the check
            return None

        target = transfer.snapshot_target(project.remote_path, run.target)
        await guarded_mutation(target, mutate, verify, keep=self.settings.backup_keep)

    @_stage("uploading")
    async def uploading(self, run: Run) -> StageResult:
        t = run.tracker
        ids = t.active()
        t.stage(ids, ProjectStage.UPLOADING, "uploading artifacts")
        results = await asyncio.gather(*(self._upload_one(run, pid) for pid in ids), return_exceptions=True)
        for pid, res in zip(ids, results):
            if isinstance(res, BaseException):
                note = "previous version restored" if getattr(res, "rolled_back", False) else "no rollback"
                t.fail_project(pid, f"upload failed ({note})", str(res))
            else:
                t.project(pid, ProjectStage.UPLOADING, "uploaded", 100)
        if not t.active():
            return Retryable(FatalStageError("every upload failed", "uploading"))
        return Ok()

    @_stage("configuring")
    async def configuring(self, run: Run) -> StageResult:
        t = run.tracker
        ids = t.active()
        proxy = self.adapters.proxy
        t.stage(ids, ProjectStage.CONFIGURING, "reconfiguring proxy")

        async def verify():
            await proxy.validate_config()
            await proxy.reload()

        # one proxy serves every registered project, so the config always lists all of them
        text = proxy.generate_config(self.projects.values(), run.target.host)
        try:
            async with target_lock(proxy.config_path):
                await guarded_mutation(
                    proxy.snapshot_target(),
                    lambda: proxy.apply_config(text),
                    verify,
                    keep=self.settings.backup_keep,
                )
        except VerificationError as e:
            note = "previous config restored" if e.rolled_back else "previous config NOT restored"
            for pid in ids:
                t.fail_project(pid, f"proxy reconfiguration failed ({note})", str(e))
            return Retryable(FatalStageError(f"proxy reconfiguration failed: {e}", "configuring"))
        return Ok()

    @_stage("completing")
    async def completing(self, run: Run) -> StageResult:
        t = run.tracker
        done = t.active()
        for pid in done:
            t.project(pid, ProjectStage.COMPLETED, "deployed", 100)
        failed = t.failed()
        message = f"deployed {len(done)}/{len(run.deployment.projects)} projects"
        overall = t.complete(message)
        await self._notify(run, NotificationEvent(
            deployment_id=run.deployment_id,
            project_ids=list(run.deployment.projects),
            branch=run.deployment.branch,
            commit_ref=run.deployment.commit_ref,
            status="success" if not failed else "partial_success",
            server_host=run.target.host if run.target else None,
            artifacts={pid: run.projects[pid].remote_path for pid in done},
            failed_projects=failed,
        ))
        return Ok({"deployment_id": run.deployment_id, "overall": overall.value, "completed": done,
                   "failed": failed})

    async def failing(self, state: RunState) -> RunState:
        """Failure exit. The record only turns `failed` when the queue will not run the job again."""
        run: Run = state["run"]
        outcome = state.get("outcome")
        error = getattr(outcome, "error", None)
        final = (isinstance(outcome, Fatal) or isinstance(error, UnrecoverableError)
                 or run.attempt >= run.max_attempts)
        flog = log.bind(deployment_id=run.deployment_id, stage=run.stage, attempt=run.attempt)
        if final:
            flog.error("deployment_failed", error=str(error))
        else:
            flog.warning("deployment_attempt_failed", error=str(error), max_attempts=run.max_attempts)

        for pid in run.deployment.projects:
            project = self.projects.get(pid)
            if project is None:
                continue
            try:
                await self.adapters.builder.discard(project)
            except Exception:
                flog.exception("artifact_cleanup_failed", project_id=pid)

        try:
            if final:
                run.tracker.fail(f"deployment failed during {run.stage}: {error}")
            else:
                run.tracker.schedule_retry(
                    f"attempt {run.attempt}/{run.max_attempts} failed during {run.stage}: {error}; retry scheduled",
                    error=str(error),
                )
        except Exception:
            flog.exception("status_write_failed")

        if not final:
            return {"outcome": outcome}

        await self._notify(run, NotificationEvent(
            deployment_id=run.deployment_id,
            project_ids=list(run.deployment.projects),
            branch=run.deployment.branch,
            commit_ref=run.deployment.commit_ref,
            status="failure",
            server_host=run.target.host if run.target else None,
            failed_projects=run.tracker.failed() or list(run.deployment.projects),
            error=str(error),
        ))
        return {"outcome": outcome}

    async def _notify(self, run: Run, event: NotificationEvent) -> None:
        try:
            await self.adapters.notifier.notify(event)
        except Exception:
            log.exception("notification_failed", deployment_id=run.deployment_id)
