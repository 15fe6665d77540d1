"""
Status Reporter.

Translates pipeline state transitions into whole-record writes to the Job
Store plus entries on the deployment's bounded log list. A tracker is owned
by exactly one pipeline execution; nothing else writes its record.
"""

from __future__ import annotations

import json
from typing import Iterable, List, Optional

from .errors import StateTransitionError
from .logging import get_logger
from .models import (
    STAGE_ORDER,
    BuildAndDeploy,
    DeploymentStatus,
    LogEntry,
    OverallStatus,
    ProjectStage,
    ProjectStageStatus,
)
from .store import JobStore
from .utils import utc_now

log = get_logger(__name__)


def check_transition(current: ProjectStage, new: ProjectStage) -> None:
    if current == new and not current.terminal:
        return
    if current.terminal:
        raise StateTransitionError(f"{current.value} is terminal, cannot move to {new.value}")
    if new == ProjectStage.FAILED:
        return
    if STAGE_ORDER.index(new) < STAGE_ORDER.index(current):
        raise StateTransitionError(f"cannot move back from {current.value} to {new.value}")


class DeploymentTracker:
    def __init__(self, store: JobStore, deployment: BuildAndDeploy, attempt: int = 1):
        self.store = store
        self.deployment = deployment
        self.status = DeploymentStatus(
            deployment_id=deployment.deployment_id,
            overall=OverallStatus.PENDING,
            projects={pid: ProjectStageStatus(message="waiting to start") for pid in deployment.projects},
            attempt=attempt,
        )
        self.log = log.bind(deployment_id=deployment.deployment_id)

    @property
    def deployment_id(self) -> str:
        return self.deployment.deployment_id

    def _persist(self) -> None:
        self.store.put_status(self.deployment_id, self.status.model_dump_json())

    def record(self, level: str, message: str, **data) -> None:
        entry = LogEntry(level=level, message=message, data=data or None)
        self.store.append_log(self.deployment_id, entry.model_dump_json(exclude_none=True))

    def start(self) -> None:
        self.status.overall = OverallStatus.IN_PROGRESS
        self.status.message = "deployment started"
        self._persist()
        self.record("info", "deployment started", projects=self.deployment.projects, attempt=self.status.attempt)

    def project(self, project_id: str, stage: ProjectStage, message: str, progress: int = 0,
                error: Optional[str] = None) -> None:
        current = self.status.projects[project_id]
        check_transition(current.stage, stage)
        self.status.projects[project_id] = ProjectStageStatus(
            stage=stage, progress=progress, message=message, error=error,
        )
        self._persist()

    def stage(self, project_ids: Iterable[str], stage: ProjectStage, message: str) -> None:
        for pid in project_ids:
            current = self.status.projects[pid]
            check_transition(current.stage, stage)
            self.status.projects[pid] = ProjectStageStatus(stage=stage, progress=0, message=message)
        self._persist()
        self.record("info", message, stage=stage.value)

    def fail_project(self, project_id: str, message: str, error: str) -> None:
        self.project(project_id, ProjectStage.FAILED, message, 0, error=error)
        self.record("error", message, project_id=project_id, error=error)
        self.log.warning("project_failed", project_id=project_id, error=error)

    def stage_of(self, project_id: str) -> ProjectStage:
        return self.status.projects[project_id].stage

    def active(self) -> List[str]:
        return [pid for pid in self.deployment.projects if self.stage_of(pid) != ProjectStage.FAILED]

    def failed(self) -> List[str]:
        return [pid for pid in self.deployment.projects if self.stage_of(pid) == ProjectStage.FAILED]

    def complete(self, message: str) -> OverallStatus:
        self.status.overall = self.status.derive_overall()
        self.status.message = message
        self.status.end_time = utc_now()
        self._persist()
        level = "info" if self.status.overall == OverallStatus.COMPLETED else "warn"
        self.record(level, message, overall=self.status.overall.value, failed=self.failed())
        return self.status.overall

    def fail(self, message: str) -> None:
        self.status.overall = OverallStatus.FAILED
        self.status.message = message
        self.status.end_time = utc_now()
        self._persist()
        self.record("error", message, failed=self.failed())

    def schedule_retry(self, message: str, error: Optional[str] = None) -> None:
        """The attempt failed but the queue runs the job again; the record stays non-terminal."""
        self.status.overall = OverallStatus.PENDING
        self.status.message = message
        self._persist()
        self.record("warn", message, failed=self.failed(), error=error)


class StatusReporter:
    def __init__(self, store: JobStore):
        self.store = store

    def track(self, deployment: BuildAndDeploy, attempt: int = 1) -> DeploymentTracker:
        return DeploymentTracker(self.store, deployment, attempt=attempt)

    def load(self, deployment_id: str) -> Optional[DeploymentStatus]:
        raw = self.store.get_status(deployment_id)
        if raw is None:
            return None
        return DeploymentStatus.model_validate_json(raw)

    def logs(self, deployment_id: str) -> List[LogEntry]:
        entries = []
        for raw in self.store.get_logs(deployment_id):
            try:
                entries.append(LogEntry.model_validate(json.loads(raw)))
            except (ValueError, TypeError):
                entries.append(LogEntry(message=raw))
        return entries
