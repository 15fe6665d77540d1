"""
Status query surface: the calls the HTTP layer makes into the engine.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from .config import ProjectConfig, Settings
from .errors import ValidationError
from .logging import get_logger
from .models import (
    BuildAndDeploy,
    DeploymentRequest,
    DeploymentStatus,
    LogEntry,
    OverallStatus,
    ProjectStageStatus,
)
from .queue.base import BackoffPolicy, JobOptions, JobRecord, JobStatus, TaskQueue
from .reporter import StatusReporter
from .utils import new_deployment_id

log = get_logger(__name__)

JOB_TYPE = "build-and-deploy"

_OVERALL_FROM_JOB = {
    JobStatus.WAITING: OverallStatus.PENDING,
    JobStatus.ACTIVE: OverallStatus.IN_PROGRESS,
    JobStatus.COMPLETED: OverallStatus.COMPLETED,
    JobStatus.FAILED: OverallStatus.FAILED,
}


class DeploymentService:
    def __init__(self, settings: Settings, queue: TaskQueue, reporter: StatusReporter,
                 projects: Mapping[str, ProjectConfig]):
        self.settings = settings
        self.queue = queue
        self.reporter = reporter
        self.projects = projects

    def parse_request(self, payload: Any) -> DeploymentRequest:
        if isinstance(payload, DeploymentRequest):
            return payload
        try:
            return DeploymentRequest.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid deployment request: {e}") from e

    def enqueue_deployment(self, payload: Any) -> str:
        req = self.parse_request(payload)
        projects = req.projects
        if not projects:
            raise ValidationError("At least one project id is required")
        if len(projects) > self.settings.max_projects:
            raise ValidationError(
                f"Too many projects: {len(projects)} (max {self.settings.max_projects})"
            )
        if len(set(projects)) != len(projects):
            raise ValidationError("Duplicate project ids in request")
        unknown = [p for p in projects if p not in self.projects]
        if unknown:
            raise ValidationError(f"Unknown project ids: {', '.join(unknown)}")

        deployment = BuildAndDeploy(
            deployment_id=new_deployment_id(),
            projects=projects,
            branch=req.branch,
            commit_ref=req.commit_hash,
            triggered_by=req.triggered_by,
            priority=req.metadata.priority,
            build_type=req.metadata.build_type,
        )
        handle = self.queue.enqueue(
            JOB_TYPE,
            deployment,
            JobOptions(
                priority=deployment.priority,
                max_attempts=self.settings.job_attempts,
                backoff=BackoffPolicy(delay=self.settings.job_backoff_seconds),
                job_id=deployment.deployment_id,
            ),
        )
        log.info(
            "deployment_enqueued",
            deployment_id=handle.id,
            projects=projects,
            branch=req.branch,
            triggered_by=req.triggered_by,
        )
        return handle.id

    def get_deployment_status(self, deployment_id: str) -> Optional[DeploymentStatus]:
        status = self.reporter.load(deployment_id)
        if status is not None:
            return status
        job = self.queue.get_job(deployment_id)
        if job is None:
            return None
        return self._from_job(job)

    def _from_job(self, job: JobRecord) -> DeploymentStatus:
        # the pipeline has not written a record yet (still queued, or lost it)
        payload: BuildAndDeploy = job.payload
        return DeploymentStatus(
            deployment_id=job.id,
            overall=_OVERALL_FROM_JOB[job.status],
            projects={pid: ProjectStageStatus(message="waiting to start") for pid in payload.projects},
            message=job.error or f"job {job.status.value}",
            attempt=max(job.attempts, 1),
            start_time=job.enqueued_at,
            end_time=job.finished_at,
        )

    def get_deployment_logs(self, deployment_id: str) -> List[LogEntry]:
        return self.reporter.logs(deployment_id)

    def list_deployments(self, limit: int = 20, offset: int = 0) -> List[DeploymentStatus]:
        limit = max(0, min(int(limit), 100))
        offset = max(0, int(offset))
        out: List[DeploymentStatus] = []
        for deployment_id in self.reporter.store.list_ids()[offset:offset + limit]:
            status = self.reporter.load(deployment_id)
            if status is not None:
                out.append(status)
        return out

    def get_queue_counts(self) -> Dict[str, int]:
        return self.queue.counts()

    def health(self) -> Dict[str, Any]:
        queue_ok = self.queue.ping()
        store_ok = self.reporter.store.ping()
        return {
            "ok": queue_ok and store_ok,
            "queue": {"backend": self.settings.queue_backend, "ok": queue_ok},
            "store": {"backend": self.settings.store_backend, "ok": store_ok},
            "projects": len(self.projects),
        }
