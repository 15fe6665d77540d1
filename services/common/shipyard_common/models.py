from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .utils import utc_now


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return {"low": 1, "normal": 5, "high": 10}[self.value]


class ProjectStage(str, Enum):
    PENDING = "pending"
    CLONING = "cloning"
    BUILDING = "building"
    UPLOADING = "uploading"
    CONFIGURING = "configuring"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ProjectStage.COMPLETED, ProjectStage.FAILED)


# success path order; FAILED is reachable from any non-terminal stage
STAGE_ORDER = [
    ProjectStage.PENDING,
    ProjectStage.CLONING,
    ProjectStage.BUILDING,
    ProjectStage.UPLOADING,
    ProjectStage.CONFIGURING,
    ProjectStage.COMPLETED,
]


class OverallStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_SUCCESS = "partial_success"


class ProjectStageStatus(BaseModel):
    stage: ProjectStage = ProjectStage.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    error: Optional[str] = None


class DeploymentStatus(BaseModel):
    deployment_id: str
    overall: OverallStatus = OverallStatus.PENDING
    projects: Dict[str, ProjectStageStatus] = Field(default_factory=dict)
    message: str = ""
    attempt: int = 1
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None

    def derive_overall(self) -> OverallStatus:
        stages = [p.stage for p in self.projects.values()]
        if stages and all(s == ProjectStage.COMPLETED for s in stages):
            return OverallStatus.COMPLETED
        if any(s == ProjectStage.COMPLETED for s in stages):
            return OverallStatus.PARTIAL_SUCCESS
        return OverallStatus.FAILED


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    level: Literal["debug", "info", "warn", "error"] = "info"
    message: str
    data: Optional[Dict[str, Any]] = None


class DeploymentMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    build_type: Optional[Literal["development", "staging", "production"]] = Field(default=None, alias="buildType")
    priority: Priority = Priority.NORMAL


class DeploymentRequest(BaseModel):
    """Inbound trigger. Accepts the multi-project form and the legacy single-project form."""

    model_config = ConfigDict(populate_by_name=True)

    project_ids: Optional[List[str]] = Field(default=None, alias="projectIds")
    project_id: Optional[str] = Field(default=None, alias="projectId", min_length=1, max_length=100)
    branch: str = Field(..., min_length=1, max_length=100)
    commit_hash: Optional[str] = Field(default=None, alias="commitHash", min_length=7, max_length=40)
    triggered_by: str = Field(..., alias="triggerBy", min_length=1, max_length=100)
    timestamp: Optional[str] = None
    metadata: DeploymentMetadata = Field(default_factory=DeploymentMetadata)

    @model_validator(mode="after")
    def _one_project_form(self):
        if self.project_ids is not None and self.project_id is not None:
            raise ValueError("give either project_ids or project_id, not both")
        if self.project_ids is None and self.project_id is None:
            raise ValueError("project_ids is required")
        for pid in self.project_ids or []:
            if not pid or len(pid) > 100:
                raise ValueError(f"invalid project id: {pid!r}")
        return self

    @property
    def projects(self) -> List[str]:
        if self.project_ids is not None:
            return list(self.project_ids)
        return [self.project_id]


class BuildAndDeploy(BaseModel):
    """Payload of the ``build-and-deploy`` job type. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["build-and-deploy"] = "build-and-deploy"
    deployment_id: str
    projects: List[str] = Field(..., min_length=1)
    branch: str
    commit_ref: Optional[str] = None
    triggered_by: str
    priority: Priority = Priority.NORMAL
    build_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class UploadTarget(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    host: str
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    key_path: Optional[str] = Field(default=None, alias="keyPath")
    deploy_path: str = Field(..., alias="deployPath")
    backup_path: Optional[str] = Field(default=None, alias="backupPath")


class NotificationEvent(BaseModel):
    deployment_id: str
    project_ids: List[str]
    branch: str
    commit_ref: Optional[str] = None
    status: Literal["success", "failure", "partial_success"]
    server_host: Optional[str] = None
    artifacts: Dict[str, str] = Field(default_factory=dict)
    failed_projects: List[str] = Field(default_factory=list)
    error: Optional[str] = None
