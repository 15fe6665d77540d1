import json

import pytest

from shipyard_common.config import Settings, load_projects
from shipyard_common.errors import ValidationError
from shipyard_common.models import DeploymentRequest, DeploymentStatus, OverallStatus, ProjectStage, ProjectStageStatus

pytestmark = pytest.mark.unit


def test_settings_from_env_skips_empty_values():
    s = Settings.from_env({
        "SHIPYARD_QUEUE_BACKEND": "redis",
        "REDIS_URL": "redis://cache:6379/2",
        "SHIPYARD_CONCURRENT_BUILDS": "4",
        "NOTIFICATION_WEBHOOK_URL": "",
    })
    assert s.queue_backend == "redis"
    assert s.redis_url == "redis://cache:6379/2"
    assert s.concurrent_builds == 4
    assert s.max_projects == 10
    assert s.notification_webhook_url == ""


def test_load_projects(tmp_path):
    path = tmp_path / "projects.json"
    path.write_text(json.dumps({"projects": [
        {"id": "admin", "local_path": "/w/admin", "remote_path": "/var/www/admin", "proxy_location": "/admin"},
    ]}), encoding="utf-8")

    registry = load_projects(str(path))

    assert registry["admin"].branch == "main"
    assert str(registry["admin"].dist_path) == "/w/admin/dist"


def test_duplicate_project_ids_rejected(tmp_path):
    entry = {"id": "admin", "local_path": "/w", "remote_path": "/r", "proxy_location": "/admin"}
    path = tmp_path / "projects.json"
    path.write_text(json.dumps([entry, entry]), encoding="utf-8")

    with pytest.raises(ValidationError):
        load_projects(str(path))


def test_request_accepts_wire_names():
    req = DeploymentRequest.model_validate({
        "projectIds": ["a"], "branch": "main", "triggerBy": "ci",
        "metadata": {"buildType": "production", "priority": "low", "ticket": "OPS-1"},
    })
    assert req.projects == ["a"]
    assert req.metadata.build_type == "production"


def test_overall_is_derived_from_project_stages():
    def status(*stages):
        return DeploymentStatus(
            deployment_id="d",
            projects={str(i): ProjectStageStatus(stage=s) for i, s in enumerate(stages)},
        )

    assert status(ProjectStage.COMPLETED, ProjectStage.COMPLETED).derive_overall() == OverallStatus.COMPLETED
    assert status(ProjectStage.COMPLETED, ProjectStage.FAILED).derive_overall() == OverallStatus.PARTIAL_SUCCESS
    assert status(ProjectStage.FAILED, ProjectStage.FAILED).derive_overall() == OverallStatus.FAILED
