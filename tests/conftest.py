"""
Shared fixtures: settings pointed at tmp_path, a small project registry and
in-process fakes for every external adapter.
"""

import asyncio
from pathlib import Path

import pytest

from shipyard_common.config import ProjectConfig, Settings
from shipyard_common.errors import FatalStageError, ProjectError
from shipyard_common.models import BuildAndDeploy, UploadTarget
from shipyard_common.queue.base import JobRecord
from shipyard_common.reporter import StatusReporter
from shipyard_common.store import MemoryJobStore
from shipyard_worker.adapters.proxy import NginxProxy
from shipyard_worker.backup import DirectoryTarget
from shipyard_worker.pipeline import Adapters, PipelineDriver
from tenacity import wait_none


class FakeSource:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    async def acquire(self, project, branch, commit_ref=None):
        self.calls.append((project.id, branch, commit_ref))
        await asyncio.sleep(0)
        if project.id in self.fail:
            raise ProjectError("clone exploded", "cloning", project.id)
        Path(project.local_path).mkdir(parents=True, exist_ok=True)
        return Path(project.local_path)


class FakeBuilder:
    def __init__(self, fail=(), delay=0.01):
        self.fail = set(fail)
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.built = []
        self.discarded = []

    async def build(self, project):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if project.id in self.fail:
                raise ProjectError("compiler said no", "building", project.id)
            dist = project.dist_path
            dist.mkdir(parents=True, exist_ok=True)
            (dist / "index.html").write_text(f"<h1>{project.id}</h1>", encoding="utf-8")
            self.built.append(project.id)
            return dist
        finally:
            self.in_flight -= 1

    async def discard(self, project):
        self.discarded.append(project.id)


class FakeResolver:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def resolve_target(self, deployment_id, project_id):
        self.calls.append((deployment_id, project_id))
        if self.error:
            raise self.error
        return UploadTarget(host="web-1.internal", username="deploy", deploy_path="/var/www")


class FakeTransfer:
    """Copies into local directories so snapshots and rollback are real."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def snapshot_target(self, remote_path, target):
        return DirectoryTarget(remote_path)

    async def upload(self, artifact, remote_path, target):
        self.calls.append(remote_path)
        dst = Path(remote_path)
        if dst.exists():
            for child in dst.iterdir():
                child.unlink()
        dst.mkdir(parents=True, exist_ok=True)
        if dst.name in self.fail:
            (dst / "partial.bin").write_text("half", encoding="utf-8")
            raise ProjectError("connection reset", "uploading")
        for f in Path(artifact).iterdir():
            (dst / f.name).write_text(f.read_text(encoding="utf-8"), encoding="utf-8")


class FakeProxy(NginxProxy):
    """Real config generation and file writes; the nginx binary is simulated."""

    def __init__(self, config_path, reject_generated=False):
        super().__init__(str(config_path))
        self.reject_generated = reject_generated
        self.reloads = []
        self.validations = 0

    async def validate_config(self):
        self.validations += 1
        text = Path(self.config_path).read_text(encoding="utf-8")
        if self.reject_generated and "generated by shipyard" in text:
            raise FatalStageError("nginx: [emerg] unexpected '}'", "configuring")

    async def reload(self):
        self.reloads.append(Path(self.config_path).read_text(encoding="utf-8"))


class FakeNotifier:
    def __init__(self, error=None):
        self.events = []
        self.error = error

    async def notify(self, event):
        self.events.append(event)
        if self.error:
            raise self.error


@pytest.fixture
def settings(tmp_path):
    return Settings(
        queue_backend="memory",
        store_backend="memory",
        db_path=str(tmp_path / "shipyard.db"),
        concurrent_builds=2,
        job_backoff_seconds=0.01,
        upload_attempts=2,
        projects_file=str(tmp_path / "projects.json"),
        nginx_config_path=str(tmp_path / "nginx" / "frontend.conf"),
    )


def make_project(root: Path, pid: str) -> ProjectConfig:
    return ProjectConfig(
        id=pid,
        name=f"{pid} portal",
        repository=f"git@example.com:acme/{pid}.git",
        local_path=str(root / "src" / pid),
        remote_path=str(root / "www" / pid),
        proxy_location=f"/{pid}",
    )


@pytest.fixture
def projects(tmp_path):
    return {pid: make_project(tmp_path, pid) for pid in ("a", "b", "c", "d", "e")}


@pytest.fixture
def adapters(settings):
    return Adapters(
        source=FakeSource(),
        builder=FakeBuilder(),
        resolver=FakeResolver(),
        transfer=FakeTransfer(),
        proxy=FakeProxy(settings.nginx_config_path),
        notifier=FakeNotifier(),
    )


@pytest.fixture
def store():
    return MemoryJobStore()


@pytest.fixture
def reporter(store):
    return StatusReporter(store)


@pytest.fixture
def driver(settings, projects, adapters, reporter):
    return PipelineDriver(settings, projects, adapters, reporter, upload_wait=wait_none())


def deployment(ids, deployment_id="deploy-1-abc", **kw) -> BuildAndDeploy:
    return BuildAndDeploy(deployment_id=deployment_id, projects=list(ids), branch="main",
                          triggered_by="ci", **kw)


def job_for(dep: BuildAndDeploy, attempt: int = 1, max_attempts: int = 1) -> JobRecord:
    return JobRecord(id=dep.deployment_id, job_type="build-and-deploy", payload=dep, attempts=attempt,
                     max_attempts=max_attempts)


@pytest.fixture
def run_pipeline(driver):
    """Run one attempt, the last one by default; returns (result_or_exception, progress values)."""

    async def _run(dep: BuildAndDeploy, attempt: int = 1, max_attempts: int = 1):
        seen = []
        try:
            result = await driver.handle(job_for(dep, attempt, max_attempts), seen.append)
        except Exception as e:
            return e, seen
        return result, seen

    return _run


@pytest.fixture
def make_deployment():
    return deployment


@pytest.fixture
def make_job():
    return job_for
