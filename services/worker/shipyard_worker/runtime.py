"""
Process composition root. Both the worker and the API build one of these at
startup; nothing below it reaches for globals or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from shipyard_common.config import ProjectConfig, Settings, load_projects
from shipyard_common.logging import get_logger
from shipyard_common.queue.base import TaskQueue, create_queue
from shipyard_common.reporter import StatusReporter
from shipyard_common.service import DeploymentService
from shipyard_common.store import JobStore, create_store
from shipyard_common.utils import read_secret_or_empty

from .adapters.build import ShellBuilder
from .adapters.git import GitSource
from .adapters.notify import WebhookNotifier
from .adapters.proxy import NginxProxy
from .adapters.target import HttpTargetResolver
from .adapters.transfer import LocalTransfer, RsyncTransfer
from .pipeline import Adapters, PipelineDriver

log = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    projects: Dict[str, ProjectConfig]
    queue: TaskQueue
    store: JobStore
    reporter: StatusReporter
    driver: PipelineDriver
    service: DeploymentService

    def register(self) -> None:
        """Make this process consume build-and-deploy jobs."""
        self.queue.register_processor(self.driver.job_type, self.driver.handle)


def default_adapters(settings: Settings) -> Adapters:
    transfer = LocalTransfer() if settings.transfer_mode == "local" else RsyncTransfer()
    return Adapters(
        source=GitSource(ssh_key_path=settings.git_ssh_key_path),
        builder=ShellBuilder(),
        resolver=HttpTargetResolver(settings.backend_url, read_secret_or_empty(settings.backend_token_file)),
        transfer=transfer,
        proxy=NginxProxy(settings.nginx_config_path, settings.nginx_test_cmd, settings.nginx_reload_cmd),
        notifier=WebhookNotifier(settings.notification_webhook_url),
    )


def _log_events(queue: TaskQueue) -> None:
    queue.on("completed", lambda job, result: log.info("job_completed", job_id=job.id, attempts=job.attempts))
    queue.on("failed", lambda job, err: log.error("job_failed", job_id=job.id, attempts=job.attempts,
                                                  error=str(err)))
    queue.on("stalled", lambda job: log.warning("job_stalled", job_id=job.id))


def build_runtime(settings: Settings, projects: Optional[Dict[str, ProjectConfig]] = None,
                  adapters: Optional[Adapters] = None, queue: Optional[TaskQueue] = None,
                  store: Optional[JobStore] = None) -> Runtime:
    projects = projects if projects is not None else load_projects(settings.projects_file)
    queue = queue or create_queue(settings)
    store = store or create_store(settings)
    reporter = StatusReporter(store)
    driver = PipelineDriver(settings, projects, adapters or default_adapters(settings), reporter)
    service = DeploymentService(settings, queue, reporter, projects)
    _log_events(queue)
    log.info(
        "runtime_ready",
        queue_backend=settings.queue_backend,
        store_backend=settings.store_backend,
        projects=sorted(projects),
    )
    return Runtime(settings, projects, queue, store, reporter, driver, service)
