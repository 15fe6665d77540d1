from shipyard_common.config import Settings
from shipyard_common.logging import get_logger, setup_logging

from shipyard_worker.runtime import build_runtime

log = get_logger(__name__)


def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_format)
    if settings.queue_backend != "redis":
        raise SystemExit("the standalone worker needs SHIPYARD_QUEUE_BACKEND=redis; "
                         "with the memory backend the API process runs deployments itself")
    rt = build_runtime(settings)
    rt.register()
    log.info("worker_starting", queues=[q.name for q in rt.queue.queues])
    rt.queue.work()


if __name__ == "__main__":
    main()
