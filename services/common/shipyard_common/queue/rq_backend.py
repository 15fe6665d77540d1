"""
Durable task queue on Redis via rq.

One rq queue per priority class; workers drain them high -> normal -> low,
FIFO inside a class. Retries use rq's Retry with the job's backoff
intervals (needs the worker scheduler for delays). Events fire inside the
worker process from rq callbacks.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from redis import Redis
from rq import Callback, Queue, Retry, SimpleWorker, Worker, get_current_job
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.job import JobStatus as RqStatus

from ..errors import UnrecoverableError
from ..logging import get_logger
from ..models import Priority
from ..utils import utc_now
from .base import (
    BackoffPolicy,
    EventEmitter,
    Handler,
    JobHandle,
    JobOptions,
    JobRecord,
    JobStatus,
    validate_payload,
)

log = get_logger(__name__)

# set by RedisTaskQueue.work() in the worker process; rq resolves job
# functions by import path, so the serving queue is found through here
_bound: Optional["RedisTaskQueue"] = None

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_PENDING = {RqStatus.QUEUED, RqStatus.SCHEDULED, RqStatus.DEFERRED, RqStatus.STARTED}

_STATUS_MAP = {
    RqStatus.QUEUED: JobStatus.WAITING,
    RqStatus.SCHEDULED: JobStatus.WAITING,
    RqStatus.DEFERRED: JobStatus.WAITING,
    RqStatus.STARTED: JobStatus.ACTIVE,
    RqStatus.FINISHED: JobStatus.COMPLETED,
    RqStatus.FAILED: JobStatus.FAILED,
    RqStatus.STOPPED: JobStatus.FAILED,
    RqStatus.CANCELED: JobStatus.FAILED,
}


def _aware(dt):
    # rq stores naive UTC datetimes
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _ended(job) -> datetime:
    # expired hashes sort first
    if job is None or job.ended_at is None:
        return _EPOCH
    return _aware(job.ended_at)


def perform(job_type: str, payload: Dict[str, Any]) -> Any:
    if _bound is None:
        raise RuntimeError("No shipyard queue is bound in this worker process")
    return _bound._perform(job_type, payload)


def on_success(job, connection, result, *args, **kwargs):
    if _bound is not None:
        _bound._emit("completed", _bound._to_record(job), result)
        _trim(_bound)


def on_failure(job, connection, exc_type, exc_value, traceback, *args, **kwargs):
    if _bound is None:
        return
    if job.retries_left:
        # rq reschedules it; only the final failure is reported
        return
    _bound._emit("failed", _bound._to_record(job), exc_value)
    _trim(_bound)


def _trim(queue: RedisTaskQueue) -> None:
    # an exception escaping a success callback would fail the job in rq
    try:
        queue.trim()
    except Exception:
        log.exception("terminal_job_trim_failed")


class RedisTaskQueue(EventEmitter):
    def __init__(self, redis: Redis, name: str = "shipyard", result_ttl: int = 86400, failure_ttl: int = 86400,
                 job_timeout: int = 3600, keep_completed: int = 10, keep_failed: int = 5):
        super().__init__()
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.redis = redis
        self.name = name
        self.result_ttl = result_ttl
        self.failure_ttl = failure_ttl
        self.job_timeout = job_timeout
        # dequeue order is the order of this dict
        self._queues: Dict[Priority, Queue] = {
            p: Queue(f"{name}-{p.value}", connection=redis, default_timeout=job_timeout)
            for p in (Priority.HIGH, Priority.NORMAL, Priority.LOW)
        }
        self._processors: Dict[str, Handler] = {}

    @property
    def queues(self) -> List[Queue]:
        return list(self._queues.values())

    # -- producer side -------------------------------------------------

    def enqueue(self, job_type: str, payload: Any, options: Optional[JobOptions] = None) -> JobHandle:
        model = validate_payload(job_type, payload)
        opts = options or JobOptions()
        job_id = opts.job_id or getattr(model, "deployment_id", None)
        if job_id:
            try:
                existing = Job.fetch(job_id, connection=self.redis)
            except NoSuchJobError:
                existing = None
            if existing is not None:
                if existing.get_status() in _PENDING:
                    return JobHandle(job_id, job_type, created=False)
                existing.delete()

        max_attempts = max(1, opts.max_attempts)
        retry = None
        if max_attempts > 1:
            retry = Retry(max=max_attempts - 1, interval=opts.backoff.intervals(max_attempts - 1))
        job = self._queues[opts.priority].enqueue(
            "shipyard_common.queue.rq_backend.perform",
            job_type,
            model.model_dump(mode="json"),
            job_id=job_id,
            retry=retry,
            meta={
                "priority": opts.priority.value,
                "max_attempts": max_attempts,
                "backoff": opts.backoff.to_dict(),
                "attempts": 0,
                "progress": 0,
            },
            on_success=Callback(on_success),
            on_failure=Callback(on_failure),
            result_ttl=self.result_ttl,
            failure_ttl=self.failure_ttl,
            job_timeout=self.job_timeout,
        )
        log.info("job_enqueued", job_id=job.id, job_type=job_type, priority=opts.priority.value)
        self.trim()
        return JobHandle(job.id, job_type, created=True)

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        try:
            job = Job.fetch(job_id, connection=self.redis)
        except NoSuchJobError:
            return None
        return self._to_record(job)

    def _ids_for(self, status: JobStatus) -> List[str]:
        ids: List[str] = []
        for q in self.queues:
            if status == JobStatus.WAITING:
                ids += q.job_ids
                ids += q.scheduled_job_registry.get_job_ids()
                ids += q.deferred_job_registry.get_job_ids()
            elif status == JobStatus.ACTIVE:
                ids += q.started_job_registry.get_job_ids()
            elif status == JobStatus.COMPLETED:
                ids += q.finished_job_registry.get_job_ids()
            else:
                ids += q.failed_job_registry.get_job_ids()
        return ids

    def list_by_status(self, status: JobStatus) -> List[JobRecord]:
        ids = self._ids_for(status)
        jobs = [j for j in Job.fetch_many(ids, connection=self.redis) if j is not None]
        return sorted((self._to_record(j) for j in jobs), key=lambda r: r.enqueued_at)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobStatus}
        for q in self.queues:
            out["waiting"] += q.count + q.scheduled_job_registry.count + q.deferred_job_registry.count
            out["active"] += q.started_job_registry.count
            out["completed"] += q.finished_job_registry.count
            out["failed"] += q.failed_job_registry.count
        return out

    def trim(self) -> int:
        """Delete the oldest terminal jobs beyond the retention counts, across all priority queues."""
        removed = 0
        for attr, keep in (("finished_job_registry", self.keep_completed), ("failed_job_registry", self.keep_failed)):
            entries = [(job_id, getattr(q, attr)) for q in self.queues for job_id in getattr(q, attr).get_job_ids()]
            if len(entries) <= keep:
                continue
            jobs = Job.fetch_many([job_id for job_id, _ in entries], connection=self.redis)
            # registry scores are whole-second expiry times, so order by ended_at
            ordered = sorted(zip(entries, jobs), key=lambda e: _ended(e[1]))
            for (job_id, registry), job in ordered[: len(ordered) - keep]:
                if job is not None:
                    job.delete()
                registry.remove(job_id)
                removed += 1
        if removed:
            log.info("terminal_jobs_trimmed", count=removed)
        return removed

    def register_processor(self, job_type: str, handler: Handler) -> None:
        self._processors[job_type] = handler

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except Exception:
            return False

    async def start(self) -> None:
        # producers need no dispatcher; consumption happens in work()
        return None

    async def close(self) -> None:
        self.redis.close()

    # -- consumer side -------------------------------------------------

    def recover_stalled(self) -> int:
        """Requeue jobs whose worker died mid-run and report them stalled."""
        recovered = 0
        for q in self.queues:
            registry = q.started_job_registry
            for job_id in registry.get_expired_job_ids():
                try:
                    job = Job.fetch(job_id, connection=self.redis)
                except NoSuchJobError:
                    registry.remove(job_id)
                    continue
                self._emit("stalled", self._to_record(job))
                registry.remove(job)
                q.enqueue_job(job)
                recovered += 1
        return recovered

    def work(self, burst: bool = False, simple: bool = False, with_scheduler: bool = True) -> None:
        global _bound
        _bound = self
        recovered = self.recover_stalled()
        if recovered:
            log.warning("stalled_jobs_requeued", count=recovered)
        worker_cls = SimpleWorker if simple else Worker
        worker = worker_cls(self.queues, connection=self.redis)
        worker.work(with_scheduler=with_scheduler, burst=burst)

    def _perform(self, job_type: str, payload: Dict[str, Any]) -> Any:
        job = get_current_job()
        model = validate_payload(job_type, payload)
        handler = self._processors.get(job_type)
        if handler is None:
            job.retries_left = 0
            raise UnrecoverableError(f"No processor registered for {job_type}")
        job.meta["attempts"] = int(job.meta.get("attempts", 0)) + 1
        job.meta["progress"] = 0
        job.save_meta()
        record = self._to_record(job, payload=model)
        record.status = JobStatus.ACTIVE
        record.started_at = utc_now()

        def progress(value: int) -> None:
            record.progress = max(0, min(100, int(value)))
            job.meta["progress"] = record.progress
            job.save_meta()
            self._emit("progress", record, record.progress)

        try:
            return asyncio.run(handler(record, progress))
        except UnrecoverableError:
            job.retries_left = 0
            raise

    def _to_record(self, job: Job, payload=None) -> JobRecord:
        job_type = job.args[0]
        model = payload if payload is not None else validate_payload(job_type, job.args[1])
        meta = job.meta or {}
        enqueued_at = _aware(job.enqueued_at or job.created_at) or utc_now()
        error = None
        exc_info = getattr(job, "exc_info", None)
        if exc_info:
            lines = [ln for ln in str(exc_info).strip().splitlines() if ln.strip()]
            error = lines[-1] if lines else None
        return JobRecord(
            id=job.id,
            job_type=job_type,
            payload=model,
            status=_STATUS_MAP.get(job.get_status(), JobStatus.WAITING),
            priority=Priority(meta.get("priority", "normal")),
            max_attempts=int(meta.get("max_attempts", 1)),
            backoff=BackoffPolicy(**meta.get("backoff", {})),
            attempts=int(meta.get("attempts", 0)),
            progress=int(meta.get("progress", 0)),
            enqueued_at=enqueued_at,
            started_at=_aware(job.started_at),
            finished_at=_aware(job.ended_at),
            error=error,
        )
