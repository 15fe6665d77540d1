"""
Volatile in-process task queue.

Same calls and events as the rq backend, nothing survives a restart. Jobs
are dispatched by an asyncio task; distinct job ids run concurrently with no
global cap, a single id is never active twice.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import threading
import uuid
from typing import Any, Dict, List, Optional

from ..errors import UnrecoverableError
from ..logging import get_logger
from ..utils import utc_now
from .base import (
    EventEmitter,
    Handler,
    JobHandle,
    JobOptions,
    JobRecord,
    JobStatus,
    validate_payload,
)

log = get_logger(__name__)


class MemoryTaskQueue(EventEmitter):
    def __init__(self, keep_completed: int = 10, keep_failed: int = 5):
        super().__init__()
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._lock = threading.Lock()
        self._jobs: Dict[str, JobRecord] = {}
        self._heap: List[tuple] = []
        self._seq = itertools.count()
        self._processors: Dict[str, Handler] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task] = None

    # -- producer side -------------------------------------------------

    def enqueue(self, job_type: str, payload: Any, options: Optional[JobOptions] = None) -> JobHandle:
        model = validate_payload(job_type, payload)
        opts = options or JobOptions()
        job_id = opts.job_id or getattr(model, "deployment_id", None) or uuid.uuid4().hex
        with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None and existing.status in (JobStatus.WAITING, JobStatus.ACTIVE):
                return JobHandle(job_id, job_type, created=False)
            record = JobRecord(
                id=job_id,
                job_type=job_type,
                payload=model,
                priority=opts.priority,
                max_attempts=max(1, opts.max_attempts),
                backoff=opts.backoff,
            )
            self._jobs[job_id] = record
            self._push(record)
        log.info("job_enqueued", job_id=job_id, job_type=job_type, priority=opts.priority.value)
        self._notify()
        return JobHandle(job_id, job_type, created=True)

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_by_status(self, status: JobStatus) -> List[JobRecord]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.status == status]
        return sorted(jobs, key=lambda j: j.enqueued_at)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobStatus}
        with self._lock:
            for j in self._jobs.values():
                out[j.status.value] += 1
        return out

    def register_processor(self, job_type: str, handler: Handler) -> None:
        self._processors[job_type] = handler
        self._notify()

    def ping(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    # -- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        self._wakeup.set()

    async def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self, poll: float = 0.005) -> None:
        """Block until no job is waiting or active."""
        while True:
            with self._lock:
                busy = any(j.status in (JobStatus.WAITING, JobStatus.ACTIVE) for j in self._jobs.values())
            if not busy:
                return
            await asyncio.sleep(poll)

    # -- dispatch ------------------------------------------------------

    def _push(self, record: JobRecord) -> None:
        heapq.heappush(self._heap, (-record.priority.weight, next(self._seq), record))

    def _notify(self) -> None:
        if self._loop is not None and self._wakeup is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)

    async def _dispatch_loop(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            for record in self._take_ready():
                self._tasks[record.id] = asyncio.create_task(self._execute(record))

    def _take_ready(self) -> List[JobRecord]:
        ready, parked = [], []
        with self._lock:
            while self._heap:
                entry = heapq.heappop(self._heap)
                record = entry[2]
                if self._jobs.get(record.id) is not record or record.status != JobStatus.WAITING:
                    continue
                if record.job_type not in self._processors:
                    parked.append(entry)
                    continue
                record.status = JobStatus.ACTIVE
                ready.append(record)
            for entry in parked:
                heapq.heappush(self._heap, entry)
        return ready

    def _report_progress(self, record: JobRecord):
        def progress(value: int) -> None:
            record.progress = max(0, min(100, int(value)))
            self._emit("progress", record, record.progress)
        return progress

    async def _execute(self, record: JobRecord) -> None:
        handler = self._processors[record.job_type]
        record.attempts += 1
        record.progress = 0
        record.started_at = utc_now()
        record.error = None
        jlog = log.bind(job_id=record.id, attempt=record.attempts)
        try:
            result = await handler(record, self._report_progress(record))
        except asyncio.CancelledError:
            with self._lock:
                record.status = JobStatus.WAITING
            jlog.warning("job_stalled")
            self._emit("stalled", record)
            raise
        except Exception as exc:
            record.error = str(exc)
            retry = not isinstance(exc, UnrecoverableError) and record.attempts < record.max_attempts
            if retry:
                delay = record.backoff.delay_for(record.attempts)
                with self._lock:
                    record.status = JobStatus.WAITING
                jlog.warning("job_retry_scheduled", delay=delay, error=str(exc))
                self._timers[record.id] = self._loop.call_later(delay, self._requeue, record)
            else:
                with self._lock:
                    record.status = JobStatus.FAILED
                    record.finished_at = utc_now()
                jlog.error("job_failed", error=str(exc))
                self._emit("failed", record, exc)
                self._prune()
        else:
            with self._lock:
                record.status = JobStatus.COMPLETED
                record.finished_at = utc_now()
            jlog.info("job_completed")
            self._emit("completed", record, result)
            self._prune()
        finally:
            self._tasks.pop(record.id, None)

    def _requeue(self, record: JobRecord) -> None:
        self._timers.pop(record.id, None)
        with self._lock:
            if self._jobs.get(record.id) is not record or record.status != JobStatus.WAITING:
                return
            self._push(record)
        self._wakeup.set()

    def _prune(self) -> None:
        with self._lock:
            for status, keep in ((JobStatus.COMPLETED, self.keep_completed), (JobStatus.FAILED, self.keep_failed)):
                done = sorted(
                    (j for j in self._jobs.values() if j.status == status),
                    key=lambda j: j.finished_at,
                )
                for j in done[: max(0, len(done) - keep)]:
                    del self._jobs[j.id]
