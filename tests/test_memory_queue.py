import asyncio

import pytest
import pytest_asyncio

from shipyard_common.errors import UnrecoverableError, ValidationError
from shipyard_common.models import Priority
from shipyard_common.queue.base import BackoffPolicy, JobOptions, JobStatus
from shipyard_common.queue.memory import MemoryTaskQueue

pytestmark = pytest.mark.unit

JOB = "build-and-deploy"
FAST = BackoffPolicy(delay=0.01)


@pytest_asyncio.fixture
async def queue():
    q = MemoryTaskQueue(keep_completed=10, keep_failed=5)
    yield q
    await q.close()


def payload(dep_id, ids=("a",)):
    return {"deployment_id": dep_id, "projects": list(ids), "branch": "main", "triggered_by": "ci"}


def test_backoff_policy():
    p = BackoffPolicy(delay=2, max_delay=10)
    assert [p.delay_for(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 10]
    assert BackoffPolicy(kind="fixed", delay=3).intervals(3) == [3, 3, 3]


def test_enqueue_rejects_bad_payloads():
    q = MemoryTaskQueue()
    with pytest.raises(ValidationError):
        q.enqueue(JOB, {"deployment_id": "x", "projects": [], "branch": "main", "triggered_by": "ci"})
    with pytest.raises(ValidationError):
        q.enqueue("send-email", payload("x"))
    assert q.counts() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_priority_then_fifo(queue):
    order = []

    async def handler(job, progress):
        order.append(job.id)

    queue.enqueue(JOB, payload("low-1"), JobOptions(priority=Priority.LOW))
    queue.enqueue(JOB, payload("normal-1"), JobOptions(priority=Priority.NORMAL))
    queue.enqueue(JOB, payload("high-1"), JobOptions(priority=Priority.HIGH))
    queue.enqueue(JOB, payload("normal-2"), JobOptions(priority=Priority.NORMAL))
    queue.enqueue(JOB, payload("high-2"), JobOptions(priority=Priority.HIGH))
    queue.register_processor(JOB, handler)
    await queue.start()
    await queue.wait_idle()

    assert order == ["high-1", "high-2", "normal-1", "normal-2", "low-1"]


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_while_pending(queue):
    gate = asyncio.Event()
    runs = []

    async def handler(job, progress):
        runs.append(job.id)
        await gate.wait()

    queue.register_processor(JOB, handler)
    await queue.start()
    first = queue.enqueue(JOB, payload("dup"))
    await asyncio.sleep(0.01)
    assert queue.get_job("dup").status == JobStatus.ACTIVE
    second = queue.enqueue(JOB, payload("dup"))

    assert first.created and not second.created
    gate.set()
    await queue.wait_idle()
    assert runs == ["dup"]

    # terminal ids start fresh
    third = queue.enqueue(JOB, payload("dup"))
    await queue.wait_idle()
    assert third.created
    assert runs == ["dup", "dup"]


@pytest.mark.asyncio
async def test_retries_with_backoff_then_fails(queue):
    failed = []
    queue.on("failed", lambda job, err: failed.append((job.id, job.attempts, str(err))))

    async def handler(job, progress):
        raise RuntimeError(f"boom {job.attempts}")

    queue.register_processor(JOB, handler)
    await queue.start()
    queue.enqueue(JOB, payload("r"), JobOptions(max_attempts=3, backoff=FAST))
    await queue.wait_idle()

    job = queue.get_job("r")
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert failed == [("r", 3, "boom 3")]


@pytest.mark.asyncio
async def test_retry_can_succeed(queue):
    completed = []
    queue.on("completed", lambda job, result: completed.append((job.id, job.attempts, result)))

    async def handler(job, progress):
        if job.attempts < 2:
            raise RuntimeError("flaky")
        progress(100)
        return "ok"

    queue.register_processor(JOB, handler)
    await queue.start()
    queue.enqueue(JOB, payload("f"), JobOptions(max_attempts=3, backoff=FAST))
    await queue.wait_idle()

    assert completed == [("f", 2, "ok")]
    assert queue.get_job("f").progress == 100


@pytest.mark.asyncio
async def test_unrecoverable_error_skips_retries(queue):
    async def handler(job, progress):
        raise UnrecoverableError("bad payload")

    queue.register_processor(JOB, handler)
    await queue.start()
    queue.enqueue(JOB, payload("u"), JobOptions(max_attempts=5, backoff=FAST))
    await queue.wait_idle()

    assert queue.get_job("u").attempts == 1
    assert queue.get_job("u").status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_progress_events(queue):
    seen = []
    queue.on("progress", lambda job, value: seen.append(value))

    async def handler(job, progress):
        for v in (5, 50, 100):
            progress(v)

    queue.register_processor(JOB, handler)
    await queue.start()
    queue.enqueue(JOB, payload("p"))
    await queue.wait_idle()
    assert seen == [5, 50, 100]


@pytest.mark.asyncio
async def test_async_listeners_are_scheduled(queue):
    done = asyncio.Event()

    async def on_completed(job, result):
        done.set()

    async def handler(job, progress):
        return None

    queue.on("completed", on_completed)
    queue.register_processor(JOB, handler)
    await queue.start()
    queue.enqueue(JOB, payload("l"))
    await asyncio.wait_for(done.wait(), timeout=1)


@pytest.mark.asyncio
async def test_distinct_jobs_run_concurrently(queue):
    running, peak = 0, 0

    async def handler(job, progress):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1

    queue.register_processor(JOB, handler)
    await queue.start()
    for i in range(4):
        queue.enqueue(JOB, payload(f"c{i}"))
    await queue.wait_idle()
    assert peak == 4


@pytest.mark.asyncio
async def test_terminal_retention(queue):
    async def handler(job, progress):
        if job.id.startswith("bad"):
            raise UnrecoverableError("no")

    queue.keep_completed, queue.keep_failed = 2, 1
    queue.register_processor(JOB, handler)
    await queue.start()
    for i in range(4):
        queue.enqueue(JOB, payload(f"good-{i}"))
        await queue.wait_idle()
    for i in range(3):
        queue.enqueue(JOB, payload(f"bad-{i}"))
        await queue.wait_idle()

    assert [j.id for j in queue.list_by_status(JobStatus.COMPLETED)] == ["good-2", "good-3"]
    assert [j.id for j in queue.list_by_status(JobStatus.FAILED)] == ["bad-2"]
    assert queue.counts() == {"waiting": 0, "active": 0, "completed": 2, "failed": 1}


@pytest.mark.asyncio
async def test_close_reports_active_jobs_stalled():
    q = MemoryTaskQueue()
    stalled = []
    q.on("stalled", lambda job: stalled.append(job.id))

    async def handler(job, progress):
        await asyncio.sleep(10)

    q.register_processor(JOB, handler)
    await q.start()
    q.enqueue(JOB, payload("slow"))
    await asyncio.sleep(0.01)
    await q.close()

    assert stalled == ["slow"]
    assert q.get_job("slow").status == JobStatus.WAITING
