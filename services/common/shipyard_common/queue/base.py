"""
Task queue contract shared by the volatile (in-process) and durable (rq)
backends. The pipeline only ever talks to ``TaskQueue``; which backend sits
behind it is a deployment-time setting.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..logging import get_logger
from ..models import BuildAndDeploy, Priority
from ..utils import utc_now

log = get_logger(__name__)

EVENTS = ("completed", "failed", "stalled", "progress")

# job type -> payload model; payloads are checked here, never inside handlers
JOB_TYPES: Dict[str, Type[BaseModel]] = {
    "build-and-deploy": BuildAndDeploy,
}


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BackoffPolicy:
    kind: str = "exponential"
    delay: float = 2.0
    max_delay: float = 300.0

    def delay_for(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based)."""
        if self.kind == "fixed":
            return min(self.delay, self.max_delay)
        return min(self.delay * (2 ** max(retry - 1, 0)), self.max_delay)

    def intervals(self, retries: int) -> List[int]:
        return [int(round(self.delay_for(n))) for n in range(1, retries + 1)]

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "delay": self.delay, "max_delay": self.max_delay}


@dataclass
class JobOptions:
    priority: Priority = Priority.NORMAL
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    job_id: Optional[str] = None


@dataclass
class JobRecord:
    id: str
    job_type: str
    payload: BaseModel
    status: JobStatus = JobStatus.WAITING
    priority: Priority = Priority.NORMAL
    max_attempts: int = 1
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempts: int = 0
    progress: int = 0
    enqueued_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload.model_dump(mode="json"),
            "status": self.status.value,
            "priority": self.priority.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "enqueued_at": self.enqueued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class JobHandle:
    id: str
    job_type: str
    created: bool = True


ProgressFn = Callable[[int], None]
Handler = Callable[[JobRecord, ProgressFn], Awaitable[Any]]


def validate_payload(job_type: str, payload: Any) -> BaseModel:
    model = JOB_TYPES.get(job_type)
    if model is None:
        raise ValidationError(f"Unknown job type: {job_type}")
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        raise ValidationError(f"{job_type} expects {model.__name__}, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {job_type} payload: {e}") from e


class EventEmitter:
    def __init__(self):
        self._listeners: Dict[str, List[Callable[..., Any]]] = {e: [] for e in EVENTS}

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for cb in list(self._listeners.get(event, [])):
            try:
                res = cb(*args)
                if inspect.isawaitable(res):
                    try:
                        asyncio.get_running_loop()
                    except RuntimeError:
                        asyncio.run(res)
                    else:
                        asyncio.ensure_future(res)
            except Exception:
                log.exception("queue_listener_failed", queue_event=event)


class TaskQueue(Protocol):
    def enqueue(self, job_type: str, payload: Any, options: Optional[JobOptions] = None) -> JobHandle: ...
    def get_job(self, job_id: str) -> Optional[JobRecord]: ...
    def list_by_status(self, status: JobStatus) -> List[JobRecord]: ...
    def counts(self) -> Dict[str, int]: ...
    def register_processor(self, job_type: str, handler: Handler) -> None: ...
    def on(self, event: str, callback: Callable[..., Any]) -> None: ...
    async def start(self) -> None: ...
    async def close(self) -> None: ...
    def ping(self) -> bool: ...


def create_queue(settings) -> TaskQueue:
    if settings.queue_backend == "redis":
        from redis import Redis

        from .rq_backend import RedisTaskQueue

        return RedisTaskQueue(Redis.from_url(settings.redis_url), name=settings.queue_name,
                              keep_completed=settings.keep_completed, keep_failed=settings.keep_failed)
    from .memory import MemoryTaskQueue

    return MemoryTaskQueue(keep_completed=settings.keep_completed, keep_failed=settings.keep_failed)
