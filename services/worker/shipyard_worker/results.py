from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from shipyard_common.errors import UnrecoverableError


@dataclass(frozen=True)
class Ok:
    value: Any = None


@dataclass(frozen=True)
class Retryable:
    """Abort the run; the task queue may retry the whole job."""
    error: BaseException


@dataclass(frozen=True)
class Fatal:
    """Abort the run; no job-level retry."""
    error: BaseException


StageResult = Union[Ok, Retryable, Fatal]


def raise_for(result: StageResult) -> Any:
    """Turn a stage result into the job's outcome as the task queue sees it."""
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, Fatal):
        if isinstance(result.error, UnrecoverableError):
            raise result.error
        raise UnrecoverableError(str(result.error)) from result.error
    raise result.error
