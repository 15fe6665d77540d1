from __future__ import annotations

from typing import Optional


class ShipyardError(Exception):
    """Base class for every error raised by shipyard itself."""


class UnrecoverableError(ShipyardError):
    """The task queue never retries a job that raised this."""


class ValidationError(UnrecoverableError):
    """Malformed trigger payload or project set. Rejected before enqueue."""


class AdapterError(ShipyardError):
    """An external call failed or timed out."""

    def __init__(self, message: str, stage: Optional[str] = None, project: Optional[str] = None):
        super().__init__(message)
        self.stage = stage
        self.project = project

    def __str__(self) -> str:
        msg = super().__str__()
        where = "/".join(p for p in (self.stage, self.project) if p)
        return f"[{where}] {msg}" if where else msg


class ProjectError(AdapterError):
    """Failure scoped to one project; siblings keep going."""


class FatalStageError(AdapterError):
    """Aborts the whole deployment."""


class VerificationError(ShipyardError):
    def __init__(self, message: str, rolled_back: bool = False):
        super().__init__(message)
        self.rolled_back = rolled_back


class StateTransitionError(ShipyardError):
    pass
