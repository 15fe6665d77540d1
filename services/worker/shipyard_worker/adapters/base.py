"""
Narrow async interfaces the pipeline calls out through. Concrete
implementations live beside this module; tests swap in fakes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Protocol

from shipyard_common.config import ProjectConfig
from shipyard_common.models import NotificationEvent, UploadTarget

from ..backup import SnapshotTarget

# dotfiles are excluded separately
EXCLUDED_NAMES = frozenset({"node_modules", ".git", "__pycache__", "Thumbs.db", ".DS_Store"})


def is_excluded(name: str) -> bool:
    """Entries never shipped with an artifact: dotfiles, dependency and build caches, OS litter."""
    return name.startswith(".") or name in EXCLUDED_NAMES


class SourceAcquirer(Protocol):
    async def acquire(self, project: ProjectConfig, branch: str, commit_ref: Optional[str] = None) -> Path: ...


class Builder(Protocol):
    async def build(self, project: ProjectConfig) -> Path: ...
    async def discard(self, project: ProjectConfig) -> None: ...


class TargetResolver(Protocol):
    async def resolve_target(self, deployment_id: str, project_id: str) -> UploadTarget: ...


class ArtifactTransfer(Protocol):
    def snapshot_target(self, remote_path: str, target: UploadTarget) -> SnapshotTarget: ...
    async def upload(self, artifact: Path, remote_path: str, target: UploadTarget) -> None: ...


class ProxyControl(Protocol):
    config_path: str

    def generate_config(self, projects: Iterable[ProjectConfig], host: str) -> str: ...
    def snapshot_target(self) -> SnapshotTarget: ...
    async def validate_config(self) -> None: ...
    async def apply_config(self, text: str) -> None: ...
    async def reload(self) -> None: ...


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent) -> None: ...
