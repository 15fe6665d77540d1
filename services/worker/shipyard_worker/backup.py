"""
Snapshot-before-mutate, verify-after-mutate, restore-on-failure.

A target knows how to snapshot, list, restore and delete copies of itself;
``guarded_mutation`` applies the same discipline to any of them. Snapshot
names embed a UTC timestamp so lexical order is chronological order.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import os
import shlex
import shutil
import weakref
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from shipyard_common.errors import VerificationError
from shipyard_common.logging import get_logger
from shipyard_common.utils import run_cmd, utc_now

log = get_logger(__name__)


def snapshot_stamp() -> str:
    return utc_now().strftime("%Y-%m-%dT%H-%M-%S-%fZ")


class SnapshotTarget(Protocol):
    def describe(self) -> str: ...
    def exists(self) -> bool: ...
    def snapshot(self) -> str: ...
    def snapshots(self) -> List[str]: ...
    def restore(self, name: str) -> None: ...
    def delete(self, name: str) -> None: ...


class _LocalTarget:
    separator = ".backup."

    def __init__(self, path):
        self.path = Path(path)

    def describe(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.exists()

    def _prefix(self) -> str:
        return f"{self.path.name}{self.separator}"

    def _unique(self) -> Path:
        base = self.path.with_name(f"{self._prefix()}{snapshot_stamp()}")
        candidate, n = base, 0
        while candidate.exists():
            n += 1
            candidate = base.with_name(f"{base.name}-{n:03d}")
        return candidate

    def snapshots(self) -> List[str]:
        if not self.path.parent.exists():
            return []
        prefix = self._prefix()
        return sorted(str(p) for p in self.path.parent.iterdir() if p.name.startswith(prefix))

    def _copy(self, src: Path, dst: Path) -> None:
        raise NotImplementedError

    def _remove(self, p: Path) -> None:
        raise NotImplementedError

    def snapshot(self) -> str:
        dst = self._unique()
        self._copy(self.path, dst)
        return str(dst)

    def restore(self, name: str) -> None:
        src = Path(name)
        if not src.exists():
            raise FileNotFoundError(name)
        if self.path.exists():
            self._remove(self.path)
        self._copy(src, self.path)

    def delete(self, name: str) -> None:
        self._remove(Path(name))


class FileTarget(_LocalTarget):
    """A single file, snapshots beside it as ``<path>.backup.<ts>``."""

    def _copy(self, src: Path, dst: Path) -> None:
        shutil.copy2(src, dst)

    def _remove(self, p: Path) -> None:
        p.unlink(missing_ok=True)


class DirectoryTarget(_LocalTarget):
    """A directory tree, snapshots beside it as ``<path>-backup-<ts>``."""

    separator = "-backup-"

    def _copy(self, src: Path, dst: Path) -> None:
        shutil.copytree(src, dst, symlinks=True)

    def _remove(self, p: Path) -> None:
        shutil.rmtree(p, ignore_errors=False)


class RemoteDirectoryTarget:
    """A directory on the upload host, handled over ssh with the same naming as DirectoryTarget."""

    def __init__(self, path: str, ssh: List[str], env: Optional[dict] = None, timeout: int = 300):
        self.path = path.rstrip("/")
        self.ssh = ssh
        self.env = env
        self.timeout = timeout

    def describe(self) -> str:
        return f"{self.ssh[-1]}:{self.path}"

    def _run(self, script: str) -> str:
        return run_cmd(self.ssh + [script], env=self.env, timeout=self.timeout)

    def exists(self) -> bool:
        out = self._run(f"test -d {shlex.quote(self.path)} && echo yes || echo no")
        return out.strip().endswith("yes")

    def snapshots(self) -> List[str]:
        pattern = shlex.quote(self.path + "-backup-") + "*"
        out = self._run(f"ls -1d {pattern} 2>/dev/null || true")
        return sorted(line.strip() for line in out.splitlines() if line.strip())

    def snapshot(self) -> str:
        name = f"{self.path}-backup-{snapshot_stamp()}"
        existing = set(self.snapshots())
        base, n = name, 0
        while name in existing:
            n += 1
            name = f"{base}-{n:03d}"
        self._run(f"cp -a {shlex.quote(self.path)} {shlex.quote(name)}")
        return name

    def restore(self, name: str) -> None:
        p, s = shlex.quote(self.path), shlex.quote(name)
        self._run(f"test -d {s} && rm -rf {p} && cp -a {s} {p}")

    def delete(self, name: str) -> None:
        self._run(f"rm -rf {shlex.quote(name)}")


def prune_snapshots(target: SnapshotTarget, keep: int) -> List[str]:
    """Delete all but the newest ``keep`` snapshots, oldest first."""
    names = target.snapshots()
    doomed = names[: max(0, len(names) - keep)]
    for name in doomed:
        target.delete(name)
    return doomed


async def guarded_mutation(
    target: SnapshotTarget,
    mutate: Callable[[], Awaitable[None]],
    verify: Callable[[], Awaitable[None]],
    keep: int = 5,
) -> Optional[str]:
    """
    Run ``mutate`` then ``verify`` against ``target``.

    A failure in either restores the snapshot taken just before the
    mutation and runs ``verify`` again, then raises VerificationError.
    A failed restore is logged only. Returns the snapshot name, if any.
    """
    tlog = log.bind(target=target.describe())
    snapshot = None
    if await asyncio.to_thread(target.exists):
        snapshot = await asyncio.to_thread(target.snapshot)
        tlog.info("snapshot_taken", snapshot=snapshot)

    try:
        await mutate()
        await verify()
    except Exception as exc:
        rolled_back = False
        if snapshot is not None:
            try:
                await asyncio.to_thread(target.restore, snapshot)
                await verify()
                rolled_back = True
                tlog.warning("rolled_back", snapshot=snapshot, error=str(exc))
            except Exception:
                tlog.exception("rollback_failed", snapshot=snapshot)
        raise VerificationError(f"{target.describe()}: {exc}", rolled_back=rolled_back) from exc

    pruned = await asyncio.to_thread(prune_snapshots, target, keep)
    if pruned:
        tlog.info("snapshots_pruned", count=len(pruned))
    return snapshot


# asyncio locks belong to one event loop; rq runs each job in a fresh one
_path_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = weakref.WeakKeyDictionary()


@contextlib.asynccontextmanager
async def target_lock(path: str):
    """Hold an exclusive lock on ``path`` within this process and across worker processes."""
    key = os.path.abspath(path)
    locks = _path_locks.setdefault(asyncio.get_running_loop(), {})
    lock = locks.setdefault(key, asyncio.Lock())
    async with lock:
        parent = os.path.dirname(key)
        if parent:
            os.makedirs(parent, exist_ok=True)
        fd = os.open(f"{key}.lock", os.O_RDWR | os.O_CREAT, 0o644)
        try:
            await asyncio.to_thread(fcntl.flock, fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
