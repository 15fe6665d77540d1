import asyncio
from pathlib import Path

import pytest

from shipyard_common.errors import VerificationError
from shipyard_worker.backup import DirectoryTarget, FileTarget, guarded_mutation, prune_snapshots, target_lock

pytestmark = pytest.mark.unit


async def _noop():
    return None


@pytest.mark.asyncio
async def test_retention_keeps_five_most_recent(tmp_path):
    conf = tmp_path / "site.conf"
    conf.write_text("v0", encoding="utf-8")
    target = FileTarget(conf)
    taken = []

    for n in range(1, 9):
        async def write(n=n):
            conf.write_text(f"v{n}", encoding="utf-8")

        taken.append(await guarded_mutation(target, write, _noop, keep=5))

    remaining = target.snapshots()
    assert remaining == sorted(taken)[-5:]
    # each snapshot holds what was live before its mutation
    assert [Path(s).read_text(encoding="utf-8") for s in remaining] == ["v3", "v4", "v5", "v6", "v7"]


@pytest.mark.asyncio
async def test_failed_verify_restores_file(tmp_path):
    conf = tmp_path / "site.conf"
    conf.write_text("good", encoding="utf-8")
    target = FileTarget(conf)
    checks = []

    async def write():
        conf.write_text("broken", encoding="utf-8")

    async def verify():
        checks.append(conf.read_text(encoding="utf-8"))
        if conf.read_text(encoding="utf-8") == "broken":
            raise RuntimeError("syntax error")

    with pytest.raises(VerificationError) as ei:
        await guarded_mutation(target, write, verify)

    assert ei.value.rolled_back is True
    assert conf.read_text(encoding="utf-8") == "good"
    assert checks == ["broken", "good"]
    # the guarding snapshot survives the rollback
    assert len(target.snapshots()) == 1


@pytest.mark.asyncio
async def test_failed_mutation_restores_directory(tmp_path):
    live = tmp_path / "www" / "admin"
    live.mkdir(parents=True)
    (live / "index.html").write_text("v1", encoding="utf-8")
    (live / "assets").mkdir()
    (live / "assets" / "app.js").write_text("js1", encoding="utf-8")
    target = DirectoryTarget(live)

    async def clobber():
        (live / "index.html").unlink()
        (live / "half.tmp").write_text("x", encoding="utf-8")
        raise OSError("disk full")

    with pytest.raises(VerificationError) as ei:
        await guarded_mutation(target, clobber, _noop)

    assert ei.value.rolled_back
    assert sorted(p.relative_to(live).as_posix() for p in live.rglob("*")) == ["assets", "assets/app.js", "index.html"]
    assert (live / "index.html").read_text(encoding="utf-8") == "v1"


@pytest.mark.asyncio
async def test_nothing_to_restore_when_target_was_absent(tmp_path):
    conf = tmp_path / "new.conf"
    target = FileTarget(conf)

    async def write():
        conf.write_text("bad", encoding="utf-8")

    async def verify():
        raise RuntimeError("nope")

    with pytest.raises(VerificationError) as ei:
        await guarded_mutation(target, write, verify)
    assert ei.value.rolled_back is False
    assert target.snapshots() == []


@pytest.mark.asyncio
async def test_restore_failure_is_logged_not_raised(tmp_path, monkeypatch):
    conf = tmp_path / "site.conf"
    conf.write_text("good", encoding="utf-8")
    target = FileTarget(conf)

    def broken_restore(name):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(target, "restore", broken_restore)

    async def verify():
        raise RuntimeError("syntax error")

    with pytest.raises(VerificationError) as ei:
        await guarded_mutation(target, _noop, verify)
    assert ei.value.rolled_back is False


def test_snapshot_names_are_unique_and_ordered(tmp_path):
    d = tmp_path / "dist"
    d.mkdir()
    (d / "a.txt").write_text("a", encoding="utf-8")
    target = DirectoryTarget(d)

    names = [target.snapshot() for _ in range(4)]

    assert len(set(names)) == 4
    assert target.snapshots() == names
    assert all(Path(n).name.startswith("dist-backup-") for n in names)
    assert prune_snapshots(target, 1) == names[:3]
    assert target.snapshots() == names[3:]


@pytest.mark.asyncio
async def test_target_lock_serializes(tmp_path):
    path = str(tmp_path / "site.conf")
    active, peak = 0, 0

    async def critical():
        nonlocal active, peak
        async with target_lock(path):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(critical() for _ in range(4)))
    assert peak == 1
