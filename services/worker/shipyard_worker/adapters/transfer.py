import asyncio
import os
import shlex
import shutil
from pathlib import Path
from typing import List, Tuple

from shipyard_common.errors import ProjectError
from shipyard_common.logging import get_logger
from shipyard_common.models import UploadTarget
from shipyard_common.utils import run_cmd

from ..backup import DirectoryTarget, RemoteDirectoryTarget
from .base import EXCLUDED_NAMES, is_excluded

log = get_logger(__name__)

STAGE = "uploading"


def ignore_excluded(directory, names) -> List[str]:
    return [n for n in names if is_excluded(n)]


def _ssh_base(target: UploadTarget) -> Tuple[List[str], dict]:
    """ssh argv prefix and environment for a target; password auth goes through sshpass."""
    opts = ["-p", str(target.port), "-o", "StrictHostKeyChecking=no", "-o", "BatchMode=no"]
    if target.key_path:
        opts += ["-i", target.key_path]
    argv = ["ssh"] + opts
    env = {}
    if target.password and not target.key_path:
        argv = ["sshpass", "-e"] + argv
        env["SSHPASS"] = target.password
    return argv, env


class RsyncTransfer:
    """Ships a directory to the upload host with rsync over ssh."""

    def __init__(self, timeout: int = 900):
        self.timeout = timeout

    def _ssh(self, target: UploadTarget) -> Tuple[List[str], dict]:
        argv, env = _ssh_base(target)
        return argv + [f"{target.username}@{target.host}"], env

    def snapshot_target(self, remote_path: str, target: UploadTarget) -> RemoteDirectoryTarget:
        ssh, env = self._ssh(target)
        return RemoteDirectoryTarget(remote_path, ssh, env=env)

    def push(self, artifact: Path, remote_path: str, target: UploadTarget) -> None:
        ssh, env = self._ssh(target)
        redact = [target.password] if target.password else None
        q = shlex.quote(remote_path)
        run_cmd(ssh + [f"mkdir -p {q} && find {q} -mindepth 1 -delete"], env=env, redact=redact,
                timeout=self.timeout)
        shell, _ = _ssh_base(target)
        excludes = ["--exclude=.*"] + [f"--exclude={n}" for n in sorted(EXCLUDED_NAMES)]
        run_cmd(
            ["rsync", "-az", "--delete", *excludes, "-e", " ".join(shlex.quote(a) for a in shell),
             f"{artifact}/", f"{target.username}@{target.host}:{remote_path.rstrip('/')}/"],
            env=env, redact=redact, timeout=self.timeout,
        )
        run_cmd(ssh + [f"chmod -R 755 {q}"], env=env, redact=redact, timeout=self.timeout)

    async def upload(self, artifact: Path, remote_path: str, target: UploadTarget) -> None:
        try:
            await asyncio.to_thread(self.push, artifact, remote_path, target)
        except Exception as e:
            raise ProjectError(f"upload to {target.host}:{remote_path} failed: {e}", STAGE) from e


class LocalTransfer:
    """Copies artifacts into a directory on this machine, e.g. a volume the web server serves."""

    def snapshot_target(self, remote_path: str, target: UploadTarget) -> DirectoryTarget:
        return DirectoryTarget(remote_path)

    def push(self, artifact: Path, remote_path: str) -> None:
        dst = Path(remote_path)
        dst.mkdir(parents=True, exist_ok=True)
        for child in dst.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        shutil.copytree(artifact, dst, ignore=ignore_excluded, dirs_exist_ok=True)
        for root, dirs, files in os.walk(dst):
            for name in dirs + files:
                os.chmod(os.path.join(root, name), 0o755)

    async def upload(self, artifact: Path, remote_path: str, target: UploadTarget) -> None:
        try:
            await asyncio.to_thread(self.push, artifact, remote_path)
        except Exception as e:
            raise ProjectError(f"copy to {remote_path} failed: {e}", STAGE) from e
