import asyncio
from pathlib import Path
from typing import Optional

from shipyard_common.config import ProjectConfig
from shipyard_common.errors import AdapterError
from shipyard_common.logging import get_logger
from shipyard_common.utils import run_cmd

log = get_logger(__name__)


class GitSource:
    def __init__(self, ssh_key_path: str = "", timeout: int = 300):
        self.ssh_key_path = ssh_key_path
        self.timeout = timeout

    def _env(self) -> dict:
        env = {}
        if self.ssh_key_path:
            env["GIT_SSH_COMMAND"] = f"ssh -i {self.ssh_key_path} -o StrictHostKeyChecking=no"
        return env

    def _git(self, args, cwd=None) -> str:
        return run_cmd(["git"] + args, cwd=cwd, env=self._env(), timeout=self.timeout)

    def sync(self, project: ProjectConfig, branch: str, commit_ref: Optional[str] = None) -> Path:
        dst = Path(project.local_path)
        plog = log.bind(project_id=project.id, branch=branch)
        if (dst / ".git").exists():
            plog.info("git_update", path=str(dst))
            self._git(["fetch", "--all", "--prune"], cwd=str(dst))
            self._git(["reset", "--hard", "HEAD"], cwd=str(dst))
            self._git(["clean", "-fd"], cwd=str(dst))
            self._git(["checkout", branch], cwd=str(dst))
            self._git(["pull", "origin", branch], cwd=str(dst))
        else:
            if not project.repository:
                raise AdapterError("no repository configured and no local checkout", "cloning", project.id)
            plog.info("git_clone", repository=project.repository, path=str(dst))
            dst.parent.mkdir(parents=True, exist_ok=True)
            self._git(["clone", "--branch", branch, project.repository, str(dst)])
        if commit_ref:
            self._git(["checkout", commit_ref], cwd=str(dst))
        return dst

    async def acquire(self, project: ProjectConfig, branch: str, commit_ref: Optional[str] = None) -> Path:
        try:
            return await asyncio.to_thread(self.sync, project, branch, commit_ref)
        except AdapterError:
            raise
        except Exception as e:
            raise AdapterError(f"source acquisition failed: {e}", "cloning", project.id) from e
