import asyncio
import shlex
import shutil
from pathlib import Path

from shipyard_common.config import ProjectConfig
from shipyard_common.errors import ProjectError
from shipyard_common.logging import get_logger
from shipyard_common.utils import run_cmd

log = get_logger(__name__)


class ShellBuilder:
    """Runs a project's own install and build commands in its checkout."""

    def __init__(self, install_timeout: int = 900):
        self.install_timeout = install_timeout

    def run(self, project: ProjectConfig) -> Path:
        cwd = project.local_path
        dist = project.dist_path
        plog = log.bind(project_id=project.id)
        if dist.exists():
            shutil.rmtree(dist)
        if project.install_command:
            plog.info("build_install", command=project.install_command)
            run_cmd(shlex.split(project.install_command), cwd=cwd, timeout=self.install_timeout)
        plog.info("build_run", command=project.build_command)
        run_cmd(shlex.split(project.build_command), cwd=cwd, timeout=project.build_timeout)
        if not dist.is_dir() or not any(dist.iterdir()):
            raise ProjectError(f"build produced no artifact at {dist}", "building", project.id)
        return dist

    async def build(self, project: ProjectConfig) -> Path:
        try:
            return await asyncio.to_thread(self.run, project)
        except ProjectError:
            raise
        except Exception as e:
            raise ProjectError(f"build failed: {e}", "building", project.id) from e

    async def discard(self, project: ProjectConfig) -> None:
        await asyncio.to_thread(shutil.rmtree, project.dist_path, True)
