import asyncio
import shlex
from pathlib import Path
from typing import Iterable, List

from shipyard_common.config import ProjectConfig
from shipyard_common.errors import FatalStageError
from shipyard_common.logging import get_logger
from shipyard_common.utils import run_cmd, utc_now_iso

from ..backup import FileTarget

log = get_logger(__name__)

STAGE = "configuring"

LOCATION = """
    # {name}
    location {location} {{
        alias {root}/;
        index index.html;
        try_files $uri $uri/ {location}/index.html;

        location ~* \\.(js|css|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf|eot)$ {{
            expires 1y;
            add_header Cache-Control "public, immutable";
        }}

        add_header X-Frame-Options "SAMEORIGIN" always;
        add_header X-Content-Type-Options "nosniff" always;
        add_header Referrer-Policy "no-referrer-when-downgrade" always;
        add_header Content-Security-Policy "default-src 'self' http: https: data: blob: 'unsafe-inline'" always;
    }}
"""

SERVER = """# generated by shipyard at {generated}
# projects: {project_ids}

server {{
    listen 80;
    server_name {host};

    access_log /var/log/nginx/frontend_access.log;
    error_log /var/log/nginx/frontend_error.log;

    server_tokens off;

    gzip on;
    gzip_vary on;
    gzip_min_length 1024;
    gzip_proxied expired no-cache no-store private must-revalidate auth;
    gzip_types text/plain text/css text/xml text/javascript application/javascript application/xml+rss application/json;

    location = / {{
        return 301 {home};
    }}

    location /health {{
        access_log off;
        return 200 "healthy\\n";
        add_header Content-Type text/plain;
    }}
{locations}
    error_page 404 /404.html;
    location = /404.html {{
        root /usr/share/nginx/html;
    }}

    error_page 500 502 503 504 /50x.html;
    location = /50x.html {{
        root /usr/share/nginx/html;
    }}
}}
"""


class NginxProxy:
    def __init__(self, config_path: str, test_cmd: str = "nginx -t", reload_cmd: str = "nginx -s reload",
                 timeout: int = 30):
        self.config_path = config_path
        self.test_cmd = test_cmd
        self.reload_cmd = reload_cmd
        self.timeout = timeout

    def generate_config(self, projects: Iterable[ProjectConfig], host: str) -> str:
        projects: List[ProjectConfig] = list(projects)
        if not projects:
            raise FatalStageError("cannot generate a proxy config for zero projects", STAGE)
        locations = "".join(
            LOCATION.format(name=p.name or p.id, location=p.proxy_location, root=p.remote_path.rstrip("/"))
            for p in projects
        )
        return SERVER.format(
            generated=utc_now_iso(),
            project_ids=", ".join(p.id for p in projects),
            host=host,
            home=projects[0].proxy_location,
            locations=locations,
        )

    def snapshot_target(self) -> FileTarget:
        return FileTarget(self.config_path)

    def _run(self, cmd: str, what: str) -> str:
        try:
            return run_cmd(shlex.split(cmd), timeout=self.timeout)
        except Exception as e:
            raise FatalStageError(f"{what} failed: {e}", STAGE) from e

    async def validate_config(self) -> None:
        await asyncio.to_thread(self._run, self.test_cmd, "proxy config check")
        log.info("proxy_config_valid", path=self.config_path)

    async def apply_config(self, text: str) -> None:
        path = Path(self.config_path)

        def write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise FatalStageError(f"cannot write proxy config {path}: {e}", STAGE) from e
        log.info("proxy_config_written", path=self.config_path, size=len(text))

    async def reload(self) -> None:
        await asyncio.to_thread(self._run, self.reload_cmd, "proxy reload")
        log.info("proxy_reloaded")
