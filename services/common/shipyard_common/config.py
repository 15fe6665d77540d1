import json
import os
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel

from .errors import ValidationError


class ProjectConfig(BaseModel):
    id: str
    name: str = ""
    repository: str = ""
    branch: str = "main"
    local_path: str
    build_command: str = "npm run build"
    install_command: Optional[str] = None
    dist_directory: str = "dist"
    remote_path: str
    proxy_location: str
    build_timeout: int = 600

    @property
    def dist_path(self) -> Path:
        return Path(self.local_path) / self.dist_directory


class Settings(BaseModel):
    queue_backend: Literal["memory", "redis"] = "memory"
    store_backend: Literal["memory", "sqlite"] = "sqlite"
    db_path: str = "/data/shipyard.db"
    redis_url: str = "redis://redis:6379/0"
    queue_name: str = "shipyard"

    max_projects: int = 10
    concurrent_builds: int = 2
    job_attempts: int = 3
    job_backoff_seconds: float = 2.0
    keep_completed: int = 10
    keep_failed: int = 5

    status_ttl_seconds: int = 86400
    log_cap: int = 100
    backup_keep: int = 5
    upload_attempts: int = 2

    projects_file: str = "/etc/shipyard/projects.json"
    workspaces_root: str = "/workspaces"
    git_ssh_key_path: str = ""
    backend_url: str = ""
    backend_token_file: str = "/secrets/backend_token.txt"
    transfer_mode: Literal["rsync", "local"] = "rsync"
    nginx_config_path: str = "/etc/nginx/sites-available/frontend"
    nginx_test_cmd: str = "nginx -t"
    nginx_reload_cmd: str = "nginx -s reload"
    notification_webhook_url: str = ""

    api_key_file: str = "/secrets/shipyard_api_key.txt"
    webhook_secret_file: str = "/secrets/webhook_secret.txt"

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        mapping = {
            "queue_backend": "SHIPYARD_QUEUE_BACKEND",
            "store_backend": "SHIPYARD_STORE_BACKEND",
            "db_path": "SHIPYARD_DB_PATH",
            "redis_url": "REDIS_URL",
            "queue_name": "SHIPYARD_QUEUE_NAME",
            "max_projects": "SHIPYARD_MAX_PROJECTS",
            "concurrent_builds": "SHIPYARD_CONCURRENT_BUILDS",
            "job_attempts": "SHIPYARD_JOB_ATTEMPTS",
            "job_backoff_seconds": "SHIPYARD_JOB_BACKOFF_SECONDS",
            "keep_completed": "SHIPYARD_KEEP_COMPLETED",
            "keep_failed": "SHIPYARD_KEEP_FAILED",
            "status_ttl_seconds": "SHIPYARD_STATUS_TTL_SECONDS",
            "log_cap": "SHIPYARD_LOG_CAP",
            "backup_keep": "SHIPYARD_BACKUP_KEEP",
            "upload_attempts": "SHIPYARD_UPLOAD_ATTEMPTS",
            "projects_file": "SHIPYARD_PROJECTS_FILE",
            "workspaces_root": "SHIPYARD_WORKSPACES_ROOT",
            "git_ssh_key_path": "GIT_SSH_KEY_PATH",
            "backend_url": "SHIPYARD_BACKEND_URL",
            "backend_token_file": "SHIPYARD_BACKEND_TOKEN_FILE",
            "transfer_mode": "SHIPYARD_TRANSFER_MODE",
            "nginx_config_path": "NGINX_CONFIG_PATH",
            "nginx_test_cmd": "NGINX_TEST_CMD",
            "nginx_reload_cmd": "NGINX_RELOAD_CMD",
            "notification_webhook_url": "NOTIFICATION_WEBHOOK_URL",
            "api_key_file": "SHIPYARD_API_KEY_FILE",
            "webhook_secret_file": "SHIPYARD_WEBHOOK_SECRET_FILE",
            "log_level": "SHIPYARD_LOG_LEVEL",
            "log_format": "SHIPYARD_LOG_FORMAT",
        }
        values = {field: env[var] for field, var in mapping.items() if env.get(var, "") != ""}
        return cls.model_validate(values)


def load_projects(path: str) -> Dict[str, ProjectConfig]:
    """Read the project registry. The file holds a JSON list of project entries."""
    p = Path(path)
    if not p.exists():
        raise RuntimeError(f"Project registry not found: {path}")
    raw = json.loads(p.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("projects", [])
    projects: List[ProjectConfig] = [ProjectConfig.model_validate(item) for item in raw]
    registry: Dict[str, ProjectConfig] = {}
    for proj in projects:
        if proj.id in registry:
            raise ValidationError(f"Duplicate project id in registry: {proj.id}")
        registry[proj.id] = proj
    return registry
