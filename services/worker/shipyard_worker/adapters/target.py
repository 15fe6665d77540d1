import asyncio

import requests
from pydantic import ValidationError as PydanticValidationError

from shipyard_common.errors import FatalStageError
from shipyard_common.logging import get_logger
from shipyard_common.models import UploadTarget
from shipyard_common.utils import utc_now_iso

log = get_logger(__name__)

STAGE = "resolving"


class HttpTargetResolver:
    """Asks the backend service where this deployment's artifacts go."""

    def __init__(self, backend_url: str, token: str, timeout: float = 10.0, session=None):
        self.backend_url = backend_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "User-Agent": "shipyard/0.1.0",
        }

    def fetch(self, deployment_id: str, project_id: str) -> UploadTarget:
        if not self.backend_url:
            raise FatalStageError("backend service URL is not configured", STAGE)
        if not self.token:
            raise FatalStageError("backend service token is not configured", STAGE)
        url = f"{self.backend_url}/api/server/config"
        body = {
            "projectId": project_id,
            "deploymentId": deployment_id,
            "purpose": "frontend-deployment",
            "timestamp": utc_now_iso(),
        }
        try:
            r = self.session.post(url, headers=self._headers(), json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise FatalStageError(f"backend service unreachable: {e}", STAGE) from e

        if r.status_code == 401:
            raise FatalStageError("backend token rejected or expired", STAGE)
        if r.status_code == 404:
            raise FatalStageError(f"backend endpoint not found: {url}", STAGE)
        if r.status_code >= 500:
            raise FatalStageError(f"backend service error ({r.status_code})", STAGE)
        if r.status_code >= 400:
            raise FatalStageError(f"backend rejected request ({r.status_code}): {r.text[:200]}", STAGE)

        try:
            envelope = r.json()
        except ValueError as e:
            raise FatalStageError("backend returned a non-JSON response", STAGE) from e
        if not envelope:
            raise FatalStageError("backend returned an empty response", STAGE)
        if not envelope.get("success"):
            raise FatalStageError(f"backend error: {envelope.get('message') or 'unknown error'}", STAGE)
        data = envelope.get("data")
        if not data:
            raise FatalStageError("backend returned no target configuration", STAGE)
        try:
            target = UploadTarget.model_validate(data)
        except PydanticValidationError as e:
            raise FatalStageError(f"invalid target configuration: {e}", STAGE) from e

        log.info(
            "target_resolved",
            deployment_id=deployment_id,
            host=target.host,
            port=target.port,
            username=target.username,
            deploy_path=target.deploy_path,
        )
        return target

    async def resolve_target(self, deployment_id: str, project_id: str) -> UploadTarget:
        return await asyncio.to_thread(self.fetch, deployment_id, project_id)
