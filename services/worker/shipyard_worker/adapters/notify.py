import asyncio

import requests

from shipyard_common.logging import get_logger
from shipyard_common.models import NotificationEvent
from shipyard_common.utils import utc_now_iso

log = get_logger(__name__)


class WebhookNotifier:
    """Best-effort webhook delivery. Never raises."""

    def __init__(self, url: str, timeout: float = 10.0, session=None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, event: NotificationEvent) -> bool:
        nlog = log.bind(deployment_id=event.deployment_id, status=event.status)
        if not self.url:
            nlog.warning("notification_skipped", reason="no webhook url configured")
            return False
        body = {
            "type": "multi_project_deployment_notification",
            "timestamp": utc_now_iso(),
            "data": event.model_dump(mode="json"),
        }
        try:
            r = self.session.post(self.url, json=body, timeout=self.timeout)
            if r.status_code >= 400:
                nlog.warning("notification_rejected", status_code=r.status_code)
                return False
        except requests.RequestException as e:
            nlog.warning("notification_failed", error=str(e))
            return False
        nlog.info("notification_sent")
        return True

    async def notify(self, event: NotificationEvent) -> None:
        await asyncio.to_thread(self.send, event)
