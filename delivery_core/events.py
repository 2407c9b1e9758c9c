import logging

import httpx

from .config import settings

logger = logging.getLogger(__name__)


class Publisher:
    """
    Outbound side effects after a commit: realtime broadcasts keyed by
    channel (``restaurant:<id>``, ``order:<id>``) and user notifications.

    Delivery is best-effort. Failures are logged and never raised; the
    database state is already final when these fire.
    """

    def __init__(self, realtime_url: str | None = None, notify_url: str | None = None, timeout: float = 5.0):
        self.realtime_url = realtime_url
        self.notify_url = notify_url
        self.timeout = timeout

    def _post(self, url: str | None, body: dict) -> bool:
        if not url:
            logger.debug("No endpoint configured, dropping %s", body)
            return False
        try:
            r = httpx.post(url, json=body, timeout=self.timeout)
            r.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Publish to %s failed: %s", url, exc)
            return False
        return True

    def broadcast(self, channel: str, event: str, payload: dict) -> bool:
        return self._post(
            self.realtime_url,
            {"channel": channel, "type": "broadcast", "event": event, "payload": payload},
        )

    def notify(self, user_id: str | None, title: str, message: str, type: str, data: dict | None = None) -> bool:
        if not user_id:
            return False
        return self._post(
            self.notify_url,
            {"user_id": user_id, "title": title, "message": message, "type": type, "data": data or {}},
        )


def get_publisher() -> Publisher:
    return Publisher(settings.REALTIME_URL, settings.NOTIFY_URL, settings.HTTP_TIMEOUT_SECONDS)
