from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

import httpx

from songdrop.utils.constants import NOTIFICATION_TYPE_DOWNLOAD_COMPLETED

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


class NotifierError(Exception):
    pass


class PushNotifier:
    """
    Data-only push messages through the FCM HTTP v1 API.

    Delivery is best-effort: send() returns the message name on success and
    None on any delivery failure.
    """

    def __init__(self, project_id: str, access_token: str, transport: httpx.AsyncBaseTransport | None = None):
        if not project_id:
            raise NotifierError("FCM project id is required")
        if not access_token:
            raise NotifierError("FCM access token is required")
        self.url = FCM_SEND_URL.format(project_id=project_id)
        self.access_token = access_token
        self._transport = transport

    @classmethod
    def from_env(cls) -> "PushNotifier":
        return cls(
            project_id=os.getenv("FCM_PROJECT_ID", "").strip(),
            access_token=os.getenv("FCM_ACCESS_TOKEN", "").strip(),
        )

    async def send(self, target: str, data: dict[str, str]) -> str | None:
        if not target or not target.strip():
            raise ValueError("target device token is required")
        if not data:
            raise ValueError("data payload is required")

        message = {
            "message": {
                "token": target,
                "data": data,
                "android": {"priority": "high", "ttl": "86400s"},
                "apns": {"payload": {"aps": {"content-available": 1}}},
            }
        }

        try:
            async with httpx.AsyncClient(timeout=20, transport=self._transport) as client:
                r = await client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Content-Type": "application/json",
                    },
                    json=message,
                )
                r.raise_for_status()
                message_id = r.json().get("name")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Push send failed for target %s: %s", target[:12], e)
            return None

        logger.info("Push message sent. MessageId=%s", message_id)
        return message_id

    async def send_download_ready(self, target: str, title: str | None, download_url: str) -> str | None:
        if not download_url:
            raise ValueError("download_url is required")

        return await self.send(
            target,
            {
                "type": NOTIFICATION_TYPE_DOWNLOAD_COMPLETED,
                "songTitle": title or "",
                "downloadUrl": download_url,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
