"""WhatsApp bridge adapter.

Talks to an HTTP bridge in front of the WhatsApp session. The bridge exposes
two endpoints per group: one to post a message and one reporting whether the
bot account is still a member of the group.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from opsroute.adapters.notification_formatting import format_notification
from opsroute.core.errors import DeliveryTransientFailure
from opsroute.core.models import Channel, Notification

LOGGER = logging.getLogger(__name__)

# Statuses worth retrying; any other 4xx means the request itself is wrong.
_TRANSIENT_STATUS = {408, 425, 429}


class WhatsAppBridgeClient:
    """Delivery and liveness adapter backed by the WhatsApp HTTP bridge."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def _endpoint(self, group_id: str, suffix: str) -> str:
        return f"{self._base_url}/api/groups/{urllib.parse.quote(group_id, safe='')}/{suffix}"

    def _request(self, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(url, data=data, method="POST" if data is not None else "GET")
        request.add_header("Content-Type", "application/json")
        if self._token:
            request.add_header("Authorization", f"Bearer {self._token}")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            if e.code >= 500 or e.code in _TRANSIENT_STATUS:
                raise DeliveryTransientFailure(f"Bridge error {e.code}: {body}") from e
            raise RuntimeError(f"Bridge error {e.code}: {body}") from e
        except urllib.error.URLError as e:
            raise DeliveryTransientFailure(f"Bridge unreachable: {e.reason}") from e
        if not body:
            return {}
        try:
            parsed = json.loads(body)
        except ValueError:
            # The request went through; some bridges answer 2xx with plain text.
            LOGGER.debug("Bridge returned a non-JSON body for %s: %.80s", url, body)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def deliver_notification(self, channel: Channel, notification: Notification) -> None:
        """Post the formatted notification to the channel's group."""

        payload = {
            "text": format_notification(notification, mode="whatsapp"),
            "idempotency_key": notification.idempotency_key,
        }
        # urllib blocks, so the call runs in a worker thread.
        await asyncio.to_thread(self._request, self._endpoint(channel.group_id, "messages"), payload)

    async def is_delivery_ready(self, channel: Channel) -> bool:
        status = await asyncio.to_thread(self._request, self._endpoint(channel.group_id, "status"))
        ready = bool(status.get("bot_in_group"))
        if not ready:
            LOGGER.warning("Bot is not a member of %s (%s)", channel.name, channel.group_id)
        return ready
