"""Dry-run delivery adapter that only logs what would be sent."""

from __future__ import annotations

import logging
from typing import List, Tuple

from opsroute.adapters.notification_formatting import format_notification
from opsroute.core.models import Channel, Notification

LOGGER = logging.getLogger(__name__)


class LogDelivery:
    """Delivery adapter used when no bridge is configured.

    Every channel counts as ready; sent notifications are kept in ``sent``.
    """

    def __init__(self) -> None:
        self.sent: List[Tuple[Channel, Notification]] = []

    async def deliver_notification(self, channel: Channel, notification: Notification) -> None:
        self.sent.append((channel, notification))
        LOGGER.info("[dry-run] -> %s\n%s", channel.name, format_notification(notification, mode="plain"))

    async def is_delivery_ready(self, channel: Channel) -> bool:
        return True
