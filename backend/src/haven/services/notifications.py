"""Admin notification delivery."""

import logging

from haven.db.base import Store
from haven_models import AdminAlert

logger = logging.getLogger(__name__)


class NotificationSink:
    """Writes admin alert records through the store.

    Delivery never raises: a failed insert is logged and the caller carries
    on with the crisis response.
    """

    def __init__(self, store: Store):
        self.store = store

    async def send_admin_alerts(self, alerts: list[AdminAlert]) -> bool:
        """Persist alerts for every recipient. Returns False if delivery failed."""
        if not alerts:
            return True
        try:
            await self.store.create_notifications(alerts)
        except Exception as e:
            logger.error(f"Failed to deliver {len(alerts)} admin alert(s): {e}")
            return False
        logger.info(f"Delivered {len(alerts)} admin alert(s)")
        return True
