from __future__ import annotations

import logging
from typing import Optional

from .alarms import AlarmService, PermissionStatus

logger = logging.getLogger(__name__)


class PermissionGate:
    """
    Negotiates notification permission with the alarm service once and
    remembers a final answer. Asking again is free.
    """

    def __init__(self, alarm_service: AlarmService):
        self._service = alarm_service
        self._granted: Optional[bool] = None

    @property
    def capable(self) -> bool:
        return self._service.capable

    async def ensure_granted(self) -> bool:
        if self._granted is not None:
            return self._granted

        if not self._service.capable:
            logger.info("host has no notification capability, reminders disabled")
            self._granted = False
            return False

        status = await self._service.permission_status()
        if status == PermissionStatus.UNDETERMINED:
            status = await self._service.request_permission()

        # a dismissed prompt counts as a refusal until reset()
        self._granted = status == PermissionStatus.GRANTED
        if not self._granted:
            logger.warning("notification permission not granted")
        return self._granted

    def reset(self) -> None:
        self._granted = None
