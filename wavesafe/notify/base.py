"""Notification channel interface (port)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from wavesafe.core.emergency import EmergencyContact


class NotificationChannel(Protocol):
    """Delivers a message to a contact by phone, VHF, email or SMS."""

    async def send(self, contact: EmergencyContact, method: str, message: str) -> bool:
        """Return True when the transport accepted the message."""
        ...
