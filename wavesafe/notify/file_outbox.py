"""File-based notification outbox.

Writes every outgoing notification as one JSON Lines entry so an external
transport (phone gateway, VHF DSC bridge, mail relay) can pick it up.

Directory structure: base_dir/YYYY/MM/DD/HH/outbox.jsonl
"""

from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import structlog

if TYPE_CHECKING:
    from wavesafe.core.emergency import EmergencyContact

log = structlog.get_logger()

SUPPORTED_METHODS = ("phone", "vhf", "email", "sms")


class FileOutboxChannel:
    """NotificationChannel backed by date/hour partitioned files on disk."""

    def __init__(self, base_dir: str | Path, clock: Callable[[], float] = time.time) -> None:
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _hour_dir(self, timestamp_ms: int) -> Path:
        """Return the directory for a given timestamp."""
        dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        path = self._base_dir / f"{dt.year:04d}" / f"{dt.month:02d}" / f"{dt.day:02d}" / f"{dt.hour:02d}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def _address(contact: EmergencyContact, method: str) -> str | None:
        if method in ("phone", "sms"):
            return contact.phone_numbers[0] if contact.phone_numbers else None
        if method == "vhf":
            return f"ch{contact.vhf_channel}" if contact.vhf_channel is not None else None
        if method == "email":
            return contact.email
        return None

    def _to_jsonl_entry(self, contact: EmergencyContact, method: str, address: str,
                        message: str, timestamp_ms: int) -> str:
        dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        entry = {
            "id": uuid.uuid4().hex,
            "ts": dt.isoformat(),
            "contact": contact.id,
            "name": contact.name,
            "method": method,
            "to": address,
            "message": message,
        }
        return json.dumps(entry, separators=(",", ":"))

    async def send(self, contact: EmergencyContact, method: str, message: str) -> bool:
        """Queue one message on disk. Returns False when the contact has no address for the method."""
        if method not in SUPPORTED_METHODS:
            log.warning("outbox_unsupported_method", method=method)
            return False
        address = self._address(contact, method)
        if not address:
            return False

        timestamp_ms = int(self._clock() * 1000)
        hour_dir = self._hour_dir(timestamp_ms)
        jsonl_path = hour_dir / "outbox.jsonl"
        with open(jsonl_path, "a") as f:
            f.write(self._to_jsonl_entry(contact, method, address, message, timestamp_ms) + "\n")

        log.debug("notification_written", contact=contact.id, method=method,
                  path=str(hour_dir))
        return True
