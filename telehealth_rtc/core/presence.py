from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from telehealth_rtc.core.signaling import (
    ONLINE_USERS_LIST,
    REQUEST_ONLINE_USERS,
    USER_OFFLINE,
    USER_ONLINE,
)
from telehealth_rtc.core.transport import SignalingTransport
from telehealth_rtc.logging_config import get_logger

logger = get_logger("presence")


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class PresenceRecord:
    user_id: str
    status: PresenceStatus
    user_type: Optional[str] = None
    name: Optional[str] = None
    last_seen: Optional[str] = None

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any], default_status: PresenceStatus
    ) -> "PresenceRecord":
        user_data = payload.get("userData") or {}
        name = payload.get("name")
        if not name and user_data:
            name = " ".join(
                part for part in (user_data.get("firstName"), user_data.get("lastName")) if part
            ) or None

        status = payload.get("status")
        try:
            status = PresenceStatus(status) if status else default_status
        except ValueError:
            status = default_status

        return cls(
            user_id=str(payload["userId"]),
            status=status,
            user_type=payload.get("userType"),
            name=name,
            last_seen=payload.get("lastSeen") or payload.get("disconnectedAt"),
        )


class PresenceTracker:
    """
    Online/offline state of known users, driven only by relay events.

    Incremental events for users we have never seen are inserted rather than
    rejected, so a missed snapshot heals itself.
    """

    def __init__(self, transport: SignalingTransport, self_id: Optional[str] = None) -> None:
        self.transport = transport
        self.self_id = self_id
        self.records: dict[str, PresenceRecord] = {}
        self.on_presence_changed: Optional[Callable[[dict[str, PresenceRecord]], None]] = None

        transport.subscribe(ONLINE_USERS_LIST, self._on_snapshot)
        transport.subscribe(USER_ONLINE, self._on_user_online)
        transport.subscribe(USER_OFFLINE, self._on_user_offline)

    async def request_snapshot(self) -> bool:
        """Ask the relay for a full ``online-users-list``."""
        return await self.transport.send(REQUEST_ONLINE_USERS, {})

    def get(self, user_id: str) -> Optional[PresenceRecord]:
        return self.records.get(user_id)

    def is_online(self, user_id: str) -> bool:
        record = self.records.get(user_id)
        return record is not None and record.status is PresenceStatus.ONLINE

    def online_users(self) -> list[PresenceRecord]:
        return [r for r in self.records.values() if r.status is PresenceStatus.ONLINE]

    def _notify(self) -> None:
        if self.on_presence_changed:
            self.on_presence_changed(dict(self.records))

    def _on_snapshot(self, payload: Any) -> None:
        if isinstance(payload, dict):
            payload = payload.get("users", [])
        if not isinstance(payload, list):
            logger.warning(f"Ignoring malformed presence snapshot: {type(payload).__name__}")
            return

        records: dict[str, PresenceRecord] = {}
        for entry in payload:
            if not isinstance(entry, dict) or not entry.get("userId"):
                logger.debug(f"Skipping presence entry without userId: {entry!r}")
                continue
            record = PresenceRecord.from_payload(entry, PresenceStatus.ONLINE)
            if record.user_id == self.self_id:
                continue
            records[record.user_id] = record

        self.records = records
        logger.info(f"Presence snapshot: {len(self.online_users())} user(s) online")
        self._notify()

    def _upsert(self, payload: Any, status: PresenceStatus) -> None:
        if not isinstance(payload, dict) or not payload.get("userId"):
            logger.warning(f"Ignoring presence event without userId: {payload!r}")
            return

        user_id = str(payload["userId"])
        if user_id == self.self_id:
            return

        incoming = PresenceRecord.from_payload(payload, status)
        incoming.status = status
        existing = self.records.get(user_id)
        if existing is None:
            logger.debug(f"Presence for unknown user {user_id}; inserting")
            self.records[user_id] = incoming
        else:
            existing.status = status
            existing.user_type = incoming.user_type or existing.user_type
            existing.name = incoming.name or existing.name
            existing.last_seen = incoming.last_seen or existing.last_seen

        logger.debug(f"User {user_id} is now {status.value}")
        self._notify()

    def _on_user_online(self, payload: Any) -> None:
        self._upsert(payload, PresenceStatus.ONLINE)

    def _on_user_offline(self, payload: Any) -> None:
        self._upsert(payload, PresenceStatus.OFFLINE)
