"""
Call history tracking for the telehealth client.

Maintains a persistent log of finished incoming and outgoing calls.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Optional

from telehealth_rtc.logging_config import get_logger

logger = get_logger("call_history")

HISTORY_VERSION = 1


@dataclass
class CallRecord:
    """Represents a single call history entry."""

    timestamp: str  # ISO format datetime
    direction: str  # "incoming" or "outgoing"
    peer_id: str
    display_name: str
    duration_sec: int
    answered: bool
    call_id: str
    kind: str = "video"
    end_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> CallRecord:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class CallHistory:
    """Manages persistent call history storage."""

    def __init__(self, storage_path: Optional[Path] = None, max_entries: int = 1000):
        """
        Initialize call history.

        Args:
            storage_path: Path to history JSON file. If None, uses ~/.telehealth_rtc/call_history.json
            max_entries: Oldest records beyond this count are dropped on save
        """
        if storage_path is None:
            storage_path = Path.home() / ".telehealth_rtc" / "call_history.json"

        self.storage_path = storage_path
        self.calls: list[CallRecord] = []
        self.max_entries = max_entries

    def load(self) -> None:
        """Load call history from the storage file."""
        if not self.storage_path.exists():
            logger.debug("No call history file found, starting fresh")
            return

        try:
            with open(self.storage_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            logger.error(f"Failed to parse history file {self.storage_path}: {exc}")
            return
        except OSError as exc:
            logger.error(f"Failed to load call history from {self.storage_path}: {exc}")
            return

        if not isinstance(data, dict):
            logger.error(
                f"Invalid history file format: expected dict, got {type(data).__name__}"
            )
            return

        calls = data.get("calls")
        if not isinstance(calls, list):
            logger.error("Invalid history file: 'calls' is missing or not a list")
            return

        for call_data in calls:
            try:
                self.calls.append(CallRecord.from_dict(call_data))
            except (TypeError, AttributeError) as exc:
                logger.warning(f"Skipping invalid call record: {exc}")

        logger.info(f"Loaded {len(self.calls)} call records from {self.storage_path}")

    def save(self) -> None:
        """Write call history to the storage file."""
        if len(self.calls) > self.max_entries:
            self.calls = self.calls[-self.max_entries :]

        data = {
            "version": HISTORY_VERSION,
            "calls": [call.to_dict() for call in self.calls],
        }

        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.storage_path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as exc:
            logger.error(f"Failed to save call history to {self.storage_path}: {exc}")
            return

        logger.debug(f"Saved {len(self.calls)} call records to {self.storage_path}")

    def add_call(
        self,
        direction: str,
        peer_id: str,
        display_name: str,
        duration_sec: int,
        answered: bool,
        call_id: str,
        kind: str = "video",
        end_reason: Optional[str] = None,
    ) -> CallRecord:
        """
        Add a call to the history and persist it.

        Args:
            direction: "incoming" or "outgoing"
            peer_id: Counterpart's user id
            display_name: Counterpart's display name
            duration_sec: Connected time in seconds, 0 if never connected
            answered: Whether the call reached the connected state
            call_id: Unique call ID
            kind: "video" or "voice"
            end_reason: Why the call ended
        """
        record = CallRecord(
            timestamp=datetime.now().isoformat(),
            direction=direction,
            peer_id=peer_id,
            display_name=display_name,
            duration_sec=duration_sec,
            answered=answered,
            call_id=call_id,
            kind=kind,
            end_reason=end_reason,
        )

        self.calls.append(record)
        self.save()

        logger.info(
            f"Added {direction} {kind} call to history: "
            f"peer={peer_id}, answered={answered}, duration={duration_sec}s, reason={end_reason}"
        )
        return record

    def get_recent_calls(self, limit: int = 50) -> list[CallRecord]:
        """Most recent calls, newest first."""
        sorted_calls = sorted(self.calls, key=lambda c: c.timestamp, reverse=True)
        return sorted_calls[:limit]

    def get_calls_for_peer(self, peer_id: str, limit: int = 10) -> list[CallRecord]:
        peer_calls = [call for call in self.calls if call.peer_id == peer_id]
        sorted_calls = sorted(peer_calls, key=lambda c: c.timestamp, reverse=True)
        return sorted_calls[:limit]

    def get_statistics(self) -> dict:
        """
        Get call statistics.

        Returns:
            Dictionary with totals, answered/missed counts, total duration
            and a count per end reason.
        """
        total_calls = len(self.calls)
        answered_calls = sum(1 for call in self.calls if call.answered)
        by_reason: dict[str, int] = {}
        for call in self.calls:
            if call.end_reason:
                by_reason[call.end_reason] = by_reason.get(call.end_reason, 0) + 1

        return {
            "total_calls": total_calls,
            "answered_calls": answered_calls,
            "missed_calls": total_calls - answered_calls,
            "total_duration_sec": sum(call.duration_sec for call in self.calls),
            "incoming_calls": sum(1 for call in self.calls if call.direction == "incoming"),
            "outgoing_calls": sum(1 for call in self.calls if call.direction == "outgoing"),
            "end_reasons": by_reason,
        }

    def clear_history(self) -> None:
        self.calls.clear()
        self.save()
        logger.info("Call history cleared")
