from __future__ import annotations

import time
from typing import Callable, Optional, Tuple

from telehealth_rtc.core.signaling import CallSignal

Decision = Tuple[bool, str]


class CallEventFilter:
    """
    Stateless-ish helper that enforces basic validation and duplicate suppression
    for inbound call signals before they are handed to the state machine.
    """

    def __init__(
        self,
        local_id: str,
        dupe_window_sec: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.local_id = local_id
        self.dupe_window_sec = dupe_window_sec
        self._clock = clock
        self._recent: dict[tuple[str, str, str], float] = {}

    def evaluate(
        self,
        signal: CallSignal,
        current_call_id: Optional[str],
        current_peer_id: Optional[str],
    ) -> Decision:
        """
        Returns (allowed, reason).
        Reasons (when allowed is False):
        - no_sender
        - from_self
        - duplicate
        - unknown_call_idle
        - foreign_peer
        - foreign_call
        """
        if not signal.peer_id:
            return False, "no_sender"
        if signal.peer_id == self.local_id:
            return False, "from_self"

        now = self._clock()
        self._expire(now)
        if signal.call_id:
            key = (signal.peer_id, signal.call_id, signal.event)
            last_seen = self._recent.get(key)
            if last_seen is not None and (now - last_seen) < self.dupe_window_sec:
                return False, "duplicate"
            self._recent[key] = now

        if signal.action == "request":
            return True, "ok"

        if current_call_id is None:
            return False, "unknown_call_idle"
        if current_peer_id and signal.peer_id != current_peer_id:
            return False, "foreign_peer"
        # Relays that do not echo callId are matched on the counterpart alone.
        if signal.call_id and signal.call_id != current_call_id:
            return False, "foreign_call"

        return True, "ok"

    def _expire(self, now: float) -> None:
        stale = [k for k, seen in self._recent.items() if now - seen >= self.dupe_window_sec]
        for key in stale:
            del self._recent[key]
