from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional
import datetime
import uuid


# Relay event names
DISCONNECTED = "disconnected"  # synthetic, emitted by the transport itself
ONLINE_USERS_LIST = "online-users-list"
REQUEST_ONLINE_USERS = "request-online-users"
USER_ONLINE = "user-online"
USER_OFFLINE = "user-offline"
JOIN_CHAT = "join-chat"
SEND_MESSAGE = "send-message"
NEW_MESSAGE = "new-message"
MESSAGE_DELIVERED = "message-delivered"
MESSAGE_QUEUED = "message-queued"
MESSAGE_ERROR = "message-error"
MESSAGE_READ = "message-read"
TYPING = "typing"
USER_TYPING = "user-typing"
ICE_CANDIDATE = "ice-candidate"


class CallKind(str, Enum):
    VIDEO = "video"
    VOICE = "voice"



CALL_ACTIONS: tuple[str, ...] = ("request", "answer", "reject", "end", "failed")

# Legacy event names some relay builds still emit for the same signals.
INBOUND_ALIASES: Dict[str, tuple[CallKind, str]] = {
    "call-request": (CallKind.VIDEO, "request"),
    "call-answer": (CallKind.VIDEO, "answer"),
    "call-rejected": (CallKind.VIDEO, "reject"),
    "call-ended": (CallKind.VIDEO, "end"),
    "call-failed": (CallKind.VIDEO, "failed"),
    "incoming-video-call": (CallKind.VIDEO, "request"),
    "video-call-accepted": (CallKind.VIDEO, "answer"),
    "video-call-rejected": (CallKind.VIDEO, "reject"),
    "video-call-ended": (CallKind.VIDEO, "end"),
    "incoming-voice-call": (CallKind.VOICE, "request"),
    "voice-call-accepted": (CallKind.VOICE, "answer"),
    "voice-call-rejected": (CallKind.VOICE, "reject"),
    "voice-call-ended": (CallKind.VOICE, "end"),
    "voice-call-failed": (CallKind.VOICE, "failed"),
}


def call_event(kind: CallKind, action: str) -> str:
    """Canonical event name, e.g. ``video-call-request``."""
    if action not in CALL_ACTIONS:
        raise ValueError(f"Unknown call action: {action}")
    return f"{CallKind(kind).value}-call-{action}"


def inbound_call_events() -> Dict[str, tuple[CallKind, str]]:
    """Every inbound event name that carries a call signal, canonical names and aliases."""
    events = {
        call_event(kind, action): (kind, action)
        for kind in CallKind
        for action in CALL_ACTIONS
    }
    events.update(INBOUND_ALIASES)
    return events


def new_call_id() -> str:
    return str(uuid.uuid4())


def new_client_id() -> str:
    return f"local-{uuid.uuid4().hex}"


def iso_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class CallSignal:
    """One call negotiation message, in either direction."""

    action: str
    kind: CallKind
    peer_id: str
    call_id: str | None = None
    offer: Dict[str, Any] | None = None
    answer: Dict[str, Any] | None = None
    reason: str | None = None
    caller_info: Dict[str, Any] | None = None

    @property
    def event(self) -> str:
        return call_event(self.kind, self.action)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"to": self.peer_id}

        if self.call_id:
            payload["callId"] = self.call_id
        if self.offer is not None:
            payload["offer"] = self.offer
        if self.answer is not None:
            payload["answer"] = self.answer
        if self.reason:
            payload["reason"] = self.reason
        if self.caller_info is not None:
            payload["callerInfo"] = self.caller_info

        return payload

    @classmethod
    def from_payload(
        cls, kind: CallKind, action: str, payload: Optional[Dict[str, Any]]
    ) -> "CallSignal":
        payload = payload or {}
        caller_info = payload.get("callerInfo")
        # Older relays only identify the caller inside callerInfo.
        peer_id = payload.get("from")
        if not peer_id and isinstance(caller_info, dict):
            peer_id = caller_info.get("id")
        if not peer_id:
            peer_id = payload.get("recipientId", "")

        return cls(
            action=action,
            kind=CallKind(kind),
            peer_id=str(peer_id or ""),
            call_id=payload.get("callId"),
            offer=payload.get("offer"),
            answer=payload.get("answer"),
            reason=payload.get("reason"),
            caller_info=caller_info,
        )


def build_request(
    to_id: str,
    kind: CallKind,
    call_id: str,
    offer: Dict[str, Any],
    caller_id: str,
    caller_name: str,
) -> CallSignal:
    return CallSignal(
        action="request",
        kind=kind,
        peer_id=to_id,
        call_id=call_id,
        offer=offer,
        caller_info={"id": caller_id, "name": caller_name, "type": CallKind(kind).value},
    )


def build_answer(
    to_id: str, kind: CallKind, call_id: str, answer: Dict[str, Any]
) -> CallSignal:
    return CallSignal(
        action="answer", kind=kind, peer_id=to_id, call_id=call_id, answer=answer
    )


def build_reject(to_id: str, kind: CallKind, call_id: str, reason: str) -> CallSignal:
    return CallSignal(
        action="reject", kind=kind, peer_id=to_id, call_id=call_id, reason=reason
    )


def build_end(to_id: str, kind: CallKind, call_id: str) -> CallSignal:
    return CallSignal(action="end", kind=kind, peer_id=to_id, call_id=call_id)


@dataclass
class CandidateSignal:
    peer_id: str
    candidate: Dict[str, Any] | None
    call_id: str | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"to": self.peer_id, "candidate": self.candidate}
        if self.call_id:
            payload["callId"] = self.call_id
        return payload

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "CandidateSignal":
        payload = payload or {}
        return cls(
            peer_id=str(payload.get("from", "")),
            candidate=payload.get("candidate"),
            call_id=payload.get("callId"),
        )


def build_chat_message(
    to_id: str, content: str, message_type: str = "text", client_id: str | None = None
) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "content": content,
        "type": message_type,
        "timestamp": iso_timestamp(),
    }
    if client_id:
        # "id" is what the relay echoes back as messageId in message-error.
        message["id"] = client_id
        message["clientId"] = client_id
    return {"to": to_id, "message": message}


def build_typing(to_id: str, is_typing: bool) -> Dict[str, Any]:
    return {"to": to_id, "isTyping": bool(is_typing)}


@dataclass
class Credentials:
    """What the relay's auth middleware needs, plus who we are locally."""

    token: str
    user_id: str = ""
    user_type: str = "patient"
    display_name: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_auth(self) -> Dict[str, Any]:
        auth = {
            "token": self.token,
            "userType": self.user_type,
            "displayName": self.display_name,
            # Older relay builds read the display name from this key.
            "userName": self.display_name,
        }
        auth.update(self.extra)
        return auth
