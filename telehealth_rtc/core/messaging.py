"""
Messaging channel: chat with one counterpart over the relay.

Outgoing messages are appended locally as ``pending`` before the relay sees
them. The relay's receipts (message-delivered / message-queued) carry only
its own database id, so receipts are matched to pending messages in send
order; a self echo that carries our ``clientId`` is reconciled directly.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from telehealth_rtc.core.signaling import (
    DISCONNECTED,
    JOIN_CHAT,
    MESSAGE_DELIVERED,
    MESSAGE_ERROR,
    MESSAGE_QUEUED,
    MESSAGE_READ,
    NEW_MESSAGE,
    SEND_MESSAGE,
    TYPING,
    USER_TYPING,
    build_chat_message,
    build_typing,
    iso_timestamp,
    new_client_id,
)
from telehealth_rtc.core.transport import SignalingTransport
from telehealth_rtc.logging_config import get_logger

logger = get_logger("messaging")


class SenderKind(str, Enum):
    SELF = "self"
    COUNTERPART = "counterpart"


class DeliveryState(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


@dataclass
class Message:
    id: str
    sender_id: str
    sender_kind: SenderKind
    content: str
    sent_at: str
    delivery_state: DeliveryState = DeliveryState.PENDING
    message_type: str = "text"
    client_id: Optional[str] = None
    sender_name: Optional[str] = None
    read: bool = False
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], self_id: Optional[str]) -> "Message":
        sender = payload.get("sender", payload.get("senderId", ""))
        if isinstance(sender, dict):
            sender = sender.get("_id") or sender.get("id") or ""
        sender = str(sender)

        message_id = payload.get("_id") or payload.get("id") or new_client_id()
        return cls(
            id=str(message_id),
            sender_id=sender,
            sender_kind=SenderKind.SELF if self_id and sender == self_id else SenderKind.COUNTERPART,
            content=str(payload.get("content") or payload.get("message") or ""),
            sent_at=str(
                payload.get("createdAt") or payload.get("timestamp") or iso_timestamp()
            ),
            delivery_state=DeliveryState.DELIVERED,
            message_type=payload.get("type", "text"),
            client_id=payload.get("clientId"),
            sender_name=payload.get("senderName"),
            read=bool(payload.get("read", False)),
        )


@dataclass
class TypingState:
    is_typing: bool = False
    last_signal_at: float = 0.0


class MessagingChannel:
    """Text chat, typing indicators and delivery receipts for one counterpart."""

    def __init__(
        self,
        transport: SignalingTransport,
        self_id: str,
        counterpart_id: Optional[str] = None,
        self_type: str = "patient",
        typing_debounce: float = 1.0,
        typing_expiry: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.self_id = self_id
        self.counterpart_id = counterpart_id
        self.self_type = self_type
        self.typing_debounce = typing_debounce
        self.typing_expiry = typing_expiry
        self._clock = clock

        self.messages: list[Message] = []
        self.typing: dict[str, TypingState] = {}

        self.on_message: Optional[Callable[[Message], None]] = None
        self.on_message_updated: Optional[Callable[[Message], None]] = None
        self.on_typing_changed: Optional[Callable[[str, bool], None]] = None

        self._awaiting_receipt: deque[Message] = deque()
        self._local_typing = False
        self._typing_stop_task: Optional[asyncio.Task] = None
        self._expiry_tasks: dict[str, asyncio.Task] = {}

        transport.subscribe(NEW_MESSAGE, self._on_new_message)
        transport.subscribe(MESSAGE_DELIVERED, self._on_delivered)
        transport.subscribe(MESSAGE_QUEUED, self._on_queued)
        transport.subscribe(MESSAGE_ERROR, self._on_error)
        transport.subscribe(MESSAGE_READ, self._on_read)
        transport.subscribe(USER_TYPING, self._on_user_typing)
        transport.subscribe(DISCONNECTED, self._on_disconnected)

    @property
    def is_counterpart_typing(self) -> bool:
        state = self.typing.get(self.counterpart_id or "")
        return bool(state and state.is_typing)

    async def join_chat(self) -> bool:
        """Ask the relay to put both parties of this conversation in one room."""
        if not self.counterpart_id:
            return False
        if self.self_type == "doctor":
            room = {"doctorId": self.self_id, "patientId": self.counterpart_id}
        else:
            room = {"doctorId": self.counterpart_id, "patientId": self.self_id}
        return await self.transport.send(JOIN_CHAT, room)

    async def send(self, content: str, message_type: str = "text") -> Optional[Message]:
        """
        Send a chat message, appending it locally as pending first.

        Returns:
            The optimistic Message, or None if there is no counterpart,
            no connection, or nothing to send.
        """
        if not content or not content.strip():
            return None
        if not self.counterpart_id:
            logger.warning("Cannot send message: no counterpart selected")
            return None
        if not self.transport.connected:
            logger.warning("Cannot send message: not connected to relay")
            return None

        client_id = new_client_id()
        payload = build_chat_message(self.counterpart_id, content, message_type, client_id)
        message = Message(
            id=client_id,
            client_id=client_id,
            sender_id=self.self_id,
            sender_kind=SenderKind.SELF,
            content=content,
            sent_at=payload["message"]["timestamp"],
            message_type=message_type,
        )
        self.messages.append(message)
        self._awaiting_receipt.append(message)
        if self.on_message:
            self.on_message(message)

        if not await self.transport.send(SEND_MESSAGE, payload):
            # The relay never saw it, so no receipt will come; it stays pending.
            self._discard_receipt(message)
        return message

    async def mark_read(self, message: Message) -> bool:
        """Tell the sender that ``message`` has been read."""
        if message.sender_kind is SenderKind.SELF or message.read:
            return False
        message.read = True
        return await self.transport.send(
            MESSAGE_READ,
            {"messageId": message.id, "readBy": self.self_id, "readAt": iso_timestamp()},
        )

    async def notify_typing(self, is_typing: bool) -> None:
        """
        Report local typing activity.

        The first ``True`` emits ``typing: true``; each ``True`` re-arms a
        timer that emits ``typing: false`` after ``typing_debounce`` seconds
        of silence. ``False`` stops immediately, emitting at most once.
        """
        if not self.counterpart_id:
            return

        if is_typing:
            if not self._local_typing:
                if await self.transport.send(TYPING, build_typing(self.counterpart_id, True)):
                    self._local_typing = True
            self._rearm_typing_stop()
        else:
            self._cancel_typing_stop()
            await self._stop_typing()

    def close(self) -> None:
        """Cancel pending typing timers."""
        self._cancel_typing_stop()
        for task in self._expiry_tasks.values():
            task.cancel()
        self._expiry_tasks.clear()

    async def _stop_typing(self) -> None:
        if not self._local_typing:
            return
        self._local_typing = False
        await self.transport.send(TYPING, build_typing(self.counterpart_id, False))

    def _rearm_typing_stop(self) -> None:
        self._cancel_typing_stop()
        self._typing_stop_task = asyncio.get_running_loop().create_task(
            self._typing_stop_after(self.typing_debounce)
        )

    def _cancel_typing_stop(self) -> None:
        if self._typing_stop_task is not None:
            self._typing_stop_task.cancel()
            self._typing_stop_task = None

    async def _typing_stop_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._typing_stop_task = None
        await self._stop_typing()

    def _discard_receipt(self, message: Message) -> None:
        try:
            self._awaiting_receipt.remove(message)
        except ValueError:
            pass

    def _find(self, message_id: Optional[str]) -> Optional[Message]:
        if not message_id:
            return None
        for message in reversed(self.messages):
            if message.id == message_id or message.client_id == message_id:
                return message
        return None

    def _match_receipt(self, payload: dict[str, Any]) -> Optional[Message]:
        """Find the pending message a receipt refers to, in send order as a fallback."""
        message = self._find(payload.get("clientId")) or self._find(
            payload.get("messageId") and str(payload["messageId"])
        )
        if message is not None:
            self._discard_receipt(message)
            return message
        if self._awaiting_receipt:
            return self._awaiting_receipt.popleft()
        return None

    def _updated(self, message: Message) -> None:
        if self.on_message_updated:
            self.on_message_updated(message)

    def _on_new_message(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning(f"Ignoring malformed message payload: {payload!r}")
            return

        incoming = Message.from_payload(payload, self.self_id)
        if self._find(incoming.id) is not None:
            logger.debug(f"Ignoring redelivered message {incoming.id}")
            return

        if incoming.sender_kind is SenderKind.SELF:
            local = self._find(incoming.client_id)
            if local is not None:
                local.id = incoming.id
                local.delivery_state = DeliveryState.DELIVERED
                self._discard_receipt(local)
                self._updated(local)
                return
            # No correlation id in the echo: appended as a second copy.
            logger.debug("Self echo without clientId; appending")
        else:
            self._set_typing(incoming.sender_id, False)

        self.messages.append(incoming)
        if self.on_message:
            self.on_message(incoming)

    def _on_delivered(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        message = self._match_receipt(payload)
        if message is None:
            logger.debug(f"Delivery receipt with no pending message: {payload!r}")
            return
        if payload.get("messageId"):
            message.id = str(payload["messageId"])
        message.delivery_state = DeliveryState.DELIVERED
        message.error = None
        self._updated(message)

    def _on_queued(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        message = self._match_receipt(payload)
        if message is None:
            return
        if payload.get("messageId"):
            message.id = str(payload["messageId"])
        logger.info(f"Message {message.id} queued by relay: {payload.get('reason', 'recipient offline')}")
        self._updated(message)

    def _on_error(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        message = self._match_receipt(payload)
        if message is None:
            return
        message.error = str(payload.get("error") or "delivery failed")
        logger.warning(f"Message {message.id} failed: {message.error}")
        self._updated(message)

    def _on_read(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        message = self._find(payload.get("messageId") and str(payload["messageId"]))
        if message is not None and not message.read:
            message.read = True
            self._updated(message)

    def _on_user_typing(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("userId"):
            return
        user_id = str(payload["userId"])
        if user_id == self.self_id:
            return
        self._set_typing(user_id, bool(payload.get("isTyping")))

    def _set_typing(self, user_id: str, is_typing: bool) -> None:
        state = self.typing.setdefault(user_id, TypingState())
        changed = state.is_typing != is_typing
        state.is_typing = is_typing
        state.last_signal_at = self._clock()

        task = self._expiry_tasks.pop(user_id, None)
        if task is not None:
            task.cancel()
        if is_typing:
            # A lost typing:false must not leave the indicator on forever.
            self._expiry_tasks[user_id] = asyncio.get_running_loop().create_task(
                self._expire_typing(user_id, self.typing_expiry)
            )

        if changed and self.on_typing_changed:
            self.on_typing_changed(user_id, is_typing)

    async def _expire_typing(self, user_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._expiry_tasks.pop(user_id, None)
        state = self.typing.get(user_id)
        if state is not None and state.is_typing:
            logger.debug(f"Typing indicator for {user_id} expired")
            state.is_typing = False
            if self.on_typing_changed:
                self.on_typing_changed(user_id, False)

    def _on_disconnected(self, payload: Any) -> None:
        self._cancel_typing_stop()
        self._local_typing = False
        # Receipts for anything sent before the drop will never arrive.
        self._awaiting_receipt.clear()
        for user_id, state in self.typing.items():
            if state.is_typing:
                self._set_typing(user_id, False)
