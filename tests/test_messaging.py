"""Tests for chat messages, receipts and typing indicators."""

import asyncio

import pytest

from telehealth_rtc.core.messaging import DeliveryState, MessagingChannel, SenderKind

from conftest import deliver


@pytest.fixture
def channel(transport):
    channel = MessagingChannel(
        transport,
        "pat-1",
        counterpart_id="doc-1",
        typing_debounce=0.05,
        typing_expiry=0.05,
    )
    yield channel
    channel.close()


class TestSend:
    async def test_send_appends_pending_then_emits(self, channel, transport):
        message = await channel.send("hello")

        assert message.delivery_state is DeliveryState.PENDING
        assert message.sender_kind is SenderKind.SELF
        assert channel.messages == [message]
        (payload,) = transport._sio.sent("send-message")
        assert payload["to"] == "doc-1"
        assert payload["message"]["clientId"] == message.client_id

    async def test_blank_message_not_sent(self, channel, transport):
        assert await channel.send("   ") is None
        assert transport._sio.sent("send-message") == []

    async def test_not_sent_while_disconnected(self, channel, transport):
        await transport._sio.drop()
        await transport.join()

        assert await channel.send("hello") is None
        assert channel.messages == []

    async def test_join_chat_room_for_patient(self, channel, transport):
        assert await channel.join_chat()
        assert transport._sio.sent("join-chat") == [{"doctorId": "doc-1", "patientId": "pat-1"}]


class TestReceipts:
    async def test_delivered_receipt_assigns_canonical_id(self, channel, transport):
        first = await channel.send("one")
        second = await channel.send("two")

        await deliver(transport, "message-delivered", {"messageId": "db-1", "deliveredAt": "now"})

        assert first.id == "db-1"
        assert first.delivery_state is DeliveryState.DELIVERED
        assert second.delivery_state is DeliveryState.PENDING

    async def test_queued_receipt_keeps_pending(self, channel, transport):
        message = await channel.send("one")

        await deliver(transport, "message-queued", {"messageId": "db-9"})

        assert message.id == "db-9"
        assert message.delivery_state is DeliveryState.PENDING

    async def test_error_receipt_matches_client_id(self, channel, transport):
        first = await channel.send("one")
        second = await channel.send("two")

        await deliver(transport, "message-error", {"messageId": second.client_id, "error": "too long"})

        assert second.error == "too long"
        assert first.error is None
        assert second.delivery_state is DeliveryState.PENDING

    async def test_self_echo_reconciled_by_client_id(self, channel, transport):
        message = await channel.send("hello")

        await deliver(
            transport,
            "new-message",
            {"_id": "db-1", "sender": {"_id": "pat-1"}, "content": "hello", "clientId": message.client_id},
        )

        assert channel.messages == [message]
        assert message.id == "db-1"
        assert message.delivery_state is DeliveryState.DELIVERED

    async def test_redelivered_message_ignored(self, channel, transport):
        payload = {"_id": "db-5", "sender": "doc-1", "content": "hi"}

        await deliver(transport, "new-message", payload)
        await deliver(transport, "new-message", payload)

        assert len(channel.messages) == 1
        assert channel.messages[0].sender_kind is SenderKind.COUNTERPART

    async def test_read_receipts(self, channel, transport):
        await deliver(transport, "new-message", {"_id": "db-5", "sender": "doc-1", "content": "hi"})
        incoming = channel.messages[0]

        assert await channel.mark_read(incoming)
        assert await channel.mark_read(incoming) is False
        (payload,) = transport._sio.sent("message-read")
        assert payload["messageId"] == "db-5"
        assert payload["readBy"] == "pat-1"

        mine = await channel.send("reply")
        await deliver(transport, "message-delivered", {"messageId": "db-6"})
        await deliver(transport, "message-read", {"messageId": "db-6", "readBy": "doc-1"})
        assert mine.read


class TestTyping:
    async def test_repeated_typing_emits_one_true(self, channel, transport):
        await channel.notify_typing(True)
        await channel.notify_typing(True)

        assert transport._sio.sent("typing") == [{"to": "doc-1", "isTyping": True}]

    async def test_typing_stops_after_debounce(self, channel, transport):
        await channel.notify_typing(True)
        await asyncio.sleep(0.1)
        await channel.notify_typing(False)

        assert transport._sio.sent("typing") == [
            {"to": "doc-1", "isTyping": True},
            {"to": "doc-1", "isTyping": False},
        ]

    async def test_explicit_stop_emits_once(self, channel, transport):
        await channel.notify_typing(True)
        await channel.notify_typing(False)
        await channel.notify_typing(False)
        await asyncio.sleep(0.1)

        assert [p["isTyping"] for p in transport._sio.sent("typing")] == [True, False]

    async def test_remote_typing_expires(self, channel, transport):
        changes = []
        channel.on_typing_changed = lambda user, typing: changes.append((user, typing))

        await deliver(transport, "user-typing", {"userId": "doc-1", "isTyping": True})
        assert channel.is_counterpart_typing
        await asyncio.sleep(0.1)

        assert not channel.is_counterpart_typing
        assert changes == [("doc-1", True), ("doc-1", False)]

    async def test_message_clears_remote_typing(self, channel, transport):
        await deliver(transport, "user-typing", {"userId": "doc-1", "isTyping": True})
        await deliver(transport, "new-message", {"_id": "db-1", "sender": "doc-1", "content": "hi"})

        assert not channel.is_counterpart_typing
