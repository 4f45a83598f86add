"""Tests for the Socket.IO signaling transport."""

import asyncio

import pytest

from telehealth_rtc.core.errors import AuthError, NotConnected, TransportError
from telehealth_rtc.core.signaling import DISCONNECTED, Credentials
from telehealth_rtc.core.transport import SignalingTransport

from conftest import deliver


class TestConnect:
    async def test_connect_sends_auth(self, socket_factory, credentials):
        transport = SignalingTransport("http://relay.test", client_factory=socket_factory)

        connection = await transport.connect(credentials)

        assert connection.connected
        assert connection.sid == "fake-sid"
        assert socket_factory.client.auth["token"] == "tok-123"
        assert socket_factory.client.auth["userType"] == "patient"
        assert socket_factory.client.kwargs["reconnection"] is False
        await transport.close()

    async def test_missing_token_is_auth_error(self, socket_factory):
        transport = SignalingTransport("http://relay.test", client_factory=socket_factory)

        with pytest.raises(AuthError):
            await transport.connect(Credentials(token=""))
        assert socket_factory.clients == []

    async def test_refused_token_is_auth_error(self, socket_factory, credentials):
        socket_factory.refusal = "Authentication error: invalid token"
        transport = SignalingTransport("http://relay.test", client_factory=socket_factory)

        with pytest.raises(AuthError, match="invalid token"):
            await transport.connect(credentials)
        assert not transport.connected
        await transport.close()

    async def test_unreachable_relay_is_transport_error(self, socket_factory, credentials):
        socket_factory.error = OSError("Connection refused")
        transport = SignalingTransport("http://relay.test", client_factory=socket_factory)

        with pytest.raises(TransportError):
            await transport.connect(credentials)
        assert isinstance(transport.connection.last_error, OSError)
        await transport.close()


class TestSendAndDispatch:
    async def test_send_while_connected(self, transport):
        assert await transport.send("typing", {"to": "doc-1", "isTyping": True})
        assert transport._sio.sent("typing") == [{"to": "doc-1", "isTyping": True}]

    async def test_send_while_disconnected_reports_not_connected(self, transport):
        await transport._sio.drop()

        assert await transport.send("typing", {"to": "doc-1"}) is False
        assert isinstance(transport.connection.last_error, NotConnected)

    async def test_handlers_run_in_order(self, transport):
        seen = []
        transport.subscribe("user-online", lambda p: seen.append(("a", p["userId"])))

        async def second(payload):
            seen.append(("b", payload["userId"]))

        transport.subscribe("user-online", second)
        await deliver(transport, "user-online", {"userId": "u1"})

        assert seen == [("a", "u1"), ("b", "u1")]

    async def test_events_are_dispatched_one_at_a_time(self, transport):
        order = []

        async def slow(payload):
            order.append(f"start-{payload}")
            await asyncio.sleep(0.01)
            order.append(f"end-{payload}")

        transport.subscribe("tick", slow)
        await transport._sio.inject("tick", 1)
        await transport._sio.inject("tick", 2)
        await transport.join()

        assert order == ["start-1", "end-1", "start-2", "end-2"]

    async def test_failing_handler_does_not_stop_others(self, transport):
        seen = []

        def broken(payload):
            raise KeyError("boom")

        transport.subscribe("user-online", broken)
        transport.subscribe("user-online", seen.append)
        await deliver(transport, "user-online", {"userId": "u1"})

        assert seen == [{"userId": "u1"}]

    async def test_unsubscribe(self, transport):
        seen = []
        unsubscribe = transport.subscribe("user-online", seen.append)
        unsubscribe()
        await deliver(transport, "user-online", {"userId": "u1"})

        assert seen == []


class TestDisconnect:
    async def test_disconnected_event_reported_once(self, transport):
        seen = []
        transport.subscribe(DISCONNECTED, seen.append)

        await transport._sio.drop()
        await transport._sio.drop()
        await transport.join()

        assert seen == [{"reason": "transport close"}]
        assert not transport.connected

    async def test_reconnect_uses_last_credentials(self, transport, socket_factory):
        await transport._sio.drop()

        connection = await transport.reconnect()

        assert connection.connected
        assert len(socket_factory.clients) == 2
        assert socket_factory.client.auth["token"] == "tok-123"

    async def test_disconnect_after_reconnect_is_reported_again(self, transport):
        seen = []
        transport.subscribe(DISCONNECTED, seen.append)

        await transport._sio.drop()
        await transport.reconnect()
        await transport._sio.drop()
        await transport.join()

        assert len(seen) == 2

    async def test_connect_delivers_pending_disconnect_first(self, transport, credentials):
        states = []
        transport.subscribe(DISCONNECTED, lambda payload: states.append(transport.connected))

        await transport._sio.drop()
        await transport.connect(credentials)
        await transport.join()

        assert states == [False]
        assert transport.connected
