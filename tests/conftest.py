"""
Shared fakes: a scripted Socket.IO client and an in-memory peer connection.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest
import socketio
from aiortc import RTCSessionDescription

from telehealth_rtc.core.errors import MediaAccessDenied
from telehealth_rtc.core.media import LocalMedia, MediaNegotiationCoordinator
from telehealth_rtc.core.signaling import CallKind, Credentials
from telehealth_rtc.core.transport import SignalingTransport

FAKE_OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"
FAKE_ANSWER = {"type": "answer", "sdp": "v=0\r\no=- 2 2 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"}
FAKE_OFFER = {"type": "offer", "sdp": FAKE_OFFER_SDP}


def candidate(port: int) -> dict[str, Any]:
    return {
        "candidate": f"candidate:1 1 UDP 2122252543 192.168.1.2 {port} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


class FakeSocketClient:
    """Stands in for socketio.AsyncClient; events are injected by the test."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.handlers: dict[str, Any] = {}
        self.emitted: list[tuple[str, Any]] = []
        self.connected = False
        self.sid = "fake-sid"
        self.url: Optional[str] = None
        self.auth: Optional[dict] = None
        self.transports: Optional[list] = None
        self.refusal: Optional[str] = None
        self.error: Optional[Exception] = None

    def on(self, event: str, handler: Any = None) -> None:
        self.handlers[event] = handler

    async def connect(self, url, auth=None, transports=None, wait_timeout=None) -> None:
        self.url, self.auth, self.transports = url, auth, transports
        if self.refusal:
            await self.handlers["connect_error"]({"message": self.refusal})
            raise socketio.exceptions.ConnectionError("One or more namespaces failed to connect")
        if self.error is not None:
            raise self.error
        self.connected = True
        await self.handlers["connect"]()

    async def emit(self, event: str, data: Any = None) -> None:
        if not self.connected:
            raise socketio.exceptions.BadNamespaceError("/ is not a connected namespace.")
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.connected = False
        await self.handlers["disconnect"]("client disconnect")

    async def inject(self, event: str, payload: Any = None) -> None:
        await self.handlers["*"](event, payload)

    async def drop(self) -> None:
        self.connected = False
        await self.handlers["disconnect"]("transport close")

    def sent(self, event: str) -> list[Any]:
        return [data for name, data in self.emitted if name == event]


class SocketFactory:
    def __init__(self) -> None:
        self.clients: list[FakeSocketClient] = []
        self.refusal: Optional[str] = None
        self.error: Optional[Exception] = None

    def __call__(self, **kwargs: Any) -> FakeSocketClient:
        client = FakeSocketClient(**kwargs)
        client.refusal = self.refusal
        client.error = self.error
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeSocketClient:
        return self.clients[-1]


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.readyState = "live"
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1
        self.readyState = "ended"


class FakeSender:
    def __init__(self, track: FakeTrack) -> None:
        self.track: Optional[FakeTrack] = track

    def replaceTrack(self, track: Optional[FakeTrack]) -> None:
        self.track = track


class FakePeerConnection:
    """Records what the coordinator does to it."""

    def __init__(self, close_delay: float = 0.0) -> None:
        self.handlers: dict[str, Any] = {}
        self.senders: list[FakeSender] = []
        self.candidates: list[Any] = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.close_calls = 0
        self.close_delay = close_delay
        self.log: list[str] = []

    def on(self, event: str, f: Any = None) -> Any:
        self.handlers[event] = f
        return f

    def addTrack(self, track: FakeTrack) -> FakeSender:
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=FAKE_OFFER_SDP, type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=FAKE_ANSWER["sdp"], type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        self.log.append("remote-description")
        self.remoteDescription = description

    async def addIceCandidate(self, ice_candidate: Any) -> None:
        self.log.append("candidate")
        self.candidates.append(ice_candidate)

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.connectionState = "closed"

    async def set_state(self, state: str) -> None:
        self.connectionState = state
        await self.handlers["connectionstatechange"]()

    @property
    def ports(self) -> list[int]:
        return [c.port for c in self.candidates]


class FakeMediaSource:
    """Async media source handing out fake tracks, or refusing access."""

    def __init__(self, deny: bool = False) -> None:
        self.deny = deny
        self.issued: list[LocalMedia] = []

    async def __call__(self, kind: CallKind) -> LocalMedia:
        if self.deny:
            raise MediaAccessDenied("Permission denied")
        tracks = [FakeTrack("audio")]
        if kind is CallKind.VIDEO:
            tracks.append(FakeTrack("video"))
        media = LocalMedia(tracks)
        self.issued.append(media)
        return media


class CoordinatorFactory:
    """Builds real coordinators over fake peers and media; keeps them for inspection."""

    def __init__(
        self, media_source: Optional[FakeMediaSource] = None, close_delay: float = 0.0
    ) -> None:
        self.media_source = media_source or FakeMediaSource()
        self.close_delay = close_delay
        self.coordinators: list[MediaNegotiationCoordinator] = []
        self.peers: list[FakePeerConnection] = []

    def _peer(self) -> FakePeerConnection:
        pc = FakePeerConnection(self.close_delay)
        self.peers.append(pc)
        return pc

    def __call__(self, call_id: str) -> MediaNegotiationCoordinator:
        coordinator = MediaNegotiationCoordinator(
            call_id, peer_factory=self._peer, media_source=self.media_source
        )
        self.coordinators.append(coordinator)
        return coordinator

    @property
    def peer(self) -> FakePeerConnection:
        return self.peers[-1]


async def deliver(transport: SignalingTransport, event: str, payload: Any = None) -> None:
    """Inject one relay event and wait until every handler has run."""
    await transport._sio.inject(event, payload)
    await transport.join()


@pytest.fixture
def socket_factory() -> SocketFactory:
    return SocketFactory()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(token="tok-123", user_id="pat-1", user_type="patient", display_name="Pat")


@pytest.fixture
async def transport(socket_factory, credentials):
    transport = SignalingTransport("http://relay.test", client_factory=socket_factory)
    await transport.connect(credentials)
    yield transport
    await transport.close()
