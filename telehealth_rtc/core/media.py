"""
Media negotiation: one aiortc peer connection per call session.

Negotiation flow:
- Caller: acquire local media → create offer → (relay) → set remote answer.
- Callee: acquire local media → create answer from the stored offer.
- Remote ICE candidates that arrive before the remote description is set
  are held in a FIFO queue and applied, in arrival order, once it is.

Local media capture goes through aiortc's MediaPlayer (FFmpeg device
inputs); sounddevice is used to check that a microphone exists at all.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from av.error import FFmpegError

from telehealth_rtc.core.errors import MediaAccessDenied, NegotiationError
from telehealth_rtc.core.signaling import CallKind
from telehealth_rtc.logging_config import get_logger

logger = get_logger("media")

_NEGOTIATION_ERRORS = (InvalidStateError, InvalidAccessError, ValueError)


class LocalMedia:
    """Tracks captured from the local devices for one call."""

    def __init__(self, tracks: Iterable[Any], players: Iterable[Any] = ()) -> None:
        self.tracks = [track for track in tracks if track is not None]
        self.players = list(players)
        self.released = False

    @property
    def kinds(self) -> set[str]:
        return {track.kind for track in self.tracks}

    def stop(self) -> None:
        """Stop every track. Safe to call more than once."""
        for track in self.tracks:
            if getattr(track, "readyState", "live") != "ended":
                track.stop()
        self.released = True


def check_microphone(device: Optional[int | str] = None) -> None:
    """
    Raise MediaAccessDenied unless an audio input device is present.

    Args:
        device: sounddevice index or name, None for the system default
    """
    try:
        import sounddevice as sd  # PortAudio is loaded on import
    except OSError as exc:
        raise MediaAccessDenied(f"Audio subsystem unavailable: {exc}") from exc

    try:
        info = sd.query_devices(device, kind="input")
    except (ValueError, sd.PortAudioError) as exc:
        raise MediaAccessDenied(f"No microphone available: {exc}") from exc
    logger.debug(f"Using microphone: {info.get('name', device)}")


async def open_local_media(kind: CallKind, settings: Optional[dict[str, Any]] = None) -> LocalMedia:
    """
    Capture microphone (and camera for video calls) through FFmpeg.

    Raises:
        MediaAccessDenied: the device is missing or access was refused
    """
    settings = settings or {}
    await asyncio.to_thread(check_microphone, settings.get("input_device"))

    players: list[MediaPlayer] = []
    try:
        audio_player = await asyncio.to_thread(
            MediaPlayer,
            settings.get("audio_device", "default"),
            format=settings.get("audio_format", "pulse"),
        )
        players.append(audio_player)

        if CallKind(kind) is CallKind.VIDEO:
            video_player = await asyncio.to_thread(
                MediaPlayer,
                settings.get("video_device", "/dev/video0"),
                format=settings.get("video_format", "v4l2"),
                options={
                    "video_size": str(settings.get("video_size", "640x480")),
                    "framerate": str(settings.get("framerate", 30)),
                },
            )
            players.append(video_player)
    except (FFmpegError, OSError) as exc:
        LocalMedia(_player_tracks(players)).stop()
        raise MediaAccessDenied(f"Could not open capture device: {exc}") from exc

    media = LocalMedia(_player_tracks(players), players)
    if "audio" not in media.kinds:
        media.stop()
        raise MediaAccessDenied("Capture device produced no audio track")
    if CallKind(kind) is CallKind.VIDEO and "video" not in media.kinds:
        media.stop()
        raise MediaAccessDenied("Capture device produced no video track")
    logger.info(f"Local media acquired: {sorted(media.kinds)}")
    return media


def _player_tracks(players: Iterable[MediaPlayer]) -> list[Any]:
    tracks = []
    for player in players:
        tracks.extend([player.audio, player.video])
    return tracks


def build_peer_connection(ice_servers: Iterable[str | dict[str, Any]] = ()) -> RTCPeerConnection:
    servers = []
    for entry in ice_servers:
        if isinstance(entry, dict):
            servers.append(
                RTCIceServer(
                    urls=entry["urls"],
                    username=entry.get("username"),
                    credential=entry.get("credential"),
                )
            )
        else:
            servers.append(RTCIceServer(urls=entry))
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))


def parse_description(desc: Any) -> RTCSessionDescription:
    if isinstance(desc, RTCSessionDescription):
        return desc
    if not isinstance(desc, dict):
        raise NegotiationError(f"Session description must be an object, got {type(desc).__name__}")
    sdp, desc_type = desc.get("sdp"), desc.get("type")
    if desc_type not in ("offer", "answer") or not isinstance(sdp, str) or not sdp.strip():
        raise NegotiationError(f"Malformed session description (type={desc_type!r})")
    return RTCSessionDescription(sdp=sdp, type=desc_type)


def description_to_payload(desc: RTCSessionDescription) -> dict[str, str]:
    return {"type": desc.type, "sdp": desc.sdp}


def parse_remote_candidate(payload: Any) -> Optional[RTCIceCandidate]:
    """
    Convert a browser-style ``RTCIceCandidateInit`` into an aiortc candidate.

    Returns None for the end-of-candidates marker (null or empty candidate).
    Raises ValueError when the candidate line cannot be parsed.
    """
    if payload is None:
        return None
    if isinstance(payload, RTCIceCandidate):
        return payload
    sdp_mid = sdp_mline_index = None
    if isinstance(payload, dict):
        line = payload.get("candidate") or ""
        sdp_mid = payload.get("sdpMid")
        sdp_mline_index = payload.get("sdpMLineIndex")
    elif isinstance(payload, str):
        line = payload
    else:
        raise ValueError(f"Unsupported candidate payload: {type(payload).__name__}")

    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]

    # foundation component protocol priority ip port "typ" type [extensions]
    if len(line.split()) < 8:
        raise ValueError(f"Unparseable candidate: {line!r}")
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = sdp_mid
    candidate.sdpMLineIndex = sdp_mline_index
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> dict[str, Any]:
    return {
        "candidate": f"candidate:{candidate_to_sdp(candidate)}",
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class PendingCandidateQueue:
    """FIFO of remote candidates waiting for the remote description."""

    def __init__(self) -> None:
        self._items: deque[Any] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def push(self, candidate: Any) -> None:
        self._items.append(candidate)

    def pop(self) -> Any:
        return self._items.popleft()

    def clear(self) -> None:
        self._items.clear()


class MediaNegotiationCoordinator:
    """
    Owns the peer connection and local media of exactly one call session.

    Once ``teardown()`` has run the coordinator is released and must not be
    reused; a new call gets a new coordinator.
    """

    def __init__(
        self,
        call_id: str,
        peer_factory: Callable[[], Any] = build_peer_connection,
        media_source: Callable[[CallKind], Awaitable[LocalMedia]] = open_local_media,
    ) -> None:
        self.call_id = call_id
        self._peer_factory = peer_factory
        self._media_source = media_source

        self.pc: Any = None
        self.local_media: Optional[LocalMedia] = None
        self.remote_tracks: list[Any] = []
        self.pending = PendingCandidateQueue()
        self.local_description_set = False
        self.remote_description_set = False
        self.released = False
        self.connection_state = "new"

        self._remote_description_requested = False
        self._draining = False
        self._senders: dict[str, tuple[Any, Any]] = {}

        self.on_connection_state: Optional[Callable[[str], Any]] = None
        self.on_remote_track: Optional[Callable[[Any], None]] = None
        self.on_local_candidate: Optional[Callable[[dict[str, Any]], Any]] = None

    def _peer(self) -> Any:
        if self.released:
            raise NegotiationError(f"Media for call {self.call_id} already released")
        if self.pc is None:
            self.pc = self._peer_factory()
            self.pc.on("connectionstatechange", self._on_connection_state_change)
            self.pc.on("track", self._on_track)
            # aiortc bundles its candidates into the SDP; other peer stacks trickle them.
            self.pc.on("icecandidate", self._on_local_candidate)
        return self.pc

    async def acquire_local_media(self, kind: CallKind) -> Optional[LocalMedia]:
        """
        Capture local media and attach it to the peer connection.

        Returns None if the coordinator was released while capture was in
        flight (the captured tracks are stopped immediately).

        Raises:
            MediaAccessDenied: access refused or no device; never retried here
        """
        if self.local_media is not None:
            return self.local_media
        self._peer()

        media = await self._media_source(CallKind(kind))
        if self.released:
            logger.info(f"Call {self.call_id} ended during media capture; releasing devices")
            media.stop()
            return None

        self.local_media = media
        for track in media.tracks:
            sender = self.pc.addTrack(track)
            self._senders[track.kind] = (sender, track)
        return media

    async def create_offer(self) -> dict[str, str]:
        pc = self._peer()
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except _NEGOTIATION_ERRORS as exc:
            raise NegotiationError(f"Could not create offer: {exc}") from exc
        self._check_live()
        self.local_description_set = True
        logger.debug(f"Local offer set for call {self.call_id}")
        return description_to_payload(pc.localDescription)

    async def create_answer(self, remote_offer: Any) -> dict[str, str]:
        description = parse_description(remote_offer)
        if description.type != "offer":
            raise NegotiationError(f"Expected an offer, got {description.type!r}")
        await self.set_remote_description(description)

        pc = self._peer()
        try:
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except _NEGOTIATION_ERRORS as exc:
            raise NegotiationError(f"Could not create answer: {exc}") from exc
        self._check_live()
        self.local_description_set = True
        logger.debug(f"Local answer set for call {self.call_id}")
        return description_to_payload(pc.localDescription)

    async def set_remote_description(self, desc: Any) -> None:
        """
        Apply the remote offer/answer, then flush queued candidates.

        Raises:
            NegotiationError: malformed description, or one was already set
        """
        if self._remote_description_requested:
            raise NegotiationError(f"Remote description already set for call {self.call_id}")
        description = parse_description(desc)
        pc = self._peer()
        self._remote_description_requested = True

        try:
            await pc.setRemoteDescription(description)
        except _NEGOTIATION_ERRORS as exc:
            raise NegotiationError(f"Remote {description.type} rejected: {exc}") from exc
        self._check_live()

        self.remote_description_set = True
        if len(self.pending):
            logger.debug(f"Applying {len(self.pending)} queued candidate(s) for call {self.call_id}")
        await self._drain_pending()

    async def add_remote_candidate(self, candidate: Any) -> None:
        """Queue or apply one remote candidate, preserving arrival order."""
        if self.released:
            logger.debug(f"Dropping candidate for released call {self.call_id}")
            return
        self.pending.push(candidate)
        if self.remote_description_set and not self._draining:
            await self._drain_pending()

    async def _drain_pending(self) -> None:
        # Candidates arriving mid-drain join the queue behind the ones in flight.
        self._draining = True
        try:
            while len(self.pending) and not self.released:
                await self._apply_candidate(self.pending.pop())
        finally:
            self._draining = False

    async def _apply_candidate(self, payload: Any) -> None:
        try:
            candidate = parse_remote_candidate(payload)
        except ValueError as exc:
            logger.warning(f"Skipping malformed candidate: {exc}")
            return
        if candidate is None:
            logger.debug("Remote end-of-candidates")
            return
        try:
            await self.pc.addIceCandidate(candidate)
        except _NEGOTIATION_ERRORS as exc:
            logger.warning(f"Peer transport rejected candidate: {exc}")

    def set_audio_enabled(self, enabled: bool) -> bool:
        """Mute or unmute the microphone without renegotiating."""
        return self._set_track_enabled("audio", enabled)

    def set_video_enabled(self, enabled: bool) -> bool:
        """Turn the camera feed off or back on without renegotiating."""
        return self._set_track_enabled("video", enabled)

    def _set_track_enabled(self, kind: str, enabled: bool) -> bool:
        entry = self._senders.get(kind)
        if entry is None or self.released:
            return False
        sender, track = entry
        sender.replaceTrack(track if enabled else None)
        logger.info(f"{kind} {'enabled' if enabled else 'disabled'} for call {self.call_id}")
        return True

    async def teardown(self) -> None:
        """Stop local tracks and close the peer connection. Idempotent."""
        first = not self.released
        self.released = True

        if self.local_media is not None:
            self.local_media.stop()
        self.pending.clear()
        self.remote_tracks.clear()
        self._senders.clear()

        if first:
            if self.pc is not None:
                await self.pc.close()
            logger.info(f"Media released for call {self.call_id}")

    def _check_live(self) -> None:
        if self.released:
            raise NegotiationError(f"Call {self.call_id} ended during negotiation")

    async def _on_connection_state_change(self) -> None:
        state = getattr(self.pc, "connectionState", "new")
        self.connection_state = state
        logger.info(f"Peer connection for call {self.call_id}: {state}")
        if self.released or self.on_connection_state is None:
            return
        result = self.on_connection_state(state)
        if inspect.isawaitable(result):
            await result

    def _on_track(self, track: Any) -> None:
        if self.released:
            return
        logger.info(f"Remote {track.kind} track received for call {self.call_id}")
        self.remote_tracks.append(track)
        if self.on_remote_track:
            self.on_remote_track(track)

    async def _on_local_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        if candidate is None or self.released or self.on_local_candidate is None:
            return
        result = self.on_local_candidate(candidate_to_payload(candidate))
        if inspect.isawaitable(result):
            await result
