"""
CommunicationHub: one relay connection and the components that share it.

The hub is the only place that knows how the pieces fit together; each
component receives the transport (and nothing else global) through its
constructor.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable, Optional

import socketio

from telehealth_rtc.call_history import CallHistory
from telehealth_rtc.config import Config
from telehealth_rtc.core.call_state import CallSession, CallSessionMachine, CoordinatorFactory
from telehealth_rtc.core.errors import AuthError, TransportError
from telehealth_rtc.core.media import (
    MediaNegotiationCoordinator,
    build_peer_connection,
    open_local_media,
)
from telehealth_rtc.core.message_filter import CallEventFilter
from telehealth_rtc.core.messaging import Message, MessagingChannel
from telehealth_rtc.core.presence import PresenceTracker
from telehealth_rtc.core.signaling import CallKind, Credentials
from telehealth_rtc.core.transport import Connection, SignalingTransport
from telehealth_rtc.logging_config import get_logger

logger = get_logger("hub")


class CommunicationHub:
    """
    Wires transport, presence, messaging and calls for one signed-in user.

    Args:
        config: Loaded configuration
        credentials: Token and identity presented to the relay
        counterpart_id: The user this client chats and calls with, if known
        client_factory: Socket.IO client class (tests pass a fake)
        coordinator_factory: Builds a media coordinator per call (tests pass a fake)
        call_history: History store; by default one next to the config file
    """

    def __init__(
        self,
        config: Config,
        credentials: Credentials,
        counterpart_id: Optional[str] = None,
        client_factory: Callable[..., Any] = socketio.AsyncClient,
        coordinator_factory: Optional[CoordinatorFactory] = None,
        call_history: Optional[CallHistory] = None,
    ) -> None:
        self.config = config
        self.credentials = credentials

        if call_history is None and config.record_history:
            call_history = CallHistory(config.config_path.parent / "call_history.json")
            call_history.load()
        self.call_history = call_history

        self.transport = SignalingTransport(
            config.relay_url,
            transports=config.relay_transports,
            connect_timeout=config.connect_timeout,
            client_factory=client_factory,
        )
        self.presence = PresenceTracker(self.transport, credentials.user_id)
        self.messaging = MessagingChannel(
            self.transport,
            credentials.user_id,
            counterpart_id=counterpart_id,
            self_type=credentials.user_type,
            typing_debounce=config.typing_debounce,
            typing_expiry=config.typing_expiry,
        )
        self.calls = CallSessionMachine(
            self.transport,
            credentials.user_id,
            display_name=credentials.display_name,
            coordinator_factory=coordinator_factory or self._make_coordinator,
            ring_timeout=config.ring_timeout,
            answer_timeout=config.answer_timeout,
            duration_tick=config.duration_tick,
            call_history=call_history,
            call_filter=CallEventFilter(credentials.user_id, config.dupe_window),
        )

    def _make_coordinator(self, call_id: str) -> MediaNegotiationCoordinator:
        return MediaNegotiationCoordinator(
            call_id,
            peer_factory=partial(build_peer_connection, self.config.ice_servers),
            media_source=partial(open_local_media, settings=self.config.get_section("media")),
        )

    @property
    def counterpart_id(self) -> Optional[str]:
        return self.messaging.counterpart_id

    @property
    def connected(self) -> bool:
        return self.transport.connected

    async def connect(self) -> Connection:
        """
        Connect to the relay, then ask for presence and join the chat room.

        Raises:
            AuthError: credentials missing or refused
            TransportError: relay unreachable
        """
        connection = await self.transport.connect(self.credentials)
        await self.presence.request_snapshot()
        await self.messaging.join_chat()
        return connection

    async def connect_with_backoff(
        self,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> Connection:
        """
        Connect, retrying transport failures with exponential backoff.

        AuthError is raised immediately; the last TransportError is raised
        once all attempts are used up.
        """
        default_attempts, default_delay = self.config.reconnect_policy
        attempts = max(1, attempts if attempts is not None else default_attempts)
        delay = base_delay if base_delay is not None else default_delay

        for attempt in range(1, attempts + 1):
            try:
                return await self.connect()
            except AuthError:
                raise
            except TransportError as exc:
                if attempt == attempts:
                    logger.error(f"Giving up on relay after {attempts} attempt(s)")
                    raise
                wait = delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Relay connection attempt {attempt}/{attempts} failed ({exc}); retrying in {wait:.1f}s"
                )
                await sleep(wait)
        raise TransportError("Relay connection failed")  # unreachable with attempts >= 1

    async def select_counterpart(self, user_id: str) -> None:
        """Switch the conversation to another user."""
        self.messaging.counterpart_id = user_id
        if self.connected:
            await self.messaging.join_chat()

    async def close(self) -> None:
        """End any call, stop typing timers and disconnect."""
        logger.info("Shutting down communication hub")
        await self.calls.close()
        self.messaging.close()
        await self.transport.close()

    # UI actions

    async def start_video_call(self, user_id: Optional[str] = None) -> CallSession:
        return await self._start_call(user_id, CallKind.VIDEO)

    async def start_voice_call(self, user_id: Optional[str] = None) -> CallSession:
        return await self._start_call(user_id, CallKind.VOICE)

    async def _start_call(self, user_id: Optional[str], kind: CallKind) -> CallSession:
        target = user_id or self.counterpart_id or ""
        record = self.presence.get(target)
        return await self.calls.start_call(target, kind, record.name if record else None)

    async def answer_call(self) -> CallSession:
        return await self.calls.answer()

    async def reject_call(self) -> None:
        await self.calls.reject()

    async def hang_up(self) -> None:
        await self.calls.hang_up()

    def reset_call(self) -> None:
        self.calls.reset()

    def set_muted(self, muted: bool) -> bool:
        return self.calls.set_muted(muted)

    def set_camera_enabled(self, enabled: bool) -> bool:
        return self.calls.set_camera_enabled(enabled)

    async def send_message(self, content: str, message_type: str = "text") -> Optional[Message]:
        return await self.messaging.send(content, message_type)

    async def notify_typing(self, is_typing: bool) -> None:
        await self.messaging.notify_typing(is_typing)
