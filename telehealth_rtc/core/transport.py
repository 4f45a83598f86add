"""
Signaling transport: the single authenticated Socket.IO connection to the relay.

Inbound events are queued and handed to subscribers by one dispatcher task,
so no two handlers for a connection ever run at the same time. The
transport never retries on its own; reconnecting is the caller's policy.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import socketio

from telehealth_rtc.core.errors import AuthError, NotConnected, TransportError
from telehealth_rtc.core.signaling import DISCONNECTED, Credentials
from telehealth_rtc.logging_config import get_logger

logger = get_logger("transport")

Handler = Callable[[Any], Union[None, Awaitable[None]]]

_AUTH_MARKERS = ("auth", "token", "unauthorized", "forbidden", "jwt")


@dataclass
class Connection:
    user_id: str
    display_name: str
    user_type: str
    connected: bool = False
    last_error: Optional[Exception] = None
    sid: Optional[str] = None


class SignalingTransport:
    """
    Typed publish/subscribe over one relay connection.

    ``client_factory`` builds the Socket.IO client; tests pass a fake.
    """

    def __init__(
        self,
        relay_url: str,
        transports: Optional[list[str]] = None,
        connect_timeout: float = 10.0,
        client_factory: Callable[..., Any] = socketio.AsyncClient,
    ) -> None:
        self.relay_url = relay_url
        self.transports = transports or ["websocket", "polling"]
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._sio: Any = None
        self.connection: Optional[Connection] = None
        self._credentials: Optional[Credentials] = None
        self._handlers: dict[str, list[Handler]] = {}
        self._inbox: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._disconnect_reported = True
        self._connect_error_detail: Optional[str] = None

    @property
    def connected(self) -> bool:
        return bool(self.connection and self.connection.connected)

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for one event name. Returns an unsubscribe callable."""
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def connect(self, credentials: Optional[Credentials]) -> Connection:
        """
        Open the relay connection.

        Raises:
            AuthError: credentials are missing or the relay refused them
            TransportError: the relay could not be reached
        """
        if credentials is None or not credentials.token:
            raise AuthError("No authentication token available")

        if self.connected:
            logger.debug("connect() called while already connected; reusing connection")
            return self.connection  # type: ignore[return-value]

        # Events from the previous connection are delivered before the new one opens.
        await self.join()
        self._ensure_dispatcher()
        self._credentials = credentials
        self.connection = Connection(
            user_id=credentials.user_id,
            display_name=credentials.display_name,
            user_type=credentials.user_type,
        )

        self._sio = self._client_factory(reconnection=False, logger=False)
        self._sio.on("connect", handler=self._on_connect)
        self._sio.on("disconnect", handler=self._on_disconnect)
        self._sio.on("connect_error", handler=self._on_connect_error)
        self._sio.on("*", handler=self._on_event)
        self._connect_error_detail = None

        logger.info(f"Connecting to relay {self.relay_url} as {credentials.user_type}")
        try:
            await self._sio.connect(
                self.relay_url,
                auth=credentials.to_auth(),
                transports=self.transports,
                wait_timeout=self.connect_timeout,
            )
        except socketio.exceptions.ConnectionError as exc:
            # The relay's refusal reason arrives in connect_error, not in the exception.
            message = self._connect_error_detail or str(exc)
            self.connection.last_error = exc
            if any(marker in message.lower() for marker in _AUTH_MARKERS):
                logger.error(f"Relay refused credentials: {message}")
                raise AuthError(message) from exc
            logger.error(f"Failed to connect to relay: {message}")
            raise TransportError(message) from exc
        except (OSError, asyncio.TimeoutError) as exc:
            self.connection.last_error = exc
            logger.error(f"Network error connecting to relay: {exc}")
            raise TransportError(str(exc)) from exc

        self.connection.connected = True
        self.connection.last_error = None
        self.connection.sid = getattr(self._sio, "sid", None)
        self._disconnect_reported = False
        logger.info(f"Connected to relay (sid={self.connection.sid})")
        return self.connection

    async def reconnect(self) -> Connection:
        """Connect again with the last credentials."""
        if self._credentials is None:
            raise AuthError("No previous credentials to reconnect with")
        return await self.connect(self._credentials)

    async def disconnect(self) -> None:
        """Tear the connection down (logout or unmount)."""
        if self._sio is not None and self.connected:
            logger.info("Disconnecting from relay")
            try:
                await self._sio.disconnect()
            except (OSError, socketio.exceptions.SocketIOError) as exc:
                logger.warning(f"Error while disconnecting: {exc}")
        self._mark_disconnected("client disconnect")
        await self.join()

    async def close(self) -> None:
        """Disconnect and stop the dispatcher."""
        await self.disconnect()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    async def send(self, event: str, payload: Any = None) -> bool:
        """
        Emit one event to the relay.

        Returns False (and records ``NotConnected``) when the connection is down.
        Nothing is buffered for a later reconnect.
        """
        if not self.connected or self._sio is None:
            error = NotConnected(f"Cannot send '{event}': not connected to relay")
            if self.connection is not None:
                self.connection.last_error = error
            logger.warning(str(error))
            return False

        try:
            await self._sio.emit(event, payload)
        except socketio.exceptions.SocketIOError as exc:
            error = NotConnected(f"Cannot send '{event}': {exc}")
            self.connection.last_error = error  # type: ignore[union-attr]
            logger.warning(str(error))
            return False

        logger.debug(f"-> {event}")
        return True

    async def dispatch(self, event: str, payload: Any = None) -> None:
        """Run every handler for ``event`` in registration order."""
        handlers = list(self._handlers.get(event, ()))
        if not handlers:
            logger.debug(f"<- {event} (no subscribers)")
            return

        logger.debug(f"<- {event}")
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(f"Handler for '{event}' failed: {exc}", exc_info=True)

    async def join(self) -> None:
        """Wait until every queued inbound event has been dispatched."""
        if self._inbox is None or self._dispatcher is None:
            return
        if asyncio.current_task() is self._dispatcher:
            return
        await self._inbox.join()

    def _ensure_dispatcher(self) -> None:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(
                self._dispatch_loop()
            )

    def _enqueue(self, event: str, payload: Any) -> None:
        self._ensure_dispatcher()
        self._inbox.put_nowait((event, payload))  # type: ignore[union-attr]

    async def _dispatch_loop(self) -> None:
        assert self._inbox is not None
        while True:
            event, payload = await self._inbox.get()
            try:
                await self.dispatch(event, payload)
            finally:
                self._inbox.task_done()

    def _mark_disconnected(self, reason: str) -> None:
        if self.connection is not None:
            self.connection.connected = False
        if self._disconnect_reported:
            return
        self._disconnect_reported = True
        if self.connection is not None and self.connection.last_error is None:
            self.connection.last_error = TransportError(f"Disconnected: {reason}")
        logger.warning(f"Relay connection lost ({reason})")
        self._enqueue(DISCONNECTED, {"reason": reason})

    async def _on_connect(self) -> None:
        if self.connection is not None:
            self.connection.connected = True

    async def _on_connect_error(self, data: Any = None) -> None:
        if isinstance(data, dict):
            data = data.get("message", data)
        self._connect_error_detail = str(data) if data else None

    async def _on_disconnect(self, *args: Any) -> None:
        reason = str(args[0]) if args else "transport close"
        self._mark_disconnected(reason)

    async def _on_event(self, event: str, *args: Any) -> None:
        payload = args[0] if args else None
        self._enqueue(event, payload)
