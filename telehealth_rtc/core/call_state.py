"""
Call session state machine.

Owns the single CallSession, its media coordinator and its timers.
Every await is followed by a generation check: if the session that
started the operation has ended (or been replaced) in the meantime, the
result is discarded and any media it produced is released.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Optional

from telehealth_rtc.call_history import CallHistory
from telehealth_rtc.core.errors import (
    CallStateError,
    MediaAccessDenied,
    NegotiationError,
    NotConnected,
)
from telehealth_rtc.core.media import MediaNegotiationCoordinator
from telehealth_rtc.core.message_filter import CallEventFilter
from telehealth_rtc.core.signaling import (
    DISCONNECTED,
    ICE_CANDIDATE,
    CallKind,
    CallSignal,
    CandidateSignal,
    build_answer,
    build_end,
    build_reject,
    build_request,
    inbound_call_events,
    new_call_id,
)
from telehealth_rtc.core.transport import SignalingTransport
from telehealth_rtc.logging_config import get_logger

logger = get_logger("call_state")


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


class EndReason(str, Enum):
    BUSY = "busy"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    NO_ANSWER = "no-answer"
    CANCELLED = "cancelled"
    LOCAL_HANGUP = "local-hangup"
    REMOTE_HANGUP = "remote-hangup"
    PEER_FAILED = "peer-failed"
    CONNECTION_LOST = "connection-lost"
    MEDIA_DENIED = "media-denied"
    NEGOTIATION_FAILED = "negotiation-failed"


_REMOTE_REJECT_REASONS = {
    "busy": EndReason.BUSY,
    "timeout": EndReason.TIMEOUT,
}


@dataclass
class CallSession:
    call_id: str
    counterpart_id: str
    kind: CallKind
    state: CallState
    started_at: float
    generation: int
    initiated_by_local: bool = False
    counterpart_name: Optional[str] = None
    remote_offer: Optional[dict[str, Any]] = None
    connected_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[EndReason] = None
    answering: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state is CallState.ENDED

    def duration(self, now: float) -> float:
        """Seconds spent connected so far (or in total, once ended)."""
        if self.connected_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else now
        return max(0.0, end - self.connected_at)


CoordinatorFactory = Callable[[str], MediaNegotiationCoordinator]


class CallSessionMachine:
    """
    Authoritative call state for one signed-in user.

    At most one non-terminal CallSession exists at a time. UI code drives it
    through ``start_call``/``answer``/``reject``/``hang_up``/``reset`` and
    subscribes to ``on_state_changed``; relay events arrive through the
    transport subscriptions registered here.
    """

    def __init__(
        self,
        transport: SignalingTransport,
        self_id: str,
        display_name: str = "",
        coordinator_factory: CoordinatorFactory = MediaNegotiationCoordinator,
        ring_timeout: float = 45.0,
        answer_timeout: float = 45.0,
        duration_tick: float = 1.0,
        call_history: Optional[CallHistory] = None,
        call_filter: Optional[CallEventFilter] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.self_id = self_id
        self.display_name = display_name
        self._coordinator_factory = coordinator_factory
        self.ring_timeout = ring_timeout
        self.answer_timeout = answer_timeout
        self.duration_tick = duration_tick
        self.call_history = call_history
        self.call_filter = call_filter or CallEventFilter(self_id)
        self._clock = clock

        self.session: Optional[CallSession] = None
        self.coordinator: Optional[MediaNegotiationCoordinator] = None
        self._generation = 0
        self._ring_task: Optional[asyncio.Task] = None
        self._answer_task: Optional[asyncio.Task] = None
        self._duration_task: Optional[asyncio.Task] = None

        self.on_state_changed: Optional[
            Callable[[CallState, Optional[CallSession]], None]
        ] = None
        self.on_incoming_call: Optional[Callable[[CallSession], None]] = None
        self.on_duration_tick: Optional[Callable[[CallSession, float], None]] = None
        self.on_remote_track: Optional[Callable[[Any], None]] = None

        for event, (kind, action) in inbound_call_events().items():
            transport.subscribe(event, partial(self._on_call_signal, kind, action))
        transport.subscribe(ICE_CANDIDATE, self._on_ice_candidate)
        transport.subscribe(DISCONNECTED, self._on_disconnected)

    @property
    def state(self) -> CallState:
        return self.session.state if self.session else CallState.IDLE

    @property
    def has_active_call(self) -> bool:
        return self.session is not None and not self.session.is_terminal

    # ------------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------------

    async def start_call(
        self,
        counterpart_id: str,
        kind: CallKind = CallKind.VIDEO,
        counterpart_name: Optional[str] = None,
    ) -> CallSession:
        """
        Place an outgoing call.

        Media or negotiation failures end the returned session (see its
        ``end_reason``) instead of raising.

        Raises:
            CallStateError: a session exists (active, or ended and not reset)
            NotConnected: the relay connection is down
        """
        if self.session is not None:
            if self.session.is_terminal:
                raise CallStateError("Previous call has ended; reset() before starting another.")
            raise CallStateError("Cannot start a new call while another call is active.")
        if not counterpart_id:
            raise CallStateError("No counterpart to call.")
        if not self.transport.connected:
            raise NotConnected("Cannot start a call: not connected to relay")

        session = self._new_session(
            call_id=new_call_id(),
            counterpart_id=counterpart_id,
            kind=CallKind(kind),
            state=CallState.CALLING,
            initiated_by_local=True,
            counterpart_name=counterpart_name,
        )
        gen = session.generation
        coordinator = self.coordinator
        logger.info(f"Calling {counterpart_id} ({session.kind.value}, call {session.call_id})")
        self._notify()

        try:
            media = await coordinator.acquire_local_media(session.kind)
        except MediaAccessDenied as exc:
            logger.error(f"Cannot place call: {exc}")
            await self._end_if_current(gen, EndReason.MEDIA_DENIED)
            return session
        if media is None or not self._is_current(gen):
            return session

        try:
            offer = await coordinator.create_offer()
        except NegotiationError as exc:
            logger.error(f"Offer failed for call {session.call_id}: {exc}")
            await self._end_if_current(gen, EndReason.NEGOTIATION_FAILED)
            return session
        if not self._is_current(gen):
            return session

        request = build_request(
            counterpart_id,
            session.kind,
            session.call_id,
            offer,
            self.self_id,
            self.display_name,
        )
        if not await self._emit(request):
            await self._end_if_current(gen, EndReason.CONNECTION_LOST)
            return session

        if self._is_current(gen):
            self._answer_task = self._start_timer(self._answer_timeout_expired(gen))
        return session

    async def answer(self) -> CallSession:
        """
        Accept the ringing call.

        Raises:
            CallStateError: no call is ringing
        """
        session = self.session
        if session is None or session.state is not CallState.RINGING or session.answering:
            raise CallStateError("No incoming call to accept.")

        session.answering = True
        gen = session.generation
        coordinator = self.coordinator
        self._cancel_task(self._ring_task)
        logger.info(f"Answering call {session.call_id} from {session.counterpart_id}")

        try:
            media = await coordinator.acquire_local_media(session.kind)
        except MediaAccessDenied as exc:
            logger.error(f"Cannot answer call: {exc}")
            if self._is_current(gen):
                await self._emit(
                    build_reject(session.counterpart_id, session.kind, session.call_id, "media-denied")
                )
            await self._end_if_current(gen, EndReason.MEDIA_DENIED)
            return session
        if media is None or not self._is_current(gen):
            return session

        try:
            answer = await coordinator.create_answer(session.remote_offer)
        except NegotiationError as exc:
            logger.error(f"Answer failed for call {session.call_id}: {exc}")
            if self._is_current(gen):
                await self._emit(
                    build_reject(
                        session.counterpart_id, session.kind, session.call_id, "negotiation-failed"
                    )
                )
            await self._end_if_current(gen, EndReason.NEGOTIATION_FAILED)
            return session
        if not self._is_current(gen):
            return session

        if not await self._emit(
            build_answer(session.counterpart_id, session.kind, session.call_id, answer)
        ):
            await self._end_if_current(gen, EndReason.CONNECTION_LOST)
            return session

        if self._is_current(gen):
            self._mark_connected(session)
        return session

    async def reject(self, reason: str = "rejected") -> None:
        """
        Decline the ringing call.

        Raises:
            CallStateError: no call is ringing
        """
        session = self.session
        if session is None or session.state is not CallState.RINGING:
            raise CallStateError("No incoming call to reject.")
        await self._emit(build_reject(session.counterpart_id, session.kind, session.call_id, reason))
        await self._end_session(EndReason.REJECTED)

    async def hang_up(self) -> None:
        """End whatever call is in progress. No-op without an active call."""
        session = self.session
        if session is None or session.is_terminal:
            return

        if session.state is CallState.RINGING:
            await self.reject()
            return

        await self._emit(build_end(session.counterpart_id, session.kind, session.call_id))
        if session.state is CallState.CALLING:
            await self._end_session(EndReason.CANCELLED)
        else:
            await self._end_session(EndReason.LOCAL_HANGUP)

    def reset(self) -> None:
        """
        Return to idle after a call has ended.

        Raises:
            CallStateError: the current call has not ended yet
        """
        if self.session is not None and not self.session.is_terminal:
            raise CallStateError("Cannot reset while a call is active.")
        self.session = None
        self.coordinator = None
        self._notify()

    def set_muted(self, muted: bool) -> bool:
        if self.coordinator is None or not self.has_active_call:
            return False
        return self.coordinator.set_audio_enabled(not muted)

    def set_camera_enabled(self, enabled: bool) -> bool:
        if self.coordinator is None or not self.has_active_call:
            return False
        return self.coordinator.set_video_enabled(enabled)

    async def close(self) -> None:
        """Hang up and stop all timers (shutdown)."""
        await self.hang_up()
        for task in (self._ring_task, self._answer_task, self._duration_task):
            self._cancel_task(task)

    # ------------------------------------------------------------------
    # Relay events
    # ------------------------------------------------------------------

    async def _on_call_signal(self, kind: CallKind, action: str, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning(f"Ignoring {kind.value} call {action} with malformed payload")
            return
        signal = CallSignal.from_payload(kind, action, payload)

        active = self.session if self.has_active_call else None
        allowed, why = self.call_filter.evaluate(
            signal,
            active.call_id if active else None,
            active.counterpart_id if active else None,
        )
        if not allowed:
            logger.debug(f"Dropped {signal.event} from {signal.peer_id or '?'}: {why}")
            return

        handler = {
            "request": self._handle_request,
            "answer": self._handle_answer,
            "reject": self._handle_reject,
            "end": self._handle_end,
            "failed": self._handle_failed,
        }[action]
        await handler(signal)

    async def _handle_request(self, signal: CallSignal) -> None:
        active = self.session if self.has_active_call else None
        if active is not None:
            same_call = signal.call_id == active.call_id or (
                not signal.call_id and signal.peer_id == active.counterpart_id
            )
            if same_call and active.state is CallState.RINGING:
                logger.debug(f"Repeated request for ringing call {active.call_id}")
                return
            logger.info(f"Busy: rejecting {signal.kind.value} call from {signal.peer_id}")
            await self._emit(
                build_reject(signal.peer_id, signal.kind, signal.call_id or new_call_id(), "busy")
            )
            return

        if not isinstance(signal.offer, dict):
            logger.warning(f"Call request from {signal.peer_id} carried no offer")
            await self._emit(
                build_reject(
                    signal.peer_id, signal.kind, signal.call_id or new_call_id(), "negotiation-failed"
                )
            )
            return

        if self.session is not None:
            logger.debug("Clearing ended call for incoming request")
            self.reset()

        caller_info = signal.caller_info or {}
        session = self._new_session(
            call_id=signal.call_id or new_call_id(),
            counterpart_id=signal.peer_id,
            kind=signal.kind,
            state=CallState.RINGING,
            initiated_by_local=False,
            counterpart_name=caller_info.get("name"),
        )
        session.remote_offer = signal.offer
        logger.info(
            f"Incoming {session.kind.value} call from {session.counterpart_name or session.counterpart_id}"
        )
        self._ring_task = self._start_timer(self._ring_timeout_expired(session.generation))
        self._notify()
        if self.on_incoming_call:
            self.on_incoming_call(session)

    async def _handle_answer(self, signal: CallSignal) -> None:
        session = self.session
        if session is None or session.state is not CallState.CALLING:
            logger.debug(f"Ignoring answer in state {self.state.value}")
            return
        gen = session.generation
        self._cancel_task(self._answer_task)

        try:
            await self.coordinator.set_remote_description(signal.answer)
        except NegotiationError as exc:
            logger.error(f"Remote answer rejected for call {session.call_id}: {exc}")
            if self._is_current(gen):
                await self._emit(build_end(session.counterpart_id, session.kind, session.call_id))
            await self._end_if_current(gen, EndReason.NEGOTIATION_FAILED)
            return

        if self._is_current(gen):
            self._mark_connected(session)

    async def _handle_reject(self, signal: CallSignal) -> None:
        session = self.session
        if session.state is CallState.CALLING:
            reason = _REMOTE_REJECT_REASONS.get(signal.reason or "", EndReason.REJECTED)
            logger.info(f"Call {session.call_id} rejected by {session.counterpart_id}: {signal.reason}")
            await self._end_session(reason)
        elif session.state is CallState.RINGING:
            await self._end_session(EndReason.CANCELLED)
        else:
            await self._end_session(EndReason.REMOTE_HANGUP)

    async def _handle_end(self, signal: CallSignal) -> None:
        session = self.session
        if session.state is CallState.CALLING:
            # Callers without an explicit reject action end the attempt instead.
            await self._end_session(EndReason.REJECTED)
        elif session.state is CallState.RINGING:
            await self._end_session(EndReason.CANCELLED)
        else:
            await self._end_session(EndReason.REMOTE_HANGUP)

    async def _handle_failed(self, signal: CallSignal) -> None:
        if self.session.state is not CallState.CALLING:
            return
        logger.info(f"Relay could not reach {self.session.counterpart_id}: {signal.reason or 'offline'}")
        await self._end_session(EndReason.NO_ANSWER)

    async def _on_ice_candidate(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        signal = CandidateSignal.from_payload(payload)
        session = self.session
        if session is None or session.is_terminal or self.coordinator is None:
            logger.debug("Dropping candidate: no active call")
            return
        if signal.peer_id and signal.peer_id != session.counterpart_id:
            logger.debug(f"Dropping candidate from {signal.peer_id}: not the counterpart")
            return
        if signal.call_id and signal.call_id != session.call_id:
            logger.debug(f"Dropping candidate for foreign call {signal.call_id}")
            return
        await self.coordinator.add_remote_candidate(signal.candidate)

    async def _on_disconnected(self, payload: Any) -> None:
        if self.has_active_call:
            logger.warning("Relay connection lost during call")
            await self._end_session(EndReason.CONNECTION_LOST)

    async def _on_peer_state(self, gen: int, state: str) -> None:
        if not self._is_current(gen):
            return
        if state == "failed":
            session = self.session
            logger.error(f"Peer transport failed for call {session.call_id}")
            await self._emit(build_end(session.counterpart_id, session.kind, session.call_id))
            await self._end_if_current(gen, EndReason.PEER_FAILED)
        elif state == "disconnected":
            logger.warning("Peer transport disconnected; waiting for it to recover")

    async def _send_local_candidate(self, gen: int, candidate: dict[str, Any]) -> None:
        if not self._is_current(gen):
            return
        session = self.session
        await self.transport.send(
            ICE_CANDIDATE,
            CandidateSignal(session.counterpart_id, candidate, session.call_id).to_payload(),
        )

    def _remote_track(self, track: Any) -> None:
        if self.on_remote_track:
            self.on_remote_track(track)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _ring_timeout_expired(self, gen: int) -> None:
        await asyncio.sleep(self.ring_timeout)
        session = self.session
        if not self._is_current(gen) or session.state is not CallState.RINGING or session.answering:
            return
        logger.info(f"Call {session.call_id} not answered within {self.ring_timeout}s")
        await self._emit(build_reject(session.counterpart_id, session.kind, session.call_id, "timeout"))
        await self._end_if_current(gen, EndReason.TIMEOUT)

    async def _answer_timeout_expired(self, gen: int) -> None:
        await asyncio.sleep(self.answer_timeout)
        session = self.session
        if not self._is_current(gen) or session.state is not CallState.CALLING:
            return
        logger.info(f"No answer from {session.counterpart_id} within {self.answer_timeout}s")
        await self._emit(build_end(session.counterpart_id, session.kind, session.call_id))
        await self._end_if_current(gen, EndReason.TIMEOUT)

    async def _tick_duration(self, gen: int) -> None:
        while True:
            await asyncio.sleep(self.duration_tick)
            if not self._is_current(gen):
                return
            if self.on_duration_tick:
                self.on_duration_tick(self.session, self.session.duration(self._clock()))

    def _start_timer(self, coro: Any) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(coro)

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Session bookkeeping
    # ------------------------------------------------------------------

    def _new_session(self, **fields: Any) -> CallSession:
        self._generation += 1
        session = CallSession(
            started_at=self._clock(), generation=self._generation, **fields
        )
        coordinator = self._coordinator_factory(session.call_id)
        coordinator.on_connection_state = partial(self._on_peer_state, session.generation)
        coordinator.on_local_candidate = partial(self._send_local_candidate, session.generation)
        coordinator.on_remote_track = self._remote_track
        self.session = session
        self.coordinator = coordinator
        return session

    def _is_current(self, gen: int) -> bool:
        return (
            self.session is not None
            and self.session.generation == gen
            and not self.session.is_terminal
        )

    def _mark_connected(self, session: CallSession) -> None:
        session.state = CallState.CONNECTED
        session.connected_at = self._clock()
        logger.info(f"Call {session.call_id} connected with {session.counterpart_id}")
        self._duration_task = self._start_timer(self._tick_duration(session.generation))
        self._notify()

    async def _end_if_current(self, gen: int, reason: EndReason) -> None:
        if self._is_current(gen):
            await self._end_session(reason)

    async def _end_session(self, reason: EndReason) -> None:
        session = self.session
        if session is None or session.is_terminal:
            return

        session.state = CallState.ENDED
        session.end_reason = reason
        session.ended_at = self._clock()
        for task in (self._ring_task, self._answer_task, self._duration_task):
            self._cancel_task(task)

        coordinator = self.coordinator
        if coordinator is not None:
            await coordinator.teardown()

        # A new call may have replaced this session while teardown was awaited.
        logger.info(f"Call {session.call_id} ended: {reason.value}")
        self._record(session)
        if self.on_state_changed:
            self.on_state_changed(CallState.ENDED, session)

    def _record(self, session: CallSession) -> None:
        if self.call_history is None:
            return
        self.call_history.add_call(
            direction="outgoing" if session.initiated_by_local else "incoming",
            peer_id=session.counterpart_id,
            display_name=session.counterpart_name or session.counterpart_id,
            duration_sec=int(session.duration(self._clock())),
            answered=session.connected_at is not None,
            call_id=session.call_id,
            kind=session.kind.value,
            end_reason=session.end_reason.value if session.end_reason else None,
        )

    async def _emit(self, signal: CallSignal) -> bool:
        return await self.transport.send(signal.event, signal.to_payload())

    def _notify(self) -> None:
        if self.on_state_changed:
            self.on_state_changed(self.state, self.session)
