"""
Error taxonomy for the communication core.

Expected call outcomes (busy, timeout, rejected, ...) are not exceptions;
they are recorded as ``EndReason`` on the finished ``CallSession``.
"""


class CommunicationError(Exception):
    """Base class for every error raised by the communication core."""


class AuthError(CommunicationError):
    """Credentials are missing or the relay refused them. Never retried."""


class TransportError(CommunicationError):
    """The relay connection failed or was lost. Recoverable by reconnecting."""


class NotConnected(TransportError):
    """An operation needed a live relay connection and there was none."""


class MediaAccessDenied(CommunicationError):
    """The user or OS refused camera/microphone access, or no device exists."""


class NegotiationError(CommunicationError):
    """A session description was malformed, duplicated, or rejected by the peer transport."""


class CallStateError(RuntimeError, CommunicationError):
    """A local call action was attempted from a state that does not allow it."""
