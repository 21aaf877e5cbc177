from __future__ import annotations


class FieldRelayError(Exception):
    """Base class for errors raised by the relay core."""


class ValidationError(FieldRelayError):
    """Inbound payload is malformed or cannot be normalized."""


class NotFoundError(FieldRelayError):
    """Unknown or inactive integration, or unknown task."""


class TransportError(FieldRelayError):
    """Outbound chat call failed."""


class PersistenceError(FieldRelayError):
    """Writing a store to disk failed."""
