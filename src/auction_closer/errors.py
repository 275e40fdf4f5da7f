from __future__ import annotations


class AuctionError(Exception):
    """Base class for errors surfaced to callers of the closing engine."""


class NotFoundError(AuctionError):
    """Raised when a referenced opportunity, bid or user does not exist."""


class PermissionDeniedError(AuctionError):
    """Raised when a non-administrator attempts an administrative action."""


class InvalidArgumentError(AuctionError):
    """Raised when a required argument is missing or malformed."""


class ClosingFailedError(AuctionError):
    """Raised to a manual caller when a closure failed for another reason."""


class NotificationError(RuntimeError):
    """Raised by a notifier when a message was rejected by the transport."""
