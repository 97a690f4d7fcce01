"""Relay domain exceptions."""

from __future__ import annotations


class RelayError(Exception):
    """Base for relay domain errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error


class ConfigurationError(RelayError):
    """Config validation or load failure."""


# Actor-facing errors: surfaced to whoever issued the command, never retried.


class InvalidGroup(RelayError):
    """Referenced group key does not exist."""


class Forbidden(RelayError):
    """Identity is banned from the group."""


class AuthRequired(Forbidden):
    """Private group and the secret is missing or wrong."""


class AlreadyLinked(RelayError):
    """Channel already belongs to a group."""


class NotLinked(RelayError):
    """Channel is not a member of the group."""


class GroupAlreadyOwned(RelayError):
    """Guild already owns a group (single-group-per-guild mode)."""


# Delivery-time errors: contained to one target, logged, never surfaced to the author.


class PermissionDenied(RelayError):
    """Bot lacks a capability on the target channel."""


class TransientDeliveryFailure(RelayError):
    """Network or platform error during one target's send."""


class DeliveryHandleGone(RelayError):
    """Webhook behind a cached handle was deleted outside the bot."""


class StorageFailure(RelayError):
    """Persistence read or write failed."""
