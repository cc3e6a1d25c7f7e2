"""Failure taxonomy of the relay engine.

Startup-level errors (``InvalidCredential``, ``ConnectionLost``,
``NoValidSource``) propagate to whoever asked for the start. The per-message
and per-channel ones are raised inside the relay pipeline and contained there.
"""

from __future__ import annotations

__all__ = [
    "RelayError",
    "InvalidCredential",
    "ConnectionLost",
    "NoValidSource",
    "ServiceNotFound",
    "ChannelResolutionFailed",
    "TransformFailed",
    "SendFailed",
    "EditFailed",
    "InvalidConfiguration",
]


class RelayError(Exception):
    """Base class for relay engine failures."""


class InvalidCredential(RelayError):
    """The tenant's backend session failed the authorization check."""

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(message or f"Backend session for tenant {tenant_id} is not authorized")


class ConnectionLost(RelayError):
    """A cached connection could not be re-established; the tenant must reconnect."""

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(message or f"Connection for tenant {tenant_id} was lost, please reconnect")


class NoValidSource(RelayError):
    """None of a service's source channels could be resolved."""

    def __init__(self, service_id: str) -> None:
        self.service_id = service_id
        super().__init__(f"Service {service_id} has no resolvable source channel")


class ServiceNotFound(RelayError):
    """No active service with the given id exists for the tenant."""

    def __init__(self, tenant_id: str, service_id: str) -> None:
        self.tenant_id = tenant_id
        self.service_id = service_id
        super().__init__(f"Service {service_id} not found for tenant {tenant_id}")


class ChannelResolutionFailed(RelayError):
    def __init__(self, channel: str, reason: str | None = None) -> None:
        self.channel = channel
        self.reason = reason
        text = f"Could not resolve channel {channel}"
        if reason:
            text = f"{text}: {reason}"
        super().__init__(text)


class TransformFailed(RelayError):
    """The generation capability did not return usable text."""


class SendFailed(RelayError):
    def __init__(self, channel: str, reason: str | None = None) -> None:
        self.channel = channel
        super().__init__(f"Sending to {channel} failed: {reason or 'unknown error'}")


class EditFailed(RelayError):
    def __init__(self, channel: str, message_id: int, reason: str | None = None) -> None:
        self.channel = channel
        self.message_id = message_id
        super().__init__(
            f"Editing message {message_id} in {channel} failed: {reason or 'unknown error'}"
        )


class InvalidConfiguration(ValueError):
    """A relay service snapshot violates a range or shape constraint."""
