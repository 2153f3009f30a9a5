"""Error types for the chatrelay hub.

None of these are fatal to the hub process; each is caught at the component
boundary that can degrade around it.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    code = "relay_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class RegistryError(RelayError):
    code = "registry_error"


class DuplicateUsername(RegistryError):
    code = "duplicate_username"

    def __init__(self, username: str) -> None:
        super().__init__(f"username {username!r} is already in use", {"username": username})
        self.username = username


class InvalidUsername(RegistryError):
    code = "invalid_username"


class UnknownSession(RegistryError):
    code = "unknown_session"


class RoutingError(RelayError):
    code = "routing_error"


class MalformedDirective(RoutingError):
    code = "malformed_directive"


class DeliveryError(RelayError):
    code = "delivery_error"


class TransportClosed(DeliveryError):
    code = "transport_closed"


class SendTimeout(DeliveryError):
    code = "send_timeout"


class OutboxFull(DeliveryError):
    code = "outbox_full"


class CollaboratorError(RelayError):
    code = "collaborator_error"


class PersistenceUnavailable(CollaboratorError):
    code = "persistence_unavailable"


class CompletionUnavailable(CollaboratorError):
    code = "completion_unavailable"


class EmbeddingUnavailable(CollaboratorError):
    code = "embedding_unavailable"
