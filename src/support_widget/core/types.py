"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class ConversationStatus(StrEnum):
    OPEN = "open"
    CLAIMED = "claimed"
    CLOSED = "closed"


class SenderType(StrEnum):
    CLIENT = "client"
    AGENT = "agent"


class MessageKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"


class ProviderType(StrEnum):
    ECOMMERCE = "ecommerce"
    SERVICE = "service"
    OTHER = "other"


class ContextKind(StrEnum):
    """Credential context a gateway client runs under."""

    PUBLIC = "public"
    SUPPORT = "support"
    MASTER = "master"


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Forward-only lifecycle; closed is terminal.
STATUS_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.OPEN: frozenset({ConversationStatus.CLAIMED, ConversationStatus.CLOSED}),
    ConversationStatus.CLAIMED: frozenset({ConversationStatus.CLOSED}),
    ConversationStatus.CLOSED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """Return True if a conversation may move from *current* to *target*."""
    if current == target:
        return True
    return ConversationStatus(target) in STATUS_TRANSITIONS[ConversationStatus(current)]
