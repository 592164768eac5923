"""Exception hierarchy and the uniform result type returned by mutations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class SupportWidgetError(Exception):
    """Base class for every error raised by support-widget."""

    code = "error"


class GatewayError(SupportWidgetError):
    """A backend request failed (transport, validation or policy)."""

    code = "gateway_error"

    def __init__(self, message: str, table: str | None = None) -> None:
        self.table = table
        super().__init__(message)


class AuthorizationError(GatewayError):
    code = "not_authorized"


class NotFoundError(GatewayError):
    code = "not_found"


class ConflictError(GatewayError):
    code = "conflict"


class UploadError(GatewayError):
    code = "upload_failed"


class AuthError(GatewayError):
    """Sign-in failed or the session is missing/expired."""

    code = "auth_failed"


class ValidationError(SupportWidgetError):
    """Input rejected before any backend call."""

    code = "invalid_input"


class ClaimConflictError(SupportWidgetError):
    """The conversation was already claimed (or closed) by someone else."""

    code = "claim_conflict"

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} is no longer open for claiming")


class ConversationClosedError(SupportWidgetError):
    code = "conversation_closed"

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} is closed")


class AccessDeniedError(SupportWidgetError):
    """Signed in, but not a member of the required staff list."""

    code = "access_denied"

    def __init__(self, message: str, redirect_to: str) -> None:
        self.redirect_to = redirect_to
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Outcome of a mutation: either a value or a typed error, never both."""

    value: Optional[T] = None
    error: Optional[SupportWidgetError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @classmethod
    def success(cls, value: T | None = None) -> MutationResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: SupportWidgetError) -> MutationResult[T]:
        return cls(error=error)
