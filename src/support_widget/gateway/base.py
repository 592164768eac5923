"""Abstract backend-as-a-service interface consumed by the gateway clients."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from support_widget.core.types import ChangeType
from support_widget.storage.models import AuthSession, AuthUser


@dataclass(frozen=True, slots=True)
class Principal:
    """Who a request is made as, after the backend resolved its credentials."""

    role: str  # "anon" | "authenticated" | "service"
    client_token: Optional[str] = None
    user_id: Optional[str] = None
    is_support: bool = False
    is_admin: bool = False

    @property
    def is_staff(self) -> bool:
        return self.is_support or self.is_admin

    @property
    def is_service(self) -> bool:
        return self.role == "service"


ANON = Principal(role="anon")
SERVICE = Principal(role="service")


@dataclass(frozen=True, slots=True)
class Credentials:
    """What a gateway client sends with every request."""

    client_token: Optional[str] = None
    access_token: Optional[str] = None
    service_key: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    table: str
    type: ChangeType
    new: dict[str, Any] = field(default_factory=dict)
    old: Optional[dict[str, Any]] = None

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about: the new image, or the old one for deletes."""
        return self.new or self.old or {}


ChangeHandler = Callable[[ChangeEvent], Union[Awaitable[None], None]]


class Subscription(ABC):
    """Handle on a live change-feed subscription."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery and release the listener."""
        ...

    @abstractmethod
    async def wait_idle(self) -> None:
        """Return once every event queued so far has been handled."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class Backend(ABC):
    """Base class for backend-as-a-service implementations.

    Every data call takes the caller's :class:`Credentials`; the backend
    resolves them to a :class:`Principal` and applies its row-level policies.
    Implementations raise :class:`~support_widget.core.errors.GatewayError`
    subclasses and never retry.
    """

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    # -- rows -------------------------------------------------------------

    @abstractmethod
    async def select(
        self,
        credentials: Credentials,
        table: str,
        *,
        eq: dict[str, Any] | None = None,
        is_null: Iterable[str] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def insert(
        self, credentials: Credentials, table: str, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def update(
        self,
        credentials: Credentials,
        table: str,
        values: dict[str, Any],
        *,
        eq: dict[str, Any] | None = None,
        is_null: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        """Apply *values* to matching rows; returns the updated rows."""
        ...

    @abstractmethod
    async def delete(
        self, credentials: Credentials, table: str, *, eq: dict[str, Any] | None = None
    ) -> int:
        ...

    @abstractmethod
    async def rpc(self, credentials: Credentials, name: str, params: dict[str, Any]) -> Any:
        ...

    # -- realtime ---------------------------------------------------------

    @abstractmethod
    async def subscribe(
        self,
        credentials: Credentials,
        table: str,
        handler: ChangeHandler,
        *,
        events: Iterable[ChangeType] | None = None,
        eq: tuple[str, Any] | None = None,
    ) -> Subscription:
        ...

    # -- object storage ---------------------------------------------------

    @abstractmethod
    async def upload(
        self,
        credentials: Credentials,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        upsert: bool = False,
    ) -> str:
        """Store *data* and return the stored path."""
        ...

    @abstractmethod
    def public_url(self, bucket: str, path: str) -> str:
        ...

    # -- auth -------------------------------------------------------------

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    async def get_user(self, access_token: str) -> AuthUser | None:
        ...

    @abstractmethod
    async def sign_out(self, access_token: str) -> None:
        ...
