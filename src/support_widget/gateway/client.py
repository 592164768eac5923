"""Credentialed gateway clients: one per context (public, support, master)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from support_widget.config import LocalStorageConfig
from support_widget.core.errors import AuthError
from support_widget.core.session import LocalStore, TokenStore
from support_widget.core.types import ChangeType, ContextKind
from support_widget.gateway.base import Backend, ChangeHandler, Credentials, Subscription
from support_widget.log import get_logger
from support_widget.storage.models import AuthSession, AuthUser

logger = get_logger(__name__)


class ServiceClient:
    """Thin wrapper issuing backend calls under one credential context.

    The public context never holds an auth session and always sends the
    anonymous client token; the support and master contexts persist their
    session under their own storage key so they never collide.
    """

    def __init__(
        self,
        backend: Backend,
        kind: ContextKind,
        *,
        store: LocalStore | None = None,
        session_key: str | None = None,
        client_token: str | None = None,
        service_key: str | None = None,
    ):
        self.backend = backend
        self.kind = kind
        self._store = store
        self._session_key = session_key
        self._client_token = client_token
        self._service_key = service_key
        self._session: AuthSession | None = self._restore_session()

    def _restore_session(self) -> AuthSession | None:
        if self._store is None or self._session_key is None:
            return None
        raw = self._store.get(self._session_key)
        if not raw:
            return None
        try:
            return AuthSession.from_dict(raw)
        except (KeyError, TypeError) as e:
            logger.warning("stored_session_invalid", context=str(self.kind), error=str(e))
            self._store.remove(self._session_key)
            return None

    @property
    def credentials(self) -> Credentials:
        return Credentials(
            client_token=self._client_token,
            access_token=self._session.access_token if self._session else None,
            service_key=self._service_key,
        )

    @property
    def client_token(self) -> Optional[str]:
        return self._client_token

    # -- auth -------------------------------------------------------------

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        if self.kind is ContextKind.PUBLIC:
            raise AuthError("the public context cannot hold a session")
        session = await self.backend.sign_in_with_password(email, password)
        self._session = session
        if self._store is not None and self._session_key:
            self._store.set(self._session_key, session.to_dict())
        logger.info("context_signed_in", context=str(self.kind), user_id=session.user.id)
        return session

    async def get_user(self) -> AuthUser | None:
        """Return the session user if the session is still valid on the backend."""
        if self._session is None:
            return None
        return await self.backend.get_user(self._session.access_token)

    async def sign_out(self) -> None:
        session, self._session = self._session, None
        if self._store is not None and self._session_key:
            self._store.remove(self._session_key)
        if session is not None:
            await self.backend.sign_out(session.access_token)
            logger.info("context_signed_out", context=str(self.kind), user_id=session.user.id)

    # -- rows -------------------------------------------------------------

    async def select(
        self,
        table: str,
        *,
        eq: dict[str, Any] | None = None,
        is_null: Iterable[str] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return await self.backend.select(
            self.credentials,
            table,
            eq=eq,
            is_null=is_null,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )

    async def select_one(self, table: str, **eq: Any) -> dict[str, Any] | None:
        rows = await self.select(table, eq=eq, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        if isinstance(rows, dict):
            rows = [rows]
        return await self.backend.insert(self.credentials, table, rows)

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        eq: dict[str, Any] | None = None,
        is_null: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        return await self.backend.update(self.credentials, table, values, eq=eq, is_null=is_null)

    async def delete(self, table: str, *, eq: dict[str, Any]) -> int:
        return await self.backend.delete(self.credentials, table, eq=eq)

    async def rpc(self, name: str, **params: Any) -> Any:
        return await self.backend.rpc(self.credentials, name, params)

    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        *,
        events: Iterable[ChangeType] | None = None,
        eq: tuple[str, Any] | None = None,
    ) -> Subscription:
        return await self.backend.subscribe(
            self.credentials, table, handler, events=events, eq=eq
        )

    # -- storage ----------------------------------------------------------

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        upsert: bool = False,
    ) -> str:
        return await self.backend.upload(
            self.credentials, bucket, path, data, content_type=content_type, upsert=upsert
        )

    def public_url(self, bucket: str, path: str) -> str:
        return self.backend.public_url(bucket, path)


@dataclass(frozen=True, slots=True)
class Contexts:
    """The three isolated credential contexts, built once and injected."""

    public: ServiceClient
    support: ServiceClient
    master: ServiceClient


def build_contexts(
    backend: Backend, tokens: TokenStore, config: LocalStorageConfig | None = None
) -> Contexts:
    config = config or LocalStorageConfig()
    store = tokens.local_store
    return Contexts(
        public=ServiceClient(
            backend, ContextKind.PUBLIC, client_token=tokens.get_or_create_client_token()
        ),
        support=ServiceClient(
            backend, ContextKind.SUPPORT, store=store, session_key=config.support_session_key
        ),
        master=ServiceClient(
            backend, ContextKind.MASTER, store=store, session_key=config.master_session_key
        ),
    )
