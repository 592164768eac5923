"""Self-hosted backend: SQLite rows, filesystem buckets, password auth and a change feed."""

from __future__ import annotations

import asyncio
import hmac
import json
import secrets
import sqlite3
import uuid
from pathlib import Path, PurePosixPath
from typing import Any, Iterable
from urllib.parse import quote

from passlib.hash import pbkdf2_sha256

from support_widget.config import BackendConfig, BucketsConfig
from support_widget.core.errors import (
    AuthError,
    ConflictError,
    GatewayError,
    NotFoundError,
    UploadError,
)
from support_widget.core.types import ChangeType
from support_widget.gateway import policies
from support_widget.gateway.base import (
    ANON,
    SERVICE,
    Backend,
    ChangeEvent,
    ChangeHandler,
    Credentials,
    Principal,
    Subscription,
)
from support_widget.gateway.realtime import ChangeFeed
from support_widget.log import get_logger
from support_widget.storage.database import Database
from support_widget.storage.models import AuthSession, AuthUser, utc_now

logger = get_logger(__name__)

_BOOL_COLUMNS = {"providers": frozenset({"is_active"})}
_JSON_COLUMNS = {"error_logs": frozenset({"request_payload", "extra_context"})}


def hash_password(password: str) -> str:
    return pbkdf2_sha256.hash(password)


def verify_password(password: str, encoded: str) -> bool:
    try:
        return pbkdf2_sha256.verify(password, encoded)
    except ValueError:
        return False


class LocalBackend(Backend):
    """Backend-as-a-service implemented in-process on aiosqlite.

    Writes are serialized by one lock so a conditional UPDATE is atomic with
    respect to every other write, and change events are published only after
    the commit.
    """

    def __init__(self, config: BackendConfig, buckets: BucketsConfig | None = None):
        self._config = config
        self._buckets = (buckets or BucketsConfig()).model_dump()
        self.db = Database(config.db_path)
        self._storage_root = Path(config.storage_dir)
        self._write_lock = asyncio.Lock()
        self._columns: dict[str, frozenset[str]] = {}
        self._service_key = secrets.token_urlsafe(24)
        self.feed = ChangeFeed(policies.can_read)

    async def start(self) -> None:
        await self.db.initialize()
        for table in policies.API_TABLES:
            self._columns[table] = frozenset(await self.db.table_columns(table))
        logger.info("local_backend_started", db=self._config.db_path, storage=str(self._storage_root))

    async def stop(self) -> None:
        await self.feed.close_all()
        await self.db.close()
        logger.info("local_backend_stopped")

    def service_credentials(self) -> Credentials:
        """Credentials that bypass row-level security (operator tooling only)."""
        return Credentials(service_key=self._service_key)

    # -- principal resolution ---------------------------------------------

    async def _resolve(self, credentials: Credentials) -> Principal:
        if credentials.service_key is not None:
            if not hmac.compare_digest(credentials.service_key, self._service_key):
                raise AuthError("invalid service key")
            return SERVICE
        if credentials.access_token is None:
            if credentials.client_token is None:
                return ANON
            return Principal(role="anon", client_token=credentials.client_token)

        user = await self.get_user(credentials.access_token)
        if user is None:
            raise AuthError("session expired or invalid")
        return Principal(
            role="authenticated",
            client_token=credentials.client_token,
            user_id=user.id,
            is_support=await self._is_member("support_users", user.id),
            is_admin=await self._is_member("admin_users", user.id),
        )

    async def _is_member(self, table: str, user_id: str) -> bool:
        cursor = await self.db.conn.execute(
            f"SELECT 1 FROM {table} WHERE user_id = ? LIMIT 1", (user_id,)
        )
        return await cursor.fetchone() is not None

    # -- sql helpers ------------------------------------------------------

    def _check_table(self, table: str) -> frozenset[str]:
        if table not in policies.API_TABLES:
            raise NotFoundError(f"unknown table: {table}", table=table)
        return self._columns[table]

    def _check_columns(self, table: str, columns: Iterable[str]) -> None:
        known = self._check_table(table)
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise GatewayError(f"unknown column(s) on {table}: {', '.join(unknown)}", table=table)

    def _where(
        self, table: str, eq: dict[str, Any] | None, is_null: Iterable[str]
    ) -> tuple[str, list[Any]]:
        eq = eq or {}
        is_null = list(is_null)
        self._check_columns(table, [*eq.keys(), *is_null])
        clauses = [f"{col} = ?" for col in eq] + [f"{col} IS NULL" for col in is_null]
        if not clauses:
            return "", []
        return " WHERE " + " AND ".join(clauses), list(eq.values())

    def _encode(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        json_cols = _JSON_COLUMNS.get(table, frozenset())
        return {
            k: json.dumps(v) if k in json_cols and v is not None and not isinstance(v, str) else v
            for k, v in row.items()
        }

    def _decode(self, table: str, row: sqlite3.Row | Any) -> dict[str, Any]:
        data = dict(row)
        for col in _BOOL_COLUMNS.get(table, ()):
            if col in data and data[col] is not None:
                data[col] = bool(data[col])
        return data

    async def _execute_write(self, sql: str, params: list[Any], table: str) -> list[dict[str, Any]]:
        return await self._execute_writes([(sql, params)], table)

    async def _execute_writes(
        self, statements: list[tuple[str, list[Any]]], table: str
    ) -> list[dict[str, Any]]:
        """Run write statements (with RETURNING) in one transaction, mapping SQLite errors."""
        conn = self.db.conn
        rows: list[Any] = []
        try:
            for sql, params in statements:
                cursor = await conn.execute(sql, params)
                rows += await cursor.fetchall()
            await conn.commit()
        except sqlite3.IntegrityError as e:
            await conn.rollback()
            raise ConflictError(str(e), table=table) from e
        except sqlite3.Error as e:
            await conn.rollback()
            raise GatewayError(str(e), table=table) from e
        return [self._decode(table, r) for r in rows]

    def _publish(
        self,
        table: str,
        change: ChangeType,
        rows: list[dict[str, Any]],
        before: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        """Publish one event per row; *before* maps row ids to their pre-update image."""
        for row in rows:
            if change is ChangeType.DELETE:
                self.feed.publish(ChangeEvent(table=table, type=change, old=row))
            else:
                old = (before or {}).get(row.get("id"))
                self.feed.publish(ChangeEvent(table=table, type=change, new=row, old=old))

    # -- rows -------------------------------------------------------------

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
        principal = await self._resolve(credentials)
        where, params = self._where(table, eq, is_null)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            self._check_columns(table, [order_by])
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}, rowid ASC"
        try:
            cursor = await self.db.conn.execute(sql, params)
            rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise GatewayError(str(e), table=table) from e

        visible = [
            data for data in (self._decode(table, r) for r in rows)
            if policies.can_read(principal, table, data)
        ]
        return visible[:limit] if limit is not None else visible

    async def insert(
        self, credentials: Credentials, table: str, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        principal = await self._resolve(credentials)
        async with self._write_lock:
            for row in rows:
                self._check_columns(table, row.keys())
                policies.check_insert(principal, table, row)
            statements = []
            for row in rows:
                encoded = self._encode(table, row)
                columns = ", ".join(encoded)
                placeholders = ", ".join("?" for _ in encoded)
                statements.append((
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *",
                    list(encoded.values()),
                ))
            inserted = await self._execute_writes(statements, table)
        self._publish(table, ChangeType.INSERT, inserted)
        logger.debug("rows_inserted", table=table, count=len(inserted), role=principal.role)
        return inserted

    async def update(
        self,
        credentials: Credentials,
        table: str,
        values: dict[str, Any],
        *,
        eq: dict[str, Any] | None = None,
        is_null: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        principal = await self._resolve(credentials)
        if not values:
            raise GatewayError("update requires at least one column", table=table)
        self._check_columns(table, values.keys())
        policies.check_update(principal, table)
        where, params = self._where(table, eq, is_null)
        encoded = self._encode(table, values)
        assignments = ", ".join(f"{col} = ?" for col in encoded)
        async with self._write_lock:
            try:
                cursor = await self.db.conn.execute(f"SELECT * FROM {table}{where}", params)
                previous = await cursor.fetchall()
            except sqlite3.Error as e:
                raise GatewayError(str(e), table=table) from e
            updated = await self._execute_write(
                f"UPDATE {table} SET {assignments}{where} RETURNING *",
                [*encoded.values(), *params],
                table,
            )
        before = {row.get("id"): row for row in (self._decode(table, r) for r in previous)}
        self._publish(table, ChangeType.UPDATE, updated, before)
        return updated

    async def delete(
        self, credentials: Credentials, table: str, *, eq: dict[str, Any] | None = None
    ) -> int:
        principal = await self._resolve(credentials)
        policies.check_delete(principal, table)
        where, params = self._where(table, eq, ())
        if not where:
            raise GatewayError("delete requires a filter", table=table)
        async with self._write_lock:
            deleted = await self._execute_write(
                f"DELETE FROM {table}{where} RETURNING *", params, table
            )
        self._publish(table, ChangeType.DELETE, deleted)
        return len(deleted)

    async def rpc(self, credentials: Credentials, name: str, params: dict[str, Any]) -> Any:
        await self._resolve(credentials)
        match name:
            case "mark_client_seen":
                async with self._write_lock:
                    updated = await self._execute_write(
                        """UPDATE conversations SET client_last_seen_at = ?
                           WHERE id = ? AND client_token = ?
                           RETURNING *""",
                        [utc_now(), params["conversation_id"], params["client_token"]],
                        "conversations",
                    )
                self._publish("conversations", ChangeType.UPDATE, updated)
                return len(updated)
            case "resolve_member":
                cursor = await self.db.conn.execute(
                    """SELECT id FROM members
                       WHERE community_id = ? AND lower(email) = lower(?)
                       LIMIT 1""",
                    (params["community_id"], params["email"]),
                )
                row = await cursor.fetchone()
                return row["id"] if row else None
            case _:
                raise NotFoundError(f"unknown function: {name}")

    # -- realtime ---------------------------------------------------------

    async def subscribe(
        self,
        credentials: Credentials,
        table: str,
        handler: ChangeHandler,
        *,
        events: Iterable[ChangeType] | None = None,
        eq: tuple[str, Any] | None = None,
    ) -> Subscription:
        self._check_table(table)
        if eq is not None:
            self._check_columns(table, [eq[0]])
        # Membership is resolved once, when the channel is joined.
        principal = await self._resolve(credentials)
        return self.feed.subscribe(principal, table, handler, events=events, eq=eq)

    # -- object storage ---------------------------------------------------

    def _object_path(self, bucket: str, path: str) -> Path:
        parts = PurePosixPath(path).parts
        if not parts or any(p in ("..", "") for p in parts) or PurePosixPath(path).is_absolute():
            raise UploadError(f"invalid object path: {path!r}")
        return self._storage_root.joinpath(bucket, *parts)

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
        principal = await self._resolve(credentials)
        policies.check_upload(principal, bucket, self._buckets)
        if not data:
            raise UploadError("refusing to store an empty object")
        target = self._object_path(bucket, path)
        if target.exists() and not upsert:
            raise ConflictError(f"object already exists: {bucket}/{path}")

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise UploadError(str(e)) from e
        logger.info("object_uploaded", bucket=bucket, path=path, size=len(data), content_type=content_type)
        return path

    def public_url(self, bucket: str, path: str) -> str:
        base = self._config.public_url.rstrip("/")
        return f"{base}/storage/v1/object/public/{bucket}/{quote(path)}"

    # -- auth -------------------------------------------------------------

    async def create_user(self, email: str, password: str, display_name: str = "") -> AuthUser:
        user = AuthUser(id=uuid.uuid4().hex, email=email.lower(), display_name=display_name or email)
        async with self._write_lock:
            await self._execute_write(
                """INSERT INTO auth_users (id, email, password_hash, display_name)
                   VALUES (?, ?, ?, ?) RETURNING id""",
                [user.id, user.email, hash_password(password), user.display_name],
                "auth_users",
            )
        logger.info("auth_user_created", user_id=user.id, email=user.email)
        return user

    async def grant_membership(self, user_id: str, role: str) -> None:
        """Add *user_id* to ``support_users`` (role "support") or ``admin_users``."""
        table = {"support": "support_users", "admin": "admin_users"}.get(role)
        if table is None:
            raise ValueError(f"Unknown staff role: {role}")
        async with self._write_lock:
            await self._execute_write(
                f"INSERT OR IGNORE INTO {table} (user_id) VALUES (?) RETURNING user_id",
                [user_id],
                table,
            )

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        cursor = await self.db.conn.execute(
            "SELECT * FROM auth_users WHERE email = ?", (email.lower(),)
        )
        row = await cursor.fetchone()
        if row is None or not verify_password(password, row["password_hash"]):
            logger.warning("sign_in_failed", email=email)
            raise AuthError("Invalid login credentials")

        token = secrets.token_urlsafe(32)
        async with self._write_lock:
            await self._execute_write(
                "INSERT INTO auth_sessions (access_token, user_id) VALUES (?, ?) RETURNING access_token",
                [token, row["id"]],
                "auth_sessions",
            )
        user = AuthUser(id=row["id"], email=row["email"], display_name=row["display_name"])
        logger.info("signed_in", user_id=user.id)
        return AuthSession(access_token=token, user=user)

    async def get_user(self, access_token: str) -> AuthUser | None:
        cursor = await self.db.conn.execute(
            """SELECT u.id, u.email, u.display_name FROM auth_sessions s
               JOIN auth_users u ON u.id = s.user_id
               WHERE s.access_token = ?""",
            (access_token,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return AuthUser(id=row["id"], email=row["email"], display_name=row["display_name"])

    async def sign_out(self, access_token: str) -> None:
        async with self._write_lock:
            await self._execute_write(
                "DELETE FROM auth_sessions WHERE access_token = ? RETURNING access_token",
                [access_token],
                "auth_sessions",
            )
