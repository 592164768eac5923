"""Client-side persisted state: local key/value store and the token/session store."""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from support_widget.config import LocalStorageConfig
from support_widget.log import get_logger

logger = get_logger(__name__)

StateListener = Callable[[str], None]


class LocalStore:
    """JSON-file key/value store standing in for browser local storage.

    If the file cannot be read or written the store keeps working in memory
    and ``persistent`` turns False.
    """

    def __init__(self, path: str | Path | None):
        self._path = Path(path) if path else None
        self._data: dict[str, Any] = {}
        self.persistent = self._path is not None
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            self._data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            self._degrade("read", e)

    def _flush(self) -> None:
        if not self.persistent or self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        except OSError as e:
            self._degrade("write", e)

    def _degrade(self, op: str, error: Exception) -> None:
        self.persistent = False
        logger.warning(
            "local_store_unavailable",
            op=op,
            path=str(self._path),
            error=str(error),
            hint="state will not survive a reload",
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()


class TokenStore:
    """Anonymous client token, active-conversation pointer and current user.

    Listeners are told which key changed (``"active_conversation"`` or
    ``"current_user"``); the synchronizer re-bootstraps on either.
    """

    def __init__(self, store: LocalStore, config: LocalStorageConfig | None = None):
        self._store = store
        self._config = config or LocalStorageConfig()
        self._listeners: list[StateListener] = []

    @property
    def persistent(self) -> bool:
        return self._store.persistent

    @property
    def local_store(self) -> LocalStore:
        return self._store

    def get_or_create_client_token(self) -> str:
        """Return the browser-stable anonymous token, creating it on first use."""
        token = self._store.get(self._config.client_token_key)
        if token:
            return token
        token = uuid.uuid4().hex
        self._store.set(self._config.client_token_key, token)
        logger.info("client_token_created", persistent=self._store.persistent)
        return token

    @property
    def active_conversation(self) -> Optional[str]:
        return self._store.get(self._config.active_conversation_key)

    def set_active_conversation(self, conversation_id: str | None) -> None:
        if conversation_id == self.active_conversation:
            return
        if conversation_id is None:
            self._store.remove(self._config.active_conversation_key)
        else:
            self._store.set(self._config.active_conversation_key, conversation_id)
        logger.info("active_conversation_changed", conversation_id=conversation_id)
        self._notify("active_conversation")

    @property
    def current_user(self) -> Optional[dict[str, Any]]:
        return self._store.get(self._config.current_user_key)

    @property
    def is_authenticated(self) -> bool:
        return self.current_user is not None

    def set_current_user(self, user: dict[str, Any] | None) -> None:
        was_authenticated = self.is_authenticated
        if user is None:
            self._store.remove(self._config.current_user_key)
        else:
            self._store.set(self._config.current_user_key, user)
        if was_authenticated != self.is_authenticated:
            self._notify("current_user")

    def on_change(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, key: str) -> None:
        for listener in list(self._listeners):
            listener(key)
