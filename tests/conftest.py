"""Shared fixtures: a file-backed local backend and per-"browser" sessions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio

from support_widget.config import (
    AppConfig,
    BackendConfig,
    ErrorLogConfig,
    LocalStorageConfig,
    SyncConfig,
)
from support_widget.core.session import LocalStore, TokenStore
from support_widget.core.types import ContextKind
from support_widget.error_log import ErrorLogger
from support_widget.gateway.client import Contexts, ServiceClient, build_contexts
from support_widget.gateway.local import LocalBackend
from support_widget.sync.chat import ChatSynchronizer
from support_widget.views.agent import AgentLoginScreen

PASSWORD = "s3cret-pass"


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        data_dir=str(tmp_path),
        backend=BackendConfig(
            db_path=str(tmp_path / "widget.db"),
            storage_dir=str(tmp_path / "storage"),
        ),
        local_storage=LocalStorageConfig(path=str(tmp_path / "browser.json")),
        error_log=ErrorLogConfig(environment="test"),
    )


@pytest_asyncio.fixture
async def backend(app_config: AppConfig):
    backend = LocalBackend(app_config.backend, app_config.buckets)
    await backend.start()
    yield backend
    await backend.stop()


@pytest.fixture
def service(backend: LocalBackend) -> ServiceClient:
    """RLS-bypassing client, as the CLI uses."""
    return ServiceClient(
        backend, ContextKind.MASTER, service_key=backend.service_credentials().service_key
    )


@dataclass
class Browser:
    """One simulated browser profile: its own local storage, contexts and sync."""

    tokens: TokenStore
    contexts: Contexts
    sync: ChatSynchronizer
    error_log: ErrorLogger


@pytest_asyncio.fixture
async def make_browser(tmp_path: Path, backend: LocalBackend, app_config: AppConfig):
    created: list[Browser] = []

    def _make(name: str, *, sync_config: SyncConfig | None = None, storage: Path | None = None) -> Browser:
        store = LocalStore(storage or tmp_path / f"{name}.json")
        tokens = TokenStore(store, app_config.local_storage)
        contexts = build_contexts(backend, tokens, app_config.local_storage)
        error_log = ErrorLogger(contexts.public, app_config.error_log)
        sync = ChatSynchronizer(
            contexts,
            tokens,
            sync_config=sync_config or app_config.sync,
            buckets=app_config.buckets,
            error_log=error_log,
        )
        browser = Browser(tokens=tokens, contexts=contexts, sync=sync, error_log=error_log)
        created.append(browser)
        return browser

    yield _make
    for browser in created:
        await browser.sync.stop()


@pytest_asyncio.fixture
async def staff_user(backend: LocalBackend):
    """Factory creating an auth user and granting it a staff role."""

    async def _create(email: str, name: str, role: str = "support"):
        user = await backend.create_user(email, PASSWORD, display_name=name)
        await backend.grant_membership(user.id, role)
        return user

    return _create


@pytest.fixture
def login_agent():
    """Sign a browser's support context in and wait for the staff bootstrap."""

    async def _login(browser: Browser, email: str) -> None:
        result = await AgentLoginScreen(browser.contexts.support, browser.tokens).login(email, PASSWORD)
        assert result.ok, result.error
        await browser.sync.settle()

    return _login
