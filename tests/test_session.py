from pathlib import Path

from support_widget.config import LocalStorageConfig
from support_widget.core.session import LocalStore, TokenStore


def test_client_token_is_stable_across_reloads(tmp_path: Path):
    path = tmp_path / "browser.json"
    first = TokenStore(LocalStore(path)).get_or_create_client_token()
    again = TokenStore(LocalStore(path)).get_or_create_client_token()

    assert first == again
    assert len(first) == 32


def test_active_conversation_persists_and_notifies_only_on_change(tmp_path: Path):
    path = tmp_path / "browser.json"
    tokens = TokenStore(LocalStore(path))
    changes: list[str] = []
    remove = tokens.on_change(changes.append)

    tokens.set_active_conversation("conv-1")
    tokens.set_active_conversation("conv-1")

    assert changes == ["active_conversation"]
    assert TokenStore(LocalStore(path)).active_conversation == "conv-1"

    tokens.set_active_conversation(None)
    assert tokens.active_conversation is None
    assert changes == ["active_conversation", "active_conversation"]

    remove()
    tokens.set_active_conversation("conv-2")
    assert len(changes) == 2


def test_current_user_notifies_when_authenticated_flag_flips(tmp_path: Path):
    tokens = TokenStore(LocalStore(tmp_path / "browser.json"))
    changes: list[str] = []
    tokens.on_change(changes.append)

    tokens.set_current_user({"id": "u1", "display_name": "Ana"})
    tokens.set_current_user({"id": "u1", "display_name": "Ana B."})
    assert tokens.is_authenticated
    assert changes == ["current_user"]

    tokens.set_current_user(None)
    assert not tokens.is_authenticated
    assert changes == ["current_user", "current_user"]


def test_unwritable_storage_falls_back_to_memory(tmp_path: Path):
    # A directory where the file should be makes every write fail.
    path = tmp_path / "browser.json"
    path.mkdir()
    tokens = TokenStore(LocalStore(path))

    token = tokens.get_or_create_client_token()

    assert tokens.persistent is False
    assert tokens.get_or_create_client_token() == token


def test_corrupt_storage_falls_back_to_memory(tmp_path: Path):
    path = tmp_path / "browser.json"
    path.write_text("{not json", encoding="utf-8")
    store = LocalStore(path)

    assert store.persistent is False
    store.set("k", "v")
    assert store.get("k") == "v"
    assert path.read_text(encoding="utf-8") == "{not json"


def test_custom_keys_are_used(tmp_path: Path):
    config = LocalStorageConfig(client_token_key="tok")
    store = LocalStore(tmp_path / "browser.json")
    token = TokenStore(store, config).get_or_create_client_token()

    assert store.get("tok") == token
