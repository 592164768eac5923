from pathlib import Path

import pytest

from support_widget.config import AppConfig, _interpolate_env_vars, load_config


def test_defaults():
    config = AppConfig()

    assert config.local_storage.support_session_key == "support-auth"
    assert config.local_storage.master_session_key == "master-auth"
    assert config.buckets.chat_uploads == "chat-uploads"
    assert config.sync.optimistic_agent_messages is True
    assert config.presence.seen_interval_seconds == 10.0


def test_interpolation_leaves_unknown_vars(monkeypatch):
    monkeypatch.setenv("WIDGET_TEST_VAR", "value")

    assert _interpolate_env_vars("${WIDGET_TEST_VAR}/${MISSING_WIDGET_VAR}") == "value/${MISSING_WIDGET_VAR}"
    assert _interpolate_env_vars("${data_dir}/x", extra={"data_dir": "/d"}) == "/d/x"


def test_load_config_reads_yaml_env_and_data_dir(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("WIDGET_TEST_URL", raising=False)
    (tmp_path / ".env").write_text("WIDGET_TEST_URL=https://widget.example\n", encoding="utf-8")
    (tmp_path / "config.yaml").write_text(
        "\n".join([
            "log_level: DEBUG",
            f"data_dir: {tmp_path / 'data'}",
            "backend:",
            "  db_path: ${data_dir}/widget.db",
            "  public_url: ${WIDGET_TEST_URL}",
            "sync:",
            "  optimistic_agent_messages: false",
        ]),
        encoding="utf-8",
    )

    config = load_config(tmp_path / "config.yaml", tmp_path / ".env")

    assert config.log_level == "DEBUG"
    assert config.backend.db_path == f"{tmp_path / 'data'}/widget.db"
    assert config.backend.public_url == "https://widget.example"
    assert config.sync.optimistic_agent_messages is False
    assert config.sync.refetch_after_client_send is True


def test_missing_config_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", tmp_path / ".env")
