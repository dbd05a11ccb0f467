"""Tests for settings/secrets loading."""
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from chatroom.config import DEFAULT_SESSION_SECRET, AppConfig, ChatSettings, load_config


def write_yaml(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_defaults_when_files_missing(tmp_path):
    config = load_config(tmp_path / "missing.settings.yaml")
    assert config.server.port == 3000
    assert config.chat.max_inline_image_bytes == 500 * 1024
    assert config.chat.client_upload_limit_bytes == 2 * 1024 * 1024
    assert config.chat.history_limit == 100
    assert config.chat.display_name_max_length == 50
    assert config.session.cookie_name == "chatroom_session"
    assert config.secrets.session.secret_key == DEFAULT_SESSION_SECRET


def test_settings_and_secrets_merged(tmp_path):
    settings = write_yaml(tmp_path / "chatroom.settings.yaml", {
        "server": {"port": 8080},
        "chat": {"max_inline_image_bytes": 1024, "history_limit": 20},
        "logging": {"level": "debug"},
    })
    write_yaml(tmp_path / "chatroom.secrets.yaml", {"session": {"secret_key": "s3cret"}})

    config = load_config(settings)
    assert config.server.port == 8080
    assert config.chat.max_inline_image_bytes == 1024
    assert config.chat.history_limit == 20
    assert config.logging.level == "debug"
    assert config.secrets.session.secret_key == "s3cret"


def test_relative_db_path_resolved_against_settings_dir(tmp_path):
    settings = write_yaml(tmp_path / "chatroom.settings.yaml", {"storage": {"db_path": "data/chat.duckdb"}})
    config = load_config(settings)
    assert Path(config.storage.db_path) == tmp_path.resolve() / "data" / "chat.duckdb"


def test_memory_db_path_untouched(tmp_path):
    settings = write_yaml(tmp_path / "chatroom.settings.yaml", {"storage": {"db_path": ":memory:"}})
    assert load_config(settings).storage.db_path == ":memory:"


@pytest.mark.parametrize("field", ["max_inline_image_bytes", "client_upload_limit_bytes", "history_limit"])
def test_limits_must_be_positive(field):
    with pytest.raises(ValidationError):
        ChatSettings(**{field: 0})


def test_app_config_composition():
    config = AppConfig()
    assert config.chat.group_name == "group"
    assert config.session.algorithm == "HS256"
