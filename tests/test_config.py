import tomllib

import pytest
from tomlkit import dumps

from chatd.cli import _build_arg_parser, _config_from_args, _default_config_document
from chatd.config import HubRuntimeConfig, apply_config_data, apply_environment
from chatd.logging_config import parse_level


def test_tables_map_to_fields() -> None:
    cfg = apply_config_data(
        HubRuntimeConfig(),
        {
            "hub": {"hub_name": "den", "typing_timeout_s": 5.0},
            "auth": {"jwt_secret": "s3cret", "banned_users": ["u1", "u2"], "timeout_s": 10},
            "store": {"path": "/tmp/chat.db", "enforce_room_membership": False},
            "logging": {"level": "DEBUG", "file": ""},
            "unknown": {"x": 1},
        },
    )

    assert cfg.hub_name == "den"
    assert cfg.typing_timeout_s == 5.0
    assert cfg.jwt_secret == "s3cret"
    assert cfg.banned_users == ("u1", "u2")
    assert cfg.auth_timeout_s == 10
    assert cfg.database_path == "/tmp/chat.db"
    assert cfg.enforce_room_membership is False
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None


def test_config_path_is_not_overridden_by_file() -> None:
    cfg = apply_config_data(HubRuntimeConfig(config_path="a.toml"), {"config_path": "b.toml"})
    assert cfg.config_path == "a.toml"


def test_empty_secret_means_unset() -> None:
    cfg = apply_config_data(HubRuntimeConfig(), {"auth": {"jwt_secret": ""}})
    assert cfg.jwt_secret is None


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("CHATD_JWT_SECRET", "from-env")
    monkeypatch.setenv("CHATD_DATABASE", "/var/lib/chatd/chat.db")
    cfg = apply_environment(HubRuntimeConfig(jwt_secret="from-file"))

    assert cfg.jwt_secret == "from-env"
    assert cfg.database_path == "/var/lib/chatd/chat.db"


def test_default_config_document_loads_back() -> None:
    text = dumps(_default_config_document("/id/hub_identity", "/db/chat.sqlite3"))
    cfg = apply_config_data(HubRuntimeConfig(), tomllib.loads(text))

    assert cfg.identity_path == "/id/hub_identity"
    assert cfg.database_path == "/db/chat.sqlite3"
    assert cfg.jwt_secret is None
    assert cfg.configdir is None
    assert cfg.enforce_room_membership is True
    assert cfg.typing_timeout_s == HubRuntimeConfig().typing_timeout_s


def test_command_line_wins_over_file(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("CHATD_JWT_SECRET", raising=False)
    monkeypatch.delenv("CHATD_DATABASE", raising=False)
    config = tmp_path / "chatd.toml"
    config.write_text('[hub]\nhub_name = "from-file"\nmax_rooms_per_session = 3\n')

    args = _build_arg_parser().parse_args(
        [
            "--config",
            str(config),
            "--hub-name",
            "from-cli",
            "--no-enforce-room-membership",
            "--typing-timeout",
            "1.5",
        ]
    )
    cfg = _config_from_args(args)

    assert cfg.hub_name == "from-cli"
    assert cfg.max_rooms_per_session == 3
    assert cfg.enforce_room_membership is False
    assert cfg.typing_timeout_s == 1.5


@pytest.mark.parametrize(
    "value,expected", [("debug", 10), ("WARNING", 30), (20, 20), ("nonsense", 40), (None, 40)]
)
def test_parse_level(value, expected) -> None:
    assert parse_level(value, 40) == expected
