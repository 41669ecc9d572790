from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from typing import Any


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "chatd.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "chatd"

    # Identity gate
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    jwt_user_claim: str = "userId"
    banned_users: tuple[str, ...] = ()
    auth_timeout_s: float = 30.0

    # Durable store
    database_path: str | None = None
    storage_timeout_s: float = 5.0
    enforce_room_membership: bool = True
    edit_window_s: float = 15 * 60
    delete_window_s: float = 60 * 60
    history_page_size: int = 50

    # Live state
    typing_timeout_s: float = 3.0
    max_rooms_per_session: int = 64
    max_room_id_len: int = 64
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0

    # Envelopes larger than the link MDU travel as RNS resources
    enable_resource_transfer: bool = True
    max_resource_bytes: int = 64 * 1024
    max_pending_resource_expectations: int = 8
    resource_expectation_ttl_s: float = 30.0

    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


# TOML table -> (key in table, config field)
_TABLE_KEYS: dict[str, dict[str, str]] = {
    "auth": {
        "jwt_secret": "jwt_secret",
        "secret": "jwt_secret",
        "algorithm": "jwt_algorithm",
        "user_claim": "jwt_user_claim",
        "banned_users": "banned_users",
        "timeout_s": "auth_timeout_s",
    },
    "store": {
        "path": "database_path",
        "timeout_s": "storage_timeout_s",
        "enforce_room_membership": "enforce_room_membership",
        "edit_window_s": "edit_window_s",
        "delete_window_s": "delete_window_s",
        "history_page_size": "history_page_size",
    },
    "logging": {
        "level": "log_level",
        "rns_level": "log_rns_level",
        "console": "log_console",
        "file": "log_file",
        "format": "log_format",
        "datefmt": "log_datefmt",
    },
}

_EMPTY_MEANS_NONE = ("configdir", "jwt_secret", "database_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay parsed TOML onto ``base``.

    Top-level keys and the ``[hub]`` table map to fields directly; the
    ``[auth]``, ``[store]`` and ``[logging]`` tables use short names.
    Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return base

    hub = data.get("hub")
    if isinstance(hub, dict):
        data = {**data, **hub}

    mapped: dict[str, Any] = {}
    for table_name, keys in _TABLE_KEYS.items():
        table = data.get(table_name)
        if not isinstance(table, dict):
            continue
        for key, field in keys.items():
            if key in table:
                mapped[field] = table.get(key)
    data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "banned_users" in updates and isinstance(updates["banned_users"], list):
        updates["banned_users"] = tuple(str(x) for x in updates["banned_users"])

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    for key in _EMPTY_MEANS_NONE:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def apply_environment(cfg: HubRuntimeConfig) -> HubRuntimeConfig:
    """Secrets may come from the environment instead of the config file."""
    secret = os.environ.get("CHATD_JWT_SECRET")
    if secret:
        cfg = replace(cfg, jwt_secret=secret)
    db_path = os.environ.get("CHATD_DATABASE")
    if db_path:
        cfg = replace(cfg, database_path=db_path)
    return cfg
