from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS
from tomlkit import comment, document, dumps, nl, table
from tomlkit.toml_document import TOMLDocument

from .auth import IdentityGate
from .config import HubRuntimeConfig, apply_config_data, apply_environment, load_toml
from .errors import ChatError
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_database_path,
    default_identity_path,
    ensure_private_dir,
    expand_path,
)
from .service import HubService
from .store import SqliteChatStore


def _default_config_document(identity_path: str, database_path: str) -> TOMLDocument:
    defaults = HubRuntimeConfig()
    doc = document()
    doc.add(comment("chatd configuration (TOML)"))
    doc.add(comment(""))
    doc.add(comment("This file was created on first run."))
    doc.add(comment("Set [auth] jwt_secret (or CHATD_JWT_SECRET), then start chatd again."))
    doc.add(nl())

    hub = table()
    hub.add(comment("Reticulum configuration directory. Empty lets Reticulum pick its default."))
    hub.add("configdir", "")
    hub.add(comment("Where chatd stores its persistent Reticulum identity."))
    hub.add("identity_path", identity_path)
    hub.add("dest_name", defaults.dest_name)
    hub.add("hub_name", defaults.hub_name)
    hub.add(nl())
    hub.add(comment("announce_on_start: one announce right after startup."))
    hub.add(comment("announce_period_s: if >0, re-announce periodically."))
    hub.add("announce_on_start", True)
    hub.add("announce_period_s", 0.0)
    hub.add(nl())
    hub.add(comment("Live state limits."))
    hub.add("typing_timeout_s", defaults.typing_timeout_s)
    hub.add("max_rooms_per_session", defaults.max_rooms_per_session)
    hub.add("max_room_id_len", defaults.max_room_id_len)
    hub.add("rate_limit_msgs_per_minute", defaults.rate_limit_msgs_per_minute)
    hub.add(nl())
    hub.add(comment("Hub-initiated liveness checks (0 disables)."))
    hub.add("ping_interval_s", 0.0)
    hub.add("ping_timeout_s", 0.0)
    hub.add(nl())
    hub.add(comment("Envelopes larger than the link MDU (history pages, mostly) are"))
    hub.add(comment("announced with a RESOURCE_ENVELOPE and sent as an RNS.Resource."))
    hub.add("enable_resource_transfer", True)
    hub.add("max_resource_bytes", defaults.max_resource_bytes)
    hub.add("max_pending_resource_expectations", defaults.max_pending_resource_expectations)
    hub.add("resource_expectation_ttl_s", defaults.resource_expectation_ttl_s)
    doc.add("hub", hub)

    auth = table()
    auth.add(comment("HMAC secret used to verify bearer tokens in HELLO."))
    auth.add(comment("CHATD_JWT_SECRET in the environment overrides this value."))
    auth.add("jwt_secret", "")
    auth.add("algorithm", defaults.jwt_algorithm)
    auth.add(comment("Claim holding the user id; 'sub' is tried when it is absent."))
    auth.add("user_claim", defaults.jwt_user_claim)
    auth.add(comment("User ids refused at HELLO even with a valid token."))
    auth.add("banned_users", [])
    auth.add(comment("Links that have not authenticated after this many seconds are closed."))
    auth.add("timeout_s", defaults.auth_timeout_s)
    doc.add("auth", auth)

    store = table()
    store.add(comment("SQLite database shared with the rest of the application."))
    store.add("path", database_path)
    store.add("timeout_s", defaults.storage_timeout_s)
    store.add(comment("Require durable room membership for join_room and room_message."))
    store.add("enforce_room_membership", True)
    store.add("edit_window_s", defaults.edit_window_s)
    store.add("delete_window_s", defaults.delete_window_s)
    store.add("history_page_size", defaults.history_page_size)
    doc.add("store", store)

    logging_tbl = table()
    logging_tbl.add("level", defaults.log_level)
    logging_tbl.add("rns_level", defaults.log_rns_level)
    logging_tbl.add("console", True)
    logging_tbl.add(comment("Optional log file path (empty disables)."))
    logging_tbl.add("file", "")
    logging_tbl.add("format", defaults.log_format)
    logging_tbl.add("datefmt", "")
    doc.add("logging", logging_tbl)

    return doc


def _write_default_config(config_path: str, identity_path: str, database_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(dumps(_default_config_document(identity_path, database_path)))
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def _ensure_first_run_files(config_path: str, identity_path: str, database_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, database_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    db_dir = os.path.dirname(database_path)
    if db_dir:
        ensure_private_dir(Path(db_dir))

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chatd", description="Run a chatd real-time chat hub")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--database",
        default=None,
        help="Path to the SQLite message store (default from config)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: chatd.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in WELCOME")

    p.add_argument("--max-rooms", type=int, default=None, help="Max rooms per connection")
    p.add_argument("--max-room-id-len", type=int, default=None, help="Max room id length")
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )
    p.add_argument(
        "--typing-timeout",
        type=float,
        default=None,
        help="Seconds before an unrenewed typing indicator clears",
    )
    p.add_argument(
        "--no-enforce-room-membership",
        action="store_true",
        help="Let any authenticated user join and post to any room",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    admin = p.add_argument_group("store administration (run and exit)")
    admin.add_argument("--create-user", metavar="USERNAME", default=None)
    admin.add_argument("--create-room", metavar="NAME", default=None)
    admin.add_argument(
        "--owner", metavar="USER_ID", default=None, help="Creator for --create-room"
    )
    admin.add_argument(
        "--add-member", nargs=2, metavar=("ROOM_ID", "USER_ID"), default=None
    )
    admin.add_argument(
        "--issue-token", metavar="USER_ID", default=None, help="Print a bearer token"
    )

    return p


def _config_from_args(args: argparse.Namespace) -> HubRuntimeConfig:
    config_path = str(args.config)
    cfg = HubRuntimeConfig(
        config_path=config_path,
        configdir=args.configdir,
        identity_path=str(args.identity),
        database_path=str(default_database_path()),
    )

    if config_path and os.path.exists(config_path):
        cfg = apply_config_data(cfg, load_toml(config_path))
    cfg = apply_environment(cfg)

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.database is not None:
        cfg = replace(cfg, database_path=str(args.database))
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.max_rooms is not None:
        cfg = replace(cfg, max_rooms_per_session=int(args.max_rooms))
    if args.max_room_id_len is not None:
        cfg = replace(cfg, max_room_id_len=int(args.max_room_id_len))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute))
    if args.typing_timeout is not None:
        cfg = replace(cfg, typing_timeout_s=float(args.typing_timeout))
    if args.no_enforce_room_membership:
        cfg = replace(cfg, enforce_room_membership=False)

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def _run_admin(args: argparse.Namespace, cfg: HubRuntimeConfig) -> bool:
    """Handle the store administration flags. Returns False if none were given."""
    if not (args.create_user or args.create_room or args.add_member or args.issue_token):
        return False

    store = SqliteChatStore(
        expand_path(str(cfg.database_path)), timeout=float(cfg.storage_timeout_s)
    )
    try:
        if args.create_user:
            user = store.create_user(args.create_user)
            print(user.id)
        if args.create_room:
            if not args.owner:
                raise SystemExit("--create-room requires --owner USER_ID")
            print(store.create_room(args.create_room, args.owner))
        if args.add_member:
            room_id, user_id = args.add_member
            store.add_room_member(room_id, user_id)
        if args.issue_token:
            gate = IdentityGate(
                store,
                secret=cfg.jwt_secret,
                algorithm=cfg.jwt_algorithm,
                user_claim=cfg.jwt_user_claim,
            )
            print(gate.issue_token(args.issue_token))
    except ChatError as e:
        raise SystemExit(f"chatd: {e}") from e
    finally:
        store.close()
    return True


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    database_path = str(args.database) if args.database else str(default_database_path())

    if _ensure_first_run_files(config_path, identity_path, database_path):
        print(
            "Created default chatd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run chatd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = _config_from_args(args)

    if _run_admin(args, cfg):
        return

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
