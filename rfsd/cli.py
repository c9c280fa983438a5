from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace

import RNS
from tomlkit import comment, document, dumps, nl, table

from .config import HubRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import RfsdHome, ensure_private_dir, restrict_mode
from .service import HubService


def _default_config_text(identity_path: str, uploads_dir: str) -> str:
    defaults = HubRuntimeConfig()

    doc = document()
    doc.add(comment("rfsd configuration (TOML)"))
    doc.add(comment(""))
    doc.add(comment("This file was created on first run."))
    doc.add(comment("Edit it, then start rfsd again."))
    doc.add(nl())

    hub = table()
    hub.add(comment("Optional: Reticulum configuration directory."))
    hub.add(comment("If left unset, Reticulum will choose its default (usually ~/.reticulum)."))
    hub.add("configdir", "")
    hub.add(nl())
    hub.add(comment("Where rfsd stores its persistent identity (Reticulum Identity file)."))
    hub.add("identity_path", identity_path)
    hub.add(nl())
    hub.add(comment("Where uploaded files are kept. The directory is emptied on every start,"))
    hub.add(comment("since rooms only live in memory."))
    hub.add("uploads_dir", uploads_dir)
    hub.add(nl())
    hub.add(comment("Destination name to host the hub on."))
    hub.add("dest_name", defaults.dest_name)
    hub.add(nl())
    hub.add(comment("announce_on_start: send a single announce right after startup."))
    hub.add(comment("announce_period_s: if >0, periodically re-announce."))
    hub.add("announce_on_start", defaults.announce_on_start)
    hub.add("announce_period_s", defaults.announce_period_s)
    hub.add("hub_name", defaults.hub_name)
    hub.add(nl())
    hub.add(comment("Username policy: maximum length in Unicode characters (0 disables)."))
    hub.add("username_max_chars", defaults.username_max_chars)
    hub.add(nl())
    hub.add(comment("Uploads."))
    hub.add(comment("max_upload_bytes: largest accepted file."))
    hub.add(comment("max_pending_uploads: announced uploads waiting for data, per link."))
    hub.add(comment("upload_expectation_ttl_s: how long an announced upload is kept."))
    hub.add("max_upload_bytes", defaults.max_upload_bytes)
    hub.add("max_pending_uploads", defaults.max_pending_uploads)
    hub.add("upload_expectation_ttl_s", defaults.upload_expectation_ttl_s)
    hub.add(nl())
    hub.add(comment("Log a stats line every N seconds (0 disables)."))
    hub.add("stats_log_interval_s", defaults.stats_log_interval_s)
    doc.add("hub", hub)

    log = table()
    log.add(comment("Log level for rfsd itself."))
    log.add("level", defaults.log_level)
    log.add(comment("Log level for Reticulum/RNS Python logging."))
    log.add("rns_level", defaults.log_rns_level)
    log.add(comment("Log to stderr (systemd/journald friendly)."))
    log.add("console", defaults.log_console)
    log.add(comment("Optional file path for logs (leave empty to disable)."))
    log.add("file", "")
    log.add("format", defaults.log_format)
    log.add("datefmt", "")
    doc.add("logging", log)

    return dumps(doc)


def _write_default_config(config_path: str, identity_path: str, uploads_dir: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(cfg_dir)

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(_default_config_text(identity_path, uploads_dir))


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, str(RfsdHome.from_env().uploads_dir))
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(storage_dir)
        ident = RNS.Identity()
        ident.to_file(identity_path)
        restrict_mode(identity_path, 0o600)
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    home = RfsdHome.from_env()
    p = argparse.ArgumentParser(prog="rfsd", description="Run an RFS file-share hub daemon")

    p.add_argument(
        "--config",
        default=str(home.config_path),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(home.identity_path),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument("--uploads-dir", default=None, help="Directory for uploaded files")
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rfs.hub)"
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
    p.add_argument("--hub-name", default=None, help="Hub name in announces")
    p.add_argument(
        "--max-upload-bytes", type=int, default=None, help="Largest accepted upload"
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
    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Defaults, then the config file, then command line overrides."""
    cfg = HubRuntimeConfig(
        config_path=str(args.config),
        configdir=args.configdir,
        identity_path=str(args.identity),
    )
    if args.config and os.path.exists(args.config):
        cfg = apply_config_data(cfg, load_toml(str(args.config)))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.uploads_dir is not None:
        cfg = replace(cfg, uploads_dir=args.uploads_dir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.max_upload_bytes is not None:
        cfg = replace(cfg, max_upload_bytes=int(args.max_upload_bytes))
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)
    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)

    if _ensure_first_run_files(config_path, identity_path):
        print(
            "Created default rfsd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run rfsd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
