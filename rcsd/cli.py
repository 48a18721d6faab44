from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace

import RNS

from .config import HubRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import HubPaths, ensure_parent_dir
from .service import HubService


def _write_default_config(config_path: str, identity_path: str) -> None:
    ensure_parent_dir(config_path)

    content = f"""# rcsd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rcsd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rcsd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name to host the hub on.
dest_name = "rcs.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Name carried in announces.
hub_name = "rcs"

# Call requests.
#
# call_timeout_s: an unanswered request is cancelled after this many seconds.
# queue_offline_requests: a request for an address with no agent online is held
# until an agent registers on that address (or the timeout elapses). When false
# the requester gets an "offline" reply instead.
call_timeout_s = 30.0
queue_offline_requests = true

# Limits.
max_address_len = 64
max_name_len = 64
rate_limit_msgs_per_minute = 600

# Large payload transfer via RNS.Resource
#
# Session descriptions and long presence lists often exceed the link MTU.
# Such events are sent as an RNS.Resource carrying the encoded envelope.
enable_resource_transfer = true
max_resource_bytes = 262144

[logging]

# Log level for rcsd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created_any = True

    if not os.path.exists(identity_path):
        ensure_parent_dir(identity_path)
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rcsd", description="Run a call-signaling hub over Reticulum"
    )
    defaults = HubPaths.defaults()

    p.add_argument(
        "--config",
        default=str(defaults.config),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(defaults.identity),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rcs.hub)"
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
    p.add_argument("--hub-name", default=None, help="Hub name carried in announces")

    p.add_argument(
        "--call-timeout",
        type=float,
        default=None,
        help="Seconds before an unanswered call request is cancelled",
    )
    p.add_argument(
        "--no-queue-offline",
        action="store_true",
        help="Reply 'offline' instead of holding requests for absent agents",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
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
    """Defaults, then the config file, then command-line overrides."""
    config_path = str(args.config)
    cfg = HubRuntimeConfig(
        config_path=config_path,
        configdir=args.configdir,
        identity_path=str(args.identity),
    )

    if config_path and os.path.exists(config_path):
        cfg = apply_config_data(cfg, load_toml(config_path))

    # An explicit --configdir beats the file.
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.call_timeout is not None:
        cfg = replace(cfg, call_timeout_s=float(args.call_timeout))
    if args.no_queue_offline:
        cfg = replace(cfg, queue_offline_requests=False)
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

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
            "Created default rcsd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run rcsd.",
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
