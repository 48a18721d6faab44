from __future__ import annotations

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "rcs.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rcs"
    call_timeout_s: float = 30.0
    queue_offline_requests: bool = True
    max_address_len: int = 64
    max_name_len: int = 64
    rate_limit_msgs_per_minute: int = 600
    enable_resource_transfer: bool = True
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay a parsed TOML document onto *base*.

    ``[hub]`` keys are flattened to the top level and ``[logging]`` keys are
    mapped onto the ``log_*`` fields. Unknown keys are ignored.
    """

    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for src_key, dst_key in (
            ("level", "log_level"),
            ("rns_level", "log_rns_level"),
            ("console", "log_console"),
            ("file", "log_file"),
            ("format", "log_format"),
            ("datefmt", "log_datefmt"),
        ):
            if src_key in log_table:
                mapped[dst_key] = log_table.get(src_key)
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        try:
            updates["announce_on_start"] = bool(data["announce"])
        except Exception:
            pass

    for float_key in ("call_timeout_s", "announce_period_s"):
        if float_key in updates:
            updates[float_key] = float(updates[float_key])

    for opt_key in ("configdir", "log_file", "log_datefmt"):
        if opt_key in updates and updates[opt_key] == "":
            updates[opt_key] = None

    return replace(base, **updates) if updates else base
