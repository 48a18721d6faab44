from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def _log_file_handler(log_file: str) -> logging.Handler:
    p = Path(os.path.expanduser(log_file))
    if p.parent:
        p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        # Call logs carry endpoint identities and addresses.
        os.chmod(p, 0o600)
    except Exception:
        pass
    return handler


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Configure Python logging for rcsd.

    CLI overrides win over the config file. An empty ``override_file``
    disables file logging even if the config names a file. Existing root
    handlers are replaced, so calling this twice does not duplicate output.
    """

    level = parse_level(override_level or cfg.log_level, logging.INFO)
    rns_level = parse_level(cfg.log_rns_level, logging.WARNING)

    if override_file is not None:
        log_file = override_file.strip() or None
    else:
        log_file = (cfg.log_file or "").strip() or None

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(_log_file_handler(log_file))

    fmt = str(cfg.log_format or "").strip() or _DEFAULT_FORMAT
    datefmt = (cfg.log_datefmt or "").strip() or None
    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    logging.getLogger("RNS").setLevel(rns_level)
    logging.captureWarnings(True)
