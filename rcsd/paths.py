"""Filesystem locations for rcsd state.

The config file and the hub's Reticulum identity live under one home
directory: ``~/.rcsd`` unless ``RCSD_HOME`` points elsewhere.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

HOME_ENV = "RCSD_HOME"
CONFIG_NAME = "rcsd.toml"
IDENTITY_NAME = "hub_identity"


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def rcsd_home() -> Path:
    override = os.environ.get(HOME_ENV)
    if override:
        return Path(expand_path(override))
    return Path.home() / ".rcsd"


@dataclass(frozen=True)
class HubPaths:
    config: Path
    identity: Path

    @classmethod
    def defaults(cls) -> HubPaths:
        home = rcsd_home()
        return cls(config=home / CONFIG_NAME, identity=home / IDENTITY_NAME)


def ensure_parent_dir(path: str) -> None:
    """Create the directory holding *path* with owner-only permissions."""
    parent = os.path.dirname(path)
    if not parent:
        return
    Path(parent).mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(parent, 0o700)
    except OSError:
        # Some filesystems ignore mode bits.
        pass
