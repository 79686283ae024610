from __future__ import annotations

import os
from pathlib import Path


def default_home_dir() -> Path:
    override = os.environ.get("CHATRELAY_HOME")
    if override:
        return Path(override)
    return Path.home() / ".chatrelay"


def default_config_path() -> Path:
    return default_home_dir() / "chatrelay.toml"


def default_identity_path() -> Path:
    return default_home_dir() / "hub_identity"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        pass
