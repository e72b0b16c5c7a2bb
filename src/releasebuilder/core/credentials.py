"""Token lookup: an explicit file wins, otherwise the environment."""

import os
from pathlib import Path

from releasebuilder.core.errors import ConfigError


def read_token(path: str, env_var: str) -> str:
    if path:
        try:
            return Path(path).read_text(encoding="utf-8").strip()
        except OSError as err:
            raise ConfigError(f"failed to read token file {path}: {err}") from err
    return os.environ.get(env_var, "").strip()


def github_token(path: str = "") -> str:
    return read_token(path, "GITHUB_TOKEN")


def grafana_token(path: str = "") -> str:
    return read_token(path, "GRAFANA_TOKEN")
