"""CLI settings stored as YAML, layered over defaults and environment variables"""

import os
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console

console = Console()

DEFAULTS: dict[str, Any] = {
    "api": {
        "base_url": "http://localhost:8000",
        "timeout": 30,
        "actor": None,
        "cron_secret": None,
    },
    "display": {"jobs_per_page": 20},
    "poll": {"interval_seconds": 60},
}

# Environment variables override the file, not the other way round
ENV_OVERRIDES = {
    "api.base_url": "LABELOPS_API_URL",
    "api.actor": "LABELOPS_ACTOR",
    "api.cron_secret": "CRON_SECRET",
}

INT_KEYS = {"api.timeout", "display.jobs_per_page", "poll.interval_seconds"}
SECRET_KEYS = {"api.cron_secret"}


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _assign(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    *parents, leaf = dotted_key.split(".")
    for part in parents:
        if not isinstance(data.get(part), dict):
            data[part] = {}
        data = data[part]
    data[leaf] = value


class ConfigManager:
    def __init__(self, config_dir: Path | None = None):
        self.config_dir = config_dir or Path(
            os.getenv("LABELOPS_CONFIG_DIR", Path.home() / ".labelops")
        )
        self.config_file = self.config_dir / "config.yaml"

    def _read_file(self) -> dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            return yaml.safe_load(self.config_file.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config: {e}[/red]")
            return {}

    def _write_file(self, data: dict[str, Any]) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(yaml.safe_dump(data, default_flow_style=False))

    def load_config(self) -> dict[str, Any]:
        """Effective configuration: defaults, then the file, then the environment."""
        merged = _merge(deepcopy(DEFAULTS), self._read_file())
        for key, env_var in ENV_OVERRIDES.items():
            if os.getenv(env_var):
                _assign(merged, key, os.environ[env_var])
        if not merged["api"].get("actor"):
            merged["api"]["actor"] = os.getenv("USER", "cli")
        return merged

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a dotted key such as `api.base_url`."""
        value: Any = self.load_config()
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set(self, key: str, value: Any) -> Any:
        """Persist one dotted key to the file and return the stored value.

        Raises ValueError when a numeric key gets a non-numeric value.
        """
        if key in INT_KEYS:
            value = int(value)
        data = self._read_file()
        _assign(data, key, value)
        self._write_file(data)
        return value

    def reset(self) -> None:
        """Drop every stored value so defaults apply again."""
        if self.config_file.exists():
            self.config_file.unlink()


config = ConfigManager()
