"""Server configuration for parley.

Read from YAML at $PARLEY_CONFIG, or ~/.config/parley/config.yaml when that
is unset. Environment variables named PARLEY_<KEY> (e.g. PARLEY_DB,
PARLEY_MAX_CONTENT_LENGTH) override file values.

Example config.yaml:

    db_path: /var/lib/parley/parley.db
    max_content_length: 2000
    history_page_size: 50
    notification_sink: webhook
    notification_webhook_url: https://push.example.com/hooks/parley
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .models import MAX_CONTENT_LENGTH

NOTIFICATION_SINKS = ("database", "memory", "webhook")

# Keys whose environment variable is not PARLEY_<KEY>
_ENV_NAMES = {"db_path": "PARLEY_DB"}


class ParleyConfigError(ValueError):
    """Invalid configuration value or unreadable config file."""


def get_config_dir() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "parley"


def get_config_path() -> Path:
    """$PARLEY_CONFIG if set, else the XDG default."""
    explicit = os.environ.get("PARLEY_CONFIG")
    if explicit:
        return Path(explicit)
    return get_config_dir() / "config.yaml"


@dataclass
class ParleyConfig:
    db_path: str = ":memory:"
    max_content_length: int = MAX_CONTENT_LENGTH
    history_page_size: int = 50
    max_page_size: int = 200
    store_retry_attempts: int = 3
    store_timeout_seconds: float = 10.0
    notification_sink: str = "database"
    notification_webhook_url: str | None = None
    admin_token: str | None = None

    def validate(self) -> "ParleyConfig":
        if self.max_content_length < 1:
            raise ParleyConfigError("max_content_length must be positive")
        if not 1 <= self.history_page_size <= self.max_page_size:
            raise ParleyConfigError("history_page_size must be between 1 and max_page_size")
        if self.store_retry_attempts < 1:
            raise ParleyConfigError("store_retry_attempts must be at least 1")
        if self.store_timeout_seconds <= 0:
            raise ParleyConfigError("store_timeout_seconds must be positive")
        if self.notification_sink not in NOTIFICATION_SINKS:
            raise ParleyConfigError(
                f"notification_sink must be one of {', '.join(NOTIFICATION_SINKS)}"
            )
        if self.notification_sink == "webhook" and not self.notification_webhook_url:
            raise ParleyConfigError("notification_webhook_url is required for the webhook sink")
        return self

    def to_dict(self) -> dict:
        data = asdict(self)
        if data.get("admin_token"):
            data["admin_token"] = "***"
        return data

    def save(self, path: Path | None = None) -> Path:
        path = path or get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {k: v for k, v in asdict(self).items() if v is not None}
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        return path

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParleyConfig":
        known = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(known)
        if unknown:
            raise ParleyConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        values = {name: _coerce(known[name].default, name, value) for name, value in data.items()}
        return cls(**values).validate()

    @classmethod
    def load(cls, path: Path | None = None, environ: dict[str, str] | None = None) -> "ParleyConfig":
        """Load file values, then apply environment overrides."""
        path = path or get_config_path()
        environ = os.environ if environ is None else environ

        data: dict[str, Any] = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ParleyConfigError(f"Invalid YAML in {path}: {e}") from e
            if not isinstance(data, dict):
                raise ParleyConfigError(f"{path} must contain a mapping")

        for f in fields(cls):
            env_name = _ENV_NAMES.get(f.name, f"PARLEY_{f.name.upper()}")
            if env_name in environ:
                data[f.name] = environ[env_name]

        return cls.from_dict(data)


def _coerce(default: Any, name: str, value: Any) -> Any:
    """Cast a raw file or environment value to the type of the field default."""
    if value is None or value == "":
        if default is None:
            return None
        raise ParleyConfigError(f"{name} must not be empty")
    caster = type(default) if default is not None else str
    if caster in (int, float) and isinstance(value, bool):
        raise ParleyConfigError(f"{name} must be a number, got {value!r}")
    try:
        return caster(value)
    except (TypeError, ValueError) as e:
        raise ParleyConfigError(f"{name} must be a number, got {value!r}") from e


# --- Global config ---

_config: ParleyConfig | None = None


def get_config() -> ParleyConfig:
    """Process-wide config, loaded on first use."""
    global _config
    if _config is None:
        _config = ParleyConfig.load()
    return _config


def set_config(config: ParleyConfig) -> None:
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
