"""
Runtime configuration for hibernation.

Values are layered: dataclass defaults, then an optional YAML file, then
KUBECTL_HIBERNATE_<FIELD> environment variables.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Any

import yaml

from kubectl_hibernate.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "KUBECTL_HIBERNATE_"


@dataclass
class HibernationConfig:
    # Deletion verification and readiness waits (seconds)
    teardown_timeout: float = 180.0
    readiness_timeout: float = 600.0
    poll_interval: float = 1.0
    max_poll_interval: float = 10.0

    # Transient store error retries
    max_attempts: int = 5
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 30.0

    # Database engine
    pgdata_path: str = "/var/lib/postgresql/data/pgdata"
    postgres_container: str = "postgres"
    default_image: str = "ghcr.io/cloudnative-pg/postgresql:16"

    def __post_init__(self):
        for name in ("teardown_timeout", "readiness_timeout", "poll_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.max_poll_interval < self.poll_interval:
            raise ConfigError("max_poll_interval must be >= poll_interval")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")


def _coerce(field: dataclasses.Field, raw: Any, source: str) -> Any:
    try:
        if field.type in (float, "float"):
            return float(raw)
        if field.type in (int, "int"):
            return int(raw)
        return str(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{source}: invalid value {raw!r} for {field.name}")


def load_config(
    path: str | None = None, environ: dict[str, str] | None = None
) -> HibernationConfig:
    environ = os.environ if environ is None else environ
    fields = {f.name: f for f in dataclasses.fields(HibernationConfig)}
    values: dict[str, Any] = {}

    # ---- YAML file ----
    if path:
        try:
            with open(path, encoding="utf-8") as f:
                spec = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"cannot read config file {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}")

        if not isinstance(spec, dict):
            raise ConfigError(f"{path} must contain a mapping")

        unknown = set(spec) - set(fields)
        if unknown:
            raise ConfigError(f"{path} has unknown keys: {sorted(unknown)}")

        for key, raw in spec.items():
            values[key] = _coerce(fields[key], raw, path)

    # ---- Environment ----
    for name, field in fields.items():
        env_key = ENV_PREFIX + name.upper()
        if env_key in environ:
            values[name] = _coerce(field, environ[env_key], env_key)

    config = HibernationConfig(**values)
    logger.debug("Loaded configuration: %s", config)
    return config
