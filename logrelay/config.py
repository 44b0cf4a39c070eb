"""Configuration: frozen dataclass loaded from env vars and an optional YAML file.

Precedence: defaults <- YAML file (RELAY_CONFIG) <- environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass

import yaml
from dotenv import load_dotenv

from logrelay.errors import ConfigError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


def _parse_csv_lower(value: str) -> tuple[str, ...]:
    parts = (p.strip().lower() for p in str(value).split(","))
    return tuple(p for p in parts if p)


@dataclass(frozen=True)
class Config:
    watch_directory: str = "./data"
    game_name: str = "generic"
    user_mappings_raw: str = ""
    allowed_extensions: tuple[str, ...] = ("log",)
    ignore_patterns: tuple[str, ...] = ()
    debounce_ms: int = 500
    rescan_interval: float = 5.0
    skip_existing: bool = False
    replay_from_start: bool = False
    registry_file: str = "./data/.relay-offsets.json"
    dedup_window: int = 1024
    sink: str = "log"
    webhook_url: str = ""
    output_file: str = "./relay-events.ndjson"
    sink_timeout: float = 10.0
    queue_capacity: int = 1000
    max_queue_size: int = 5000
    max_queue_age: float = 3600.0
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    shutdown_timeout: float = 10.0
    log_level: str = "INFO"


# env var -> (field, converter)
_ENV_FIELDS = {
    "WATCH_DIRECTORY": ("watch_directory", str),
    "GAME_NAME": ("game_name", str),
    "USER_MAPPINGS": ("user_mappings_raw", str),
    "ALLOWED_EXTENSIONS": ("allowed_extensions", _parse_csv_lower),
    "IGNORE_PATTERNS": ("ignore_patterns", _parse_csv_lower),
    "DEBOUNCE_MS": ("debounce_ms", int),
    "RESCAN_INTERVAL": ("rescan_interval", float),
    "SKIP_EXISTING": ("skip_existing", _parse_bool),
    "REPLAY_FROM_START": ("replay_from_start", _parse_bool),
    "REGISTRY_FILE": ("registry_file", str),
    "DEDUP_WINDOW": ("dedup_window", int),
    "SINK": ("sink", lambda v: str(v).strip().lower()),
    "DISCORD_WEBHOOK_URL": ("webhook_url", str),
    "OUTPUT_FILE": ("output_file", str),
    "SINK_TIMEOUT": ("sink_timeout", float),
    "QUEUE_CAPACITY": ("queue_capacity", int),
    "MAX_QUEUE_SIZE": ("max_queue_size", int),
    "MAX_QUEUE_AGE": ("max_queue_age", float),
    "MAX_ATTEMPTS": ("max_attempts", int),
    "BACKOFF_BASE": ("backoff_base", float),
    "BACKOFF_MAX": ("backoff_max", float),
    "SHUTDOWN_TIMEOUT": ("shutdown_timeout", float),
    "LOG_LEVEL": ("log_level", lambda v: str(v).strip().upper()),
}


def load_env_file(path: str = ".env", environ=None) -> bool:
    """Load a .env file when USER_MAPPINGS or GAME_NAME are not already set.

    Returns True if a file was loaded. Existing variables are never overridden.
    """
    environ = os.environ if environ is None else environ
    if environ.get("USER_MAPPINGS") and environ.get("GAME_NAME"):
        logger.info("Using environment variables from system")
        return False
    if not os.path.exists(path):
        logger.warning("No .env file found and required environment variables not set")
        return False
    logger.info("Loading environment variables from %s", path)
    return load_dotenv(path, override=False)


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file {path} not found") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def _convert(name: str, converter, value):
    try:
        return converter(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e


def load_config(environ=None, yaml_data: dict | None = None) -> Config:
    """Build Config from defaults <- YAML data <- environment variables."""
    environ = os.environ if environ is None else environ
    if yaml_data is None:
        yaml_data = load_yaml_config(environ.get("RELAY_CONFIG"))

    kwargs: dict = {}
    for env_name, (field_name, converter) in _ENV_FIELDS.items():
        if field_name in yaml_data and yaml_data[field_name] is not None:
            value = yaml_data[field_name]
            if isinstance(value, dict):
                value = json.dumps(value)
            elif isinstance(value, list):
                value = ",".join(str(v) for v in value)
            kwargs[field_name] = _convert(field_name, converter, value)
        raw = environ.get(env_name)
        if raw is not None and raw.strip() != "":
            kwargs[field_name] = _convert(env_name, converter, raw)

    # YAML may spell the mapping table as `user_mappings`
    if "user_mappings_raw" not in kwargs and yaml_data.get("user_mappings"):
        value = yaml_data["user_mappings"]
        kwargs["user_mappings_raw"] = value if isinstance(value, str) else json.dumps(value)

    if "sink" not in kwargs:
        kwargs["sink"] = "webhook" if kwargs.get("webhook_url") else Config.sink
    if kwargs.get("game_name") is not None:
        kwargs["game_name"] = kwargs["game_name"].strip().lower() or Config.game_name

    config = Config(**kwargs)
    if config.log_level not in LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
    if config.queue_capacity < 1 or config.max_attempts < 1 or config.dedup_window < 1:
        raise ConfigError("QUEUE_CAPACITY, MAX_ATTEMPTS and DEDUP_WINDOW must be positive")
    if config.rescan_interval <= 0 or config.backoff_base <= 0:
        raise ConfigError("RESCAN_INTERVAL and BACKOFF_BASE must be greater than zero")
    return config
