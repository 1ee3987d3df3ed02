import os
import yaml
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .schema import BridgeConfig

# (section, key) -> environment variable, applied after the config file
ENV_OVERRIDES = {
    ("mqtt", "host"): "MIBRIDGE_MQTT_HOST",
    ("mqtt", "port"): "MIBRIDGE_MQTT_PORT",
    ("mqtt", "username"): "MIBRIDGE_MQTT_USERNAME",
    ("mqtt", "password"): "MIBRIDGE_MQTT_PASSWORD",
    ("mqtt", "topic_prefix"): "MIBRIDGE_TOPIC_PREFIX",
    ("multicast", "interface"): "MIBRIDGE_INTERFACE",
    (None, "log_level"): "MIBRIDGE_LOG_LEVEL",
}


class ConfigError(Exception):
    pass


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping, got {type(data).__name__}")
    return data


def apply_env_overrides(data: dict, environ=None) -> dict:
    environ = os.environ if environ is None else environ
    for (section, key), var in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        if section is None:
            data[key] = value
            continue
        if not isinstance(data.get(section), dict):
            data[section] = {}
        data[section][key] = value
    return data


def load_config(path: Optional[str] = None, environ=None) -> BridgeConfig:
    """Build the bridge config from an optional YAML file plus env overrides.

    Without a path only defaults and environment variables are used.
    """
    data = _read_yaml(Path(path)) if path else {}
    data = apply_env_overrides(data, environ)
    try:
        return BridgeConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
