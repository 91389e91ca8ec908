import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "DATABASE_URL": "database.url",
    "QUEUE_DB_PATH": "queue.db_path",
    "PROVIDER_ACCESS_TOKEN": "provider.access_token",
    "PROVIDER_REFRESH_TOKEN": "provider.refresh_token",
    "PROVIDER_CLIENT_ID": "provider.client_id",
    "PROVIDER_CLIENT_SECRET": "provider.client_secret",
    "PROVIDER_REDIRECT_URI": "provider.redirect_uri",
    "JWT_SECRET": "auth.jwt_secret",
    "REDIS_URL": "realtime.redis_url",
    "LOG_LEVEL": "logging.level",
}


def get_config_value(config: Union[PipelineConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PipelineConfig model or dict
        path: Dot-separated path like "queue.attempts"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, PipelineConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def set_config_value(data: Dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path inside a nested dict, creating sections as needed."""
    keys = path.split(".")
    node = data
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect overrides from the environment."""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        if environ.get(var):
            set_config_value(data, path, environ[var])
    return data


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < Environment < overrides
    Returns validated Pydantic PipelineConfig model.

    Overrides may be nested dicts or dotted keys ({"queue.attempts": 5}).
    """
    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    for key, value in (overrides or {}).items():
        if "." in key:
            set_config_value(config_data, key, value)
        elif isinstance(value, dict):
            config_data[key] = merge_dicts(config_data.get(key, {}), value)
        else:
            config_data[key] = value

    return PipelineConfig.from_dict(config_data)


def configure_logging(config: PipelineConfig) -> None:
    """Apply the logging section to the root logger."""
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format=config.logging.format,
    )
