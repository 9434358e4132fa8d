import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import IngestQueueConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "INGEST_QUEUE_DB": "store.db_path",
    "JOB_WORKER_SECRET": "secrets.worker_secret",
    "CRON_SECRET": "secrets.cron_secret",
    "FILE_PROCESSING_WEBHOOK_SECRET": "secrets.webhook_secret",
    "VISION_PROVIDER": "ai.provider",
    "OPENAI_API_KEY": "ai.openai_api_key",
    "WORKER_PULL_URL": "scheduler.worker_url",
    "INGEST_QUEUE_STORAGE_ROOT": "storage.root",
    "LOG_LEVEL": "log_level",
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


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
    """Build a nested override dict from the environment."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        node = overrides
        *parents, leaf = path.split(".")
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value.lower() if var == "VISION_PROVIDER" else value
    return overrides


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> IngestQueueConfig:
    """
    Resolve config: Default < Local < Environment < CLI.

    Raises pydantic.ValidationError if the merged config is invalid.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = IngestQueueConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
