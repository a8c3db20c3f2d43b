import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# env var -> (dotted config path, converter)
ENV_OVERRIDES = {
    "WORKER_CONCURRENCY": ("queue.concurrency", int),
    "QUEUE_ATTEMPTS": ("queue.attempts", int),
    "QUEUE_BACKOFF_MS": ("queue.backoff_base_s", lambda v: int(v) / 1000.0),
    "QUEUE_KEEP_COMPLETED": ("queue.keep_completed", int),
    "QUEUE_KEEP_FAILED": ("queue.keep_failed", int),
    "QUEUE_DB_PATH": ("queue.db_path", str),
    "REDIS_URL": ("events.redis_url", str),
    "DATABASE_URL": ("storage.database_url", str),
    "OUTPUT_ROOT": ("storage.output_root", str),
    "UPLOAD_DIR": ("storage.upload_dir", str),
    "FFMPEG_PATH": ("encoder.ffmpeg_path", str),
    "LOG_LEVEL": ("logging.level", str),
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


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Build a nested override dict from the environment variables in ENV_OVERRIDES."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for name, (path, convert) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {name}: {raw!r}") from e

        node = overrides
        *parents, leaf = path.split(".")
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return overrides


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic PipelineConfig model.
    """
    cli_args = cli_args or {}

    # 1. Load default YAML (or an explicit file)
    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    if config_path is None:
        config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate, then apply CLI overrides
    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
