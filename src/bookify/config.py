import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import BookifyConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "DB_PATH": "storage.db_path",
    "TEMP_DIR": "storage.temp_dir",
    "GOOGLE_CLIENT_ID": "drive.client_id",
    "GOOGLE_CLIENT_SECRET": "drive.client_secret",
    "LOG_LEVEL": "logging.level",
}


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
    """Build a nested override dict from the supported environment variables.

    Empty values are ignored so that ``DB_PATH=""`` does not clobber the
    configured default.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        section, key = path.split(".")
        overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> BookifyConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic BookifyConfig model.

    Raises:
        pydantic.ValidationError: If the merged values are invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML (or an explicit file)
    config_data = load_yaml(Path(config_path) if config_path else DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate, then apply CLI overrides
    config = BookifyConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
