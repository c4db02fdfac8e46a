"""Configuration loader with hot-reload support.

Loads config.yaml, validates it against the Pydantic schema, and keeps a
thread-safe singleton that can pick up file changes without a restart.

Usage:
    from inbox_janitor.config import get_config, reload_config_if_changed

    config = get_config()

    # Before each scheduled job
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from inbox_janitor.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from inbox_janitor.core.errors import ConfigLoadError, ConfigValidationError
from inbox_janitor.core.logging import get_logger

logger = get_logger(__name__)

# Default config path - can be overridden via JANITOR_CONFIG_PATH
DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "JANITOR_CONFIG_PATH"

# Singleton state, shared by the scheduler thread and the uvicorn loop
_config_lock = threading.Lock()
_current_config: AppConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def _get_config_path() -> Path:
    """Config file path from the environment or the default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Turn Pydantic errors into one actionable line per field.

    Example line: "  - Field 'sync.page_size': Input should be less than or equal to 500"
    """
    lines = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"]) or "<root>"
        if err["type"] == "missing":
            lines.append(f"  - Missing required field '{field_path}'")
        else:
            lines.append(f"  - Field '{field_path}': {err['msg']}")
    return "\n".join(lines)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse the YAML file.

    Raises:
        ConfigLoadError: If the file is missing, unparseable, or not a mapping
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path} "
            f"or point {CONFIG_PATH_ENV} at an existing file."
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate parsed YAML against AppConfig.

    Raises:
        ConfigValidationError: If validation fails or the schema version is too new
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Upgrade inbox-janitor or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from disk (never cached).

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or _get_config_path()
    config = _validate_config(_load_yaml(config_path), config_path)

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        model=config.classification.model,
        scheduler_enabled=config.scheduler.enabled,
    )
    return config


def get_config() -> AppConfig:
    """Get the configuration singleton, loading it on first use.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _current_config is None:
            _config_path = _get_config_path()
            _current_config = load_config(_config_path)
            _config_mtime = _config_path.stat().st_mtime
        return _current_config


def reload_config_if_changed() -> bool:
    """Reload the singleton when the file's mtime moved forward.

    An invalid new file keeps the previous config and logs a warning; its
    mtime is remembered so the same broken file is not retried each call.

    Returns:
        True if config was reloaded, False otherwise
    """
    global _current_config, _config_mtime

    with _config_lock:
        if _config_path is None:
            return False

        try:
            current_mtime = _config_path.stat().st_mtime
        except OSError as e:
            logger.warning("config_mtime_check_failed", path=str(_config_path), error=str(e))
            return False

        if current_mtime <= _config_mtime:
            return False

        try:
            _current_config = load_config(_config_path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_failed", path=str(_config_path), error=str(e))
            _config_mtime = current_mtime
            return False

        _config_mtime = current_mtime
        logger.info("config_reloaded", path=str(_config_path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without touching the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or _get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - database: {config.database.path}\n"
        f"  - sync: {config.sync.lookback_days}d lookback, "
        f"{config.sync.effective_budget_seconds:.0f}s working budget\n"
        f"  - classification: {config.classification.model}, "
        f"threshold {config.classification.delete_threshold}",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config, _config_path, _config_mtime
    with _config_lock:
        _current_config = None
        _config_path = None
        _config_mtime = 0.0
