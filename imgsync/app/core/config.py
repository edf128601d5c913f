# config.py
# Description: Configuration management and logging setup for imgsync.
#
# Imports
import logging
import os
import sys
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
#
# Third-Party Imports
import toml
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

# --- Default Configuration ---
# Used when the config file is missing or unreadable
DEFAULT_CONFIG = {
    "general": {"log_level": "INFO"},
    "logging": {
        "log_filename": "imgsync.log",
        "file_log_level": "INFO",
        "rotation": "10 MB",
        "retention": 5,
        "enable_file_log": False,
    },
    "database": {
        "path": "~/.local/share/imgsync/imgsync_library.db"
    },
    "server": {
        "base_url": "http://localhost:3000",
        "timeout_seconds": 10.0,
        "api_key": "",
    },
    "sync": {
        "mode": "manual",  # manual | auto
        "interval_seconds": 30,
        "batch_size": 100,
        "max_retries": 3,
        "retry_delay_seconds": 0.5,
        "repush_local_only": True,
    },
}

SYNC_MODES = ("manual", "auto")

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# --- Configuration Loading Function ---

def get_config_path() -> Path:
    """Determines the path to the configuration file."""
    # Priority: Environment variable > Default user location
    env_path = os.environ.get("IMGSYNC_CONFIG_PATH")
    if env_path:
        path = Path(env_path).expanduser().resolve()
        logger.debug(f"Using config path from IMGSYNC_CONFIG_PATH: {path}")
        return path

    default_path = Path.home() / ".config" / "imgsync" / "config.toml"
    logger.debug(f"Using default config path: {default_path}")
    return default_path


# Loaded config is cached here after the first load
_APP_CONFIG: Optional[Dict[str, Any]] = None

def load_config(config_path: Optional[Path] = None, reload: bool = False) -> Dict[str, Any]:
    """
    Loads configuration from a TOML file and merges it over the defaults.
    Writes a default config file if none exists. Caches the result.
    """
    global _APP_CONFIG
    if _APP_CONFIG is not None and not reload:
        return _APP_CONFIG

    if config_path is None:
        config_path = get_config_path()

    # Copy the defaults so DEFAULT_CONFIG itself is never mutated
    config = {k: v.copy() if isinstance(v, dict) else v for k, v in DEFAULT_CONFIG.items()}

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Attempting to load configuration from: {config_path}")

        if config_path.exists():
            try:
                with open(config_path, "rb") as f:
                    user_config = tomllib.load(f)

                # One-level merge: user sections update default sections
                for section, section_config in user_config.items():
                    if section in config and isinstance(config[section], dict) and isinstance(section_config, dict):
                        config[section].update(section_config)
                    else:
                        config[section] = section_config
                logger.info(f"Successfully loaded and merged config from {config_path}")

            except tomllib.TOMLDecodeError as e:
                logger.error(f"Error decoding TOML file {config_path}: {e}")
                logger.warning("Using default configuration values due to TOML error.")
        else:
            logger.warning(f"Config file not found at {config_path}. Creating default config.")
            try:
                with open(config_path, "w", encoding="utf-8") as f:
                    toml.dump(DEFAULT_CONFIG, f)
                logger.info(f"Created default configuration file at: {config_path}")
            except (OSError, TypeError) as e:
                logger.error(f"Failed to create default config file at {config_path}: {e}")

    except OSError as e:
        logger.error(f"OS error accessing config directory or file {config_path}: {e}")
        logger.warning("Using default configuration values due to OS error.")

    mode = config.get("sync", {}).get("mode")
    if mode not in SYNC_MODES:
        logger.warning(f"Unknown sync mode '{mode}' in config, falling back to 'manual'.")
        config["sync"]["mode"] = "manual"

    _APP_CONFIG = config
    logger.debug(f"Configuration loaded: Sections={list(_APP_CONFIG.keys())}")
    return _APP_CONFIG


def reset_config_cache() -> None:
    global _APP_CONFIG
    _APP_CONFIG = None

# --- Convenience Access Functions ---

def get_setting(section: str, key: str, default: Any = None) -> Any:
    """Gets a specific setting, returning a default if not found."""
    config = load_config()
    return config.get(section, {}).get(key, default)


def get_sync_settings() -> Dict[str, Any]:
    """Returns the [sync] section with numeric values coerced to their expected types."""
    section = dict(DEFAULT_CONFIG["sync"])
    section.update(load_config().get("sync", {}))
    return {
        "mode": section["mode"],
        "interval_seconds": float(section["interval_seconds"]),
        "batch_size": int(section["batch_size"]),
        "max_retries": int(section["max_retries"]),
        "retry_delay_seconds": float(section["retry_delay_seconds"]),
        "repush_local_only": bool(section["repush_local_only"]),
    }


def get_database_path() -> Path:
    """Gets the resolved database path from config, creating its parent directory."""
    config = load_config()
    db_path_str = config.get("database", {}).get("path", DEFAULT_CONFIG["database"]["path"])
    db_path = Path(db_path_str).expanduser().resolve()
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create database directory {db_path.parent}: {e}")
    return db_path


def get_log_file_path() -> Path:
    """Gets the full path for the log file, placed next to the database."""
    db_dir = get_database_path().parent
    log_filename = get_setting("logging", "log_filename", DEFAULT_CONFIG["logging"]["log_filename"])
    return db_dir / log_filename

# --- Logging Setup ---

class InterceptHandler(logging.Handler):
    """Routes standard library logging records into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller the message originated from
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(log_level: Optional[str] = None, intercept: tuple = ("uvicorn", "uvicorn.error", "uvicorn.access", "urllib3")) -> None:
    """Configures loguru sinks from the [general] and [logging] config sections."""
    level = (log_level or get_setting("general", "log_level", "INFO")).upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, colorize=True)

    if get_setting("logging", "enable_file_log", False):
        logger.add(
            get_log_file_path(),
            level=str(get_setting("logging", "file_log_level", "INFO")).upper(),
            rotation=get_setting("logging", "rotation", "10 MB"),
            retention=get_setting("logging", "retention", 5),
            enqueue=True,
        )

    for logger_name in intercept:
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False

    logger.debug(f"Loguru configured at level {level}")

#
# End of config.py
#######################################################################################################################
