"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules read configuration through this module, never hardcoded values.

The seed for the default detection rule set lives next to it in
default_rules.yaml and is read on demand (it is only needed when seeding).
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}

CONFIG_DIR = os.path.dirname(__file__)
DATABASE_URL_ENV = "RECON_DATABASE_URL"


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(CONFIG_DIR, "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_database_url() -> str:
    """Database URL, overridable through the RECON_DATABASE_URL env var."""
    return os.environ.get(DATABASE_URL_ENV) or load_config()["database"]["url"]


def get_database_config() -> Dict[str, Any]:
    """Returns the database block."""
    return load_config()["database"]


def get_session_config() -> Dict[str, Any]:
    """Returns the import_sessions block."""
    return load_config()["import_sessions"]


def get_ingestion_config() -> Dict[str, Any]:
    """Returns the ingestion block."""
    return load_config()["ingestion"]


def get_matching_config() -> Dict[str, Any]:
    """Returns the matching block."""
    return load_config()["matching"]


def get_recurrence_config() -> Dict[str, Any]:
    """Returns the recurrence block."""
    return load_config()["recurrence"]


def get_downstream_config() -> Dict[str, Any]:
    """Returns the downstream block."""
    return load_config()["downstream"]


def get_logging_config() -> Dict[str, Any]:
    """Returns the logging block."""
    return load_config()["logging"]


def load_default_rules_document(rules_path: str | None = None) -> Dict[str, Any]:
    """
    Reads the default detection rule set seed.

    Raises:
        FileNotFoundError: If the seed file is missing.
    """
    if rules_path is None:
        rules_path = os.path.join(CONFIG_DIR, "default_rules.yaml")

    if not os.path.exists(rules_path):
        raise FileNotFoundError(f"Default rules file not found: {rules_path}")

    with open(rules_path, "r") as f:
        return yaml.safe_load(f)


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
