"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this, never hardcoded values.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


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
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def _get_section(name: str) -> Any:
    """
    Returns a top-level config section.

    Raises:
        KeyError: If the section is not in the config.
    """
    config = load_config()
    if name not in config:
        raise KeyError(
            f"No config section '{name}'. "
            f"Available: {list(config.keys())}"
        )
    return config[name]


def get_normalizer_config() -> Dict[str, Any]:
    """Returns the normalizer block (word lists, noise patterns, limits)."""
    return _get_section("normalizer")


def get_descriptor_dictionary() -> list[Dict[str, Any]]:
    """Returns the ordered static descriptor dictionary."""
    return _get_section("descriptor_dictionary")


def get_learning_config() -> Dict[str, Any]:
    """Returns the learned-rule block."""
    return _get_section("learning")


def get_history_suggestion_config() -> Dict[str, Any]:
    """Returns the history-based suggestion block."""
    return _get_section("history_suggestion")


def get_recurring_detection_config() -> Dict[str, Any]:
    """Returns the recurring_detection block."""
    return _get_section("recurring_detection")


def get_cache_config() -> Dict[str, Any]:
    """Returns cache time-to-live settings."""
    return _get_section("cache")


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
