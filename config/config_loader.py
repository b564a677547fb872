"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access thresholds through this; detection code never
hardcodes a window, label or tier boundary.

The file location can be overridden with the REFLECTION_CONFIG
environment variable.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}

CONFIG_ENV_VAR = "REFLECTION_CONFIG"


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to $REFLECTION_CONFIG,
            then to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR) or os.path.join(
            os.path.dirname(__file__), "config.yaml"
        )

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def _get_section(name: str) -> Dict[str, Any]:
    config = load_config()
    if name not in config:
        raise KeyError(
            f"No config section '{name}'. Available: {list(config.keys())}"
        )
    return config[name]


def get_taxonomy_config() -> Dict[str, Any]:
    """Returns the taxonomy block (categories, context tags, hour buckets)."""
    return _get_section("taxonomy")


def get_baseline_config() -> Dict[str, Any]:
    """Returns the baseline block."""
    return _get_section("baseline")


def get_pattern_detection_config() -> Dict[str, Any]:
    """Returns the pattern_detection block."""
    return _get_section("pattern_detection")


def get_confidence_tiers() -> Dict[str, int]:
    """Returns minimum occurrence counts per confidence tier."""
    return _get_section("confidence_tiers")


def get_deviation_config() -> Dict[str, Any]:
    """Returns the deviation block."""
    return _get_section("deviation")


def get_narrative_config() -> Dict[str, Any]:
    """Returns the narrative block."""
    return _get_section("narrative")


def get_storage_config() -> Dict[str, Any]:
    """Returns the storage block."""
    return _get_section("storage")


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
