"""
Configuration for density map building, display and annotation tools.

Provides centralized defaults and JSON config loading/saving for:
- Density map building (tile size, worker count, automatic resolution)
- Display (color ramp, gamma, alpha range)
- Hotspot finding and contour tracing defaults
- Background sessions (rebuild debounce)

Usage:
    from densitymaps.utils.config import load_config, save_config, DEFAULT_CONFIG

    # Load config with defaults
    config = load_config('/path/to/densitymaps.json')

    # Section defaults only
    hotspot_defaults = get_section_defaults('hotspots')

Environment Variables:
    DENSITYMAPS_OUTPUT_DIR: Default output directory
    DENSITYMAPS_CONFIG: Default config file path
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, TypedDict, Union

from densitymaps.utils.json_utils import atomic_json_dump
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION TYPE DEFINITIONS
# =============================================================================

class DensityConfig(TypedDict):
    """
    Density map building settings.

    Attributes:
        max_size: Upper bound on the automatic raster size (pixels, longest side).
            Valid range: 16-65536.
        tile_size: Output tile size in raster pixels. Does not change results.
            Valid range: 16-8192.
        gaussian_truncate: Gaussian kernel support, in multiples of sigma.
            Valid range: 3.0-10.0.
        num_workers: Threads used to compute tiles. Valid range: 1-64.
        area_roi_mode: 'centroid' or 'footprint' distance for area ROIs.
    """
    max_size: int
    tile_size: int
    gaussian_truncate: float
    num_workers: int
    area_roi_mode: str


class DisplayConfig(TypedDict):
    """
    Rendering settings.

    Attributes:
        color_ramp: Matplotlib colormap name.
        gamma: Alpha gamma; <= 0 gives an opaque map with a hard mask.
            Valid range: 0.0-10.0.
        min_alpha: Mask floor used with automatic alpha ranges.
    """
    color_ramp: str
    gamma: float
    min_alpha: float


class HotspotConfig(TypedDict):
    """Default hotspot search parameters."""
    n_hotspots: int
    min_density: float
    min_count: float
    allow_overlap: bool
    delete_existing: bool
    peaks_only: bool


class ContourConfig(TypedDict):
    """Default contour tracing parameters."""
    split: bool
    delete_existing: bool
    simplify_epsilon: float


class SessionConfig(TypedDict):
    """Background session settings."""
    debounce_seconds: float


# Validation constraints for each section
_VALIDATION_RULES: Dict[str, Dict[str, Any]] = {
    "density": {
        "max_size": {"min": 16, "max": 65536, "type": int},
        "tile_size": {"min": 16, "max": 8192, "type": int},
        "gaussian_truncate": {"min": 3.0, "max": 10.0, "type": float},
        "num_workers": {"min": 1, "max": 64, "type": int},
        "area_roi_mode": {"choices": ("centroid", "footprint"), "type": str},
    },
    "display": {
        "color_ramp": {"type": str},
        "gamma": {"min": 0.0, "max": 10.0, "type": float},
        "min_alpha": {"min": 0.0, "max": 1e6, "type": float},
    },
    "hotspots": {
        "n_hotspots": {"min": 1, "max": 10000, "type": int},
        "min_density": {"min": 0.0, "max": 1e12, "type": float},
        "min_count": {"min": 0.0, "max": 1e12, "type": float},
        "allow_overlap": {"type": bool},
        "delete_existing": {"type": bool},
        "peaks_only": {"type": bool},
    },
    "contours": {
        "split": {"type": bool},
        "delete_existing": {"type": bool},
        "simplify_epsilon": {"min": 0.0, "max": 1000.0, "type": float},
    },
    "session": {
        "debounce_seconds": {"min": 0.0, "max": 60.0, "type": float},
    },
}


DEFAULT_PATHS = {
    "output_dir": os.getenv("DENSITYMAPS_OUTPUT_DIR", str(Path.home() / "densitymaps_output")),
    "config_file": os.getenv("DENSITYMAPS_CONFIG", ""),
}


DEFAULT_CONFIG: Dict[str, Any] = {
    "density": {
        "max_size": 1024,
        "tile_size": 512,
        "gaussian_truncate": 6.0,
        "num_workers": 1,
        "area_roi_mode": "centroid",
    },
    "display": {
        "color_ramp": "viridis",
        "gamma": 1.0,
        "min_alpha": 1e-6,
    },
    "hotspots": {
        "n_hotspots": 1,
        "min_density": 0.0,
        "min_count": 0.0,
        "allow_overlap": False,
        "delete_existing": True,
        "peaks_only": False,
    },
    "contours": {
        "split": False,
        "delete_existing": False,
        "simplify_epsilon": 0.0,
    },
    "session": {
        "debounce_seconds": 0.5,
    },
}


def get_default_path(key: str) -> str:
    """
    Get a default path from environment or fallback.

    Args:
        key: Path key name ('output_dir', 'config_file')

    Returns:
        Path string, empty string if key not found
    """
    return DEFAULT_PATHS.get(key, "")


def get_output_dir() -> Path:
    """Default directory for exported maps and annotations."""
    return Path(DEFAULT_PATHS["output_dir"])


def get_section_defaults(section: str) -> Dict[str, Any]:
    """
    Get a copy of the default values for one config section.

    Raises:
        KeyError: If the section does not exist
    """
    if section not in DEFAULT_CONFIG:
        available = ', '.join(DEFAULT_CONFIG.keys())
        raise KeyError(f"Unknown config section '{section}'. Available: {available}")
    return copy.deepcopy(DEFAULT_CONFIG[section])


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """
    Recursively merge override into base (in-place).

    Nested dicts are merged key by key; everything else is deep-copied.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def _validate_value(value: Any, key: str, rule: Dict[str, Any]) -> List[str]:
    """
    Validate a single value against its rule (type, range, choices).

    Returns:
        List of error messages (empty if valid)
    """
    expected_type = rule["type"]

    if expected_type is bool:
        if not isinstance(value, bool):
            return [f"{key}: expected bool, got {type(value).__name__}"]
        return []

    # bool is an int subclass; reject it for numeric fields
    if isinstance(value, bool):
        return [f"{key}: expected {expected_type.__name__}, got bool"]

    if expected_type is float:
        if not isinstance(value, (int, float)):
            return [f"{key}: expected numeric type, got {type(value).__name__}"]
    elif not isinstance(value, expected_type):
        return [f"{key}: expected {expected_type.__name__}, got {type(value).__name__}"]

    if "choices" in rule and value not in rule["choices"]:
        return [f"{key}: value {value!r} not one of {', '.join(rule['choices'])}"]

    if "min" in rule and (value < rule["min"] or value > rule["max"]):
        return [f"{key}: value {value} out of range [{rule['min']}, {rule['max']}]"]

    return []


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate a merged configuration dictionary.

    Unknown sections and keys are reported, since they are usually typos.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    for section, values in config.items():
        rules = _VALIDATION_RULES.get(section)
        if rules is None:
            errors.append(f"{section}: unknown config section")
            continue
        if not isinstance(values, dict):
            errors.append(f"{section}: expected object, got {type(values).__name__}")
            continue
        for key, value in values.items():
            rule = rules.get(key)
            if rule is None:
                errors.append(f"{section}.{key}: unknown config key")
                continue
            errors.extend(_validate_value(value, f"{section}.{key}", rule))
    return errors


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from a JSON file, merged over DEFAULT_CONFIG.

    Args:
        config_path: Path to a JSON config file. If None, DENSITYMAPS_CONFIG
            is used when set; otherwise the defaults are returned.

    Returns:
        Dict with merged configuration

    Raises:
        FileNotFoundError: If an explicit config path does not exist
        ValueError: If the file is not valid JSON or fails validation
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is None:
        config_path = DEFAULT_PATHS["config_file"] or None
    if config_path is None:
        return config

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            file_config = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Could not parse config {config_path}: {e}") from e

    if not isinstance(file_config, dict):
        raise ValueError(f"Config {config_path} must contain a JSON object")

    _deep_merge(config, file_config)

    errors = validate_config(config)
    if errors:
        raise ValueError(
            f"Invalid config {config_path}:\n  " + "\n  ".join(errors)
        )

    logger.debug("Loaded config from %s", config_path)
    return config


def save_config(config: Dict[str, Any], config_path: Union[str, Path]) -> Path:
    """
    Validate and write a configuration to JSON (atomically).

    Returns:
        Path that was written

    Raises:
        ValueError: If the config fails validation
    """
    errors = validate_config(config)
    if errors:
        raise ValueError("Refusing to save invalid config:\n  " + "\n  ".join(errors))

    config_path = Path(config_path)
    atomic_json_dump(config, config_path, indent=2)
    logger.info("Saved config to %s", config_path)
    return config_path


def get_config_value(config: Dict[str, Any], section: str, key: str) -> Any:
    """Read ``config[section][key]``, falling back to DEFAULT_CONFIG."""
    values = config.get(section, {})
    if key in values:
        return values[key]
    return DEFAULT_CONFIG[section][key]
