"""
Configuration Module

Parameter space definitions and runtime settings for the AgNW synthesis controller.
"""

import copy
import json
import logging
import os
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Declared bounds for every synthesis parameter (used for validation and normalization)
PARAMETER_SPACE: Dict[str, Tuple[float, float]] = {
    "eg_volume_ml": (0.0, 200.0),
    "agno3_volume_ml": (0.0, 20.0),
    "pvp_volume_ml": (0.0, 40.0),
    "nacl_volume_ml": (0.0, 5.0),
    "temperature_c": (140.0, 180.0),
    "stirring_rpm": (300.0, 800.0),
    "reaction_time_min": (1.0, 240.0),
}

DEFAULT_PARAMETERS: Dict[str, float] = {
    "eg_volume_ml": 100.0,
    "agno3_volume_ml": 5.0,
    "pvp_volume_ml": 10.0,
    "nacl_volume_ml": 1.0,
    "temperature_c": 160.0,
    "stirring_rpm": 500.0,
    "reaction_time_min": 60.0,
}

# Pump channel per reagent (Pump 1 EG, Pump 2 AgNO3, Pump 3 PVP, Pump 4 NaCl)
REAGENT_CHANNELS: Dict[str, int] = {
    "eg_volume_ml": 1,
    "agno3_volume_ml": 2,
    "pvp_volume_ml": 3,
    "nacl_volume_ml": 4,
}

DEVICE_NAMES = ("heater", "stirrer", "pumps", "uvvis", "nir")

# Target metric aliases -> ExperimentOutcome attribute
OUTCOME_METRICS: Dict[str, str] = {
    "aspect_ratio": "aspect_ratio",
    "diameter": "diameter_nm",
    "diameter_nm": "diameter_nm",
    "length": "length_um",
    "length_um": "length_um",
    "yield": "yield_percent",
    "yield_percent": "yield_percent",
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "controller": {
        # First-order approach gain per nominal period, in (0, 1)
        "gain": 0.1,
        "nominal_period_s": 1.0,
        "safety_margin_c": 10.0,
        "ambient_c": 25.0,
        "telemetry_size": 600,
    },
    "rig": {
        "noise_bound_c": 1.0,
        "ambient_c": 25.0,
        "seed": None,
    },
    "optimizer": {
        "min_records": 2,
        "fallback": "qmc",
        "cold_start_confidence": 0.1,
        "cold_start_ceiling": 0.3,
        "kappa": 0.5,
        "length_scale": 0.6,
        "noise": 1e-4,
        "n_candidates": 512,
        "n_local": 256,
        "chunk_size": 128,
    },
    "campaign": {
        "tick_seconds": 10.0,
        "max_failures": 3,
    },
    "logging": {
        "level": "INFO",
        "log_dir": "logs",
    },
}

# Config singleton
_config: Dict[str, Any] = {}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from file or use defaults.

    Args:
        config_path: Optional path to a JSON config file

    Returns:
        Configuration dictionary
    """
    global _config

    _config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                file_config = json.load(f)
            _update_nested_dict(_config, file_config)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config from {config_path}: {e}")

    _override_from_env(_config)

    return _config


def get_config() -> Dict[str, Any]:
    """
    Get the current configuration, loading defaults on first use.

    Returns:
        Configuration dictionary
    """
    global _config

    if not _config:
        _config = load_config()

    return _config


def save_config(config_path: str) -> bool:
    """
    Save current configuration to file.

    Args:
        config_path: Path to save config file

    Returns:
        True if successful, False otherwise
    """
    try:
        directory = os.path.dirname(config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(get_config(), f, indent=2)
        return True
    except OSError as e:
        logger.error(f"Error saving config to {config_path}: {e}")
        return False


def section(name: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return one config section with optional overrides applied on top."""
    merged = copy.deepcopy(DEFAULT_CONFIG.get(name, {}))
    if overrides:
        _update_nested_dict(merged, overrides)
    return merged


def _update_nested_dict(d: Dict[str, Any], u: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update a nested dictionary with values from another dictionary.

    Args:
        d: Dictionary to update
        u: Dictionary with new values

    Returns:
        Updated dictionary
    """
    for k, v in u.items():
        if isinstance(v, dict) and k in d and isinstance(d[k], dict):
            _update_nested_dict(d[k], v)
        else:
            d[k] = v
    return d


def _override_from_env(config: Dict[str, Any]) -> None:
    """
    Override configuration with environment variables.

    Environment variables should be prefixed with AGNW_LAB_
    For nested keys, use double underscore, e.g., AGNW_LAB_CONTROLLER__GAIN

    Args:
        config: Configuration dictionary to update
    """
    prefix = "AGNW_LAB_"

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        parts = key[len(prefix) :].lower().split("__")

        current = config
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _coerce(value)


def _coerce(value: str) -> Any:
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    if value.lower() in ("none", "null"):
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value
