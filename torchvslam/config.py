"""
Configuration for the feature frontend.

Configurations are plain nested dictionaries. Components read their own
section with `.get(key, default)`, so a partial dictionary is always valid;
`load_config` fills in every default and validates the result.
"""
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "feature_type": "orb",
    "orb": {
        "fast_threshold": 20,
        "border": 3,
        "n_consecutive": 9,
        "n_points": 256,
        "patch_size": 31,
        "seed": 1234,
    },
    "sift": {
        "n_octaves": 4,
        "n_intervals": 3,
        "sigma": 1.6,
        "contrast_threshold": 0.03,
        "edge_threshold": 10.0,
        "max_iterations": 5,
        "dog_overflow": "wrap",
    },
    "matching": {
        "ratio_threshold": 0.8,
        "ignore_undescribed": False,
    },
}

_POSITIVE_INTS = {
    "orb": ("n_consecutive", "n_points", "patch_size"),
    "sift": ("n_octaves", "n_intervals", "max_iterations"),
}

_NUMBERS = {
    "orb": ("fast_threshold", "border"),
    "sift": ("sigma", "contrast_threshold", "edge_threshold"),
    "matching": ("ratio_threshold",),
}


def merge_config(base: Dict, override: Dict) -> Dict:
    """
    Recursively merge `override` into a copy of `base`.

    Args:
        base: Base configuration
        override: Values taking precedence over `base`

    Returns:
        New merged dictionary; neither argument is modified
    """
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Dict) -> None:
    """
    Check a (merged) configuration.

    Args:
        config: Configuration dictionary

    Raises:
        ValueError: If a value is out of range, naming the offending key
    """
    feature_type = str(config.get("feature_type", "orb")).lower()
    if feature_type not in ("orb", "sift"):
        raise ValueError(f"feature_type: expected 'orb' or 'sift', got '{feature_type}'")

    for section, keys in _NUMBERS.items():
        values = config.get(section, {})
        for key in keys:
            value = values.get(key, 0)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{section}.{key}: expected a number, got {value!r}")

    for section, keys in _POSITIVE_INTS.items():
        values = config.get(section, {})
        for key in keys:
            if key in values and (not isinstance(values[key], int) or values[key] <= 0):
                raise ValueError(f"{section}.{key}: expected a positive integer, got {values[key]!r}")

    orb = config.get("orb", {})
    if orb.get("n_points", 256) % 8 != 0:
        raise ValueError(f"orb.n_points: expected a multiple of 8, got {orb['n_points']}")
    if orb.get("patch_size", 31) % 2 == 0:
        raise ValueError(f"orb.patch_size: expected an odd size, got {orb['patch_size']}")
    if orb.get("border", 3) < 3:
        raise ValueError(f"orb.border: the circle test needs at least 3, got {orb['border']}")
    if not 1 <= orb.get("n_consecutive", 9) <= 16:
        raise ValueError(f"orb.n_consecutive: expected 1..16, got {orb['n_consecutive']}")

    sift = config.get("sift", {})
    if sift.get("dog_overflow", "wrap") not in ("wrap", "saturate"):
        raise ValueError(
            f"sift.dog_overflow: expected 'wrap' or 'saturate', got '{sift['dog_overflow']}'"
        )
    if sift.get("sigma", 1.6) <= 0:
        raise ValueError(f"sift.sigma: expected a positive value, got {sift['sigma']}")
    if sift.get("edge_threshold", 10.0) <= 0:
        raise ValueError(
            f"sift.edge_threshold: expected a positive value, got {sift['edge_threshold']}"
        )

    ratio = config.get("matching", {}).get("ratio_threshold", 0.8)
    if not 0.0 < ratio <= 1.0:
        raise ValueError(f"matching.ratio_threshold: expected a value in (0, 1], got {ratio}")


def load_config(path: Union[str, Path]) -> Dict:
    """
    Load a YAML configuration file on top of the defaults.

    Args:
        path: Path to the YAML file

    Returns:
        Validated configuration dictionary
    """
    path = Path(path)
    logger.info(f"Loading configuration from {path}")
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    config = merge_config(DEFAULT_CONFIG, data)
    validate_config(config)
    return config
