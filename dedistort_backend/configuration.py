from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema
import yaml
from jsonschema import Draft202012Validator


DEFAULT_CONFIG: Dict[str, Any] = {
    'dedistort': {
        'tile_size': 32,
        'sampling': 0.5,
        'threshold': None,
        'iterations': 1,
        'refine': False,
        'sparse': False,
        'multiscale': False,
        'rejection_percentile': 0.5,
        'neighbors_k': 12,
        'tile_weighting': False,
        'convergence_threshold': 0.01,
    },
    'filter': {
        'search_radius': 3,
        'half_window': 2,
        'mad_threshold': 3.0,
        'sigma': 1.0,
    },
    'consensus': {
        'max_comparisons': 30,
        'seed': 42,
    },
    'stacking': {
        'tile_size': 32,
        'sampling': 0.5,
        'select': 'sharpness',
        'best': 1.0,
        'local': False,
    },
    'device': {
        'enabled': False,
        'backend': 'numpy',
        'min_tiles': 100,
    },
    'parallel': {
        'max_workers': None,
    },
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "dedistort": {
            "type": "object",
            "properties": {
                "tile_size": {"type": "integer", "minimum": 16},
                "sampling": {"type": "number", "exclusiveMinimum": 0},
                "threshold": {"type": ["number", "null"]},
                "iterations": {"type": "integer", "minimum": 1},
                "refine": {"type": "boolean"},
                "sparse": {"type": "boolean"},
                "multiscale": {"type": "boolean"},
                "rejection_percentile": {"type": "number", "minimum": 0, "maximum": 1},
                "neighbors_k": {"type": "integer", "minimum": 1},
                "tile_weighting": {"type": "boolean"},
                "convergence_threshold": {"type": "number", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "filter": {
            "type": "object",
            "properties": {
                "search_radius": {"type": "integer", "minimum": 0},
                "half_window": {"type": "integer", "minimum": 0},
                "mad_threshold": {"type": "number", "exclusiveMinimum": 0},
                "sigma": {"type": "number", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "consensus": {
            "type": "object",
            "properties": {
                "max_comparisons": {"type": "integer", "minimum": 1},
                "seed": {"type": "integer"},
            },
            "additionalProperties": False,
        },
        "stacking": {
            "type": "object",
            "properties": {
                "tile_size": {"type": "integer", "minimum": 4},
                "sampling": {"type": "number", "exclusiveMinimum": 0},
                "select": {
                    "type": "string",
                    "enum": ["first", "average", "median", "eccentricity", "sharpness", "manual", "consensus"],
                },
                "best": {"type": "number", "minimum": 0, "maximum": 1},
                "local": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "device": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "backend": {"type": "string", "enum": ["numpy", "cupy"]},
                "min_tiles": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "parallel": {
            "type": "object",
            "properties": {
                "max_workers": {"type": ["integer", "null"], "minimum": 1},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


def default_config() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG)


def load_schema_json(schema_path: str | Path | None = None) -> Dict[str, Any]:
    """Schema from a JSON file, or the built-in schema."""
    if schema_path is None:
        return copy.deepcopy(CONFIG_SCHEMA)
    with open(schema_path, 'r') as f:
        return json.load(f)


class ConfigurationManager:
    """
    Manages configuration loading, validation, and processing
    """
    @classmethod
    def load_config(
        cls,
        config_path: Path,
        schema_path: Optional[Path] = None
    ) -> Dict[str, Any]:
        """
        Load a YAML configuration and merge it over the defaults

        Args:
            config_path: Path to configuration file
            schema_path: Optional path to JSON schema for validation

        Returns:
            Validated configuration dictionary
        """
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}

        if not isinstance(loaded, dict):
            raise ValueError("Configuration root must be a mapping")

        if schema_path and Path(schema_path).exists():
            cls.validate_config(loaded, schema_path)
        else:
            result = validate_config_dict(loaded)
            if not result["valid"]:
                messages = "; ".join(f"{e['path']}: {e['message']}" for e in result["errors"])
                raise ValueError(f"Configuration validation failed: {messages}")

        return cls._deep_update(default_config(), loaded)

    @classmethod
    def validate_config(
        cls,
        config: Dict[str, Any],
        schema_path: Path
    ) -> bool:
        """
        Validate configuration against JSON schema

        Args:
            config: Configuration dictionary
            schema_path: Path to JSON schema file

        Returns:
            True if valid, raises exception otherwise
        """
        schema = load_schema_json(schema_path)

        try:
            jsonschema.validate(instance=config, schema=schema)
            return True
        except jsonschema.exceptions.ValidationError as e:
            raise ValueError(f"Configuration validation failed: {e.message}")

    @classmethod
    def generate_default_config(
        cls,
        output_path: Optional[Path] = None,
        base_config: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Generate a default configuration file

        Args:
            output_path: Path to save the configuration, or None to only return it
            base_config: Optional base configuration to extend

        Returns:
            Generated configuration dictionary
        """
        config = default_config()

        if base_config:
            cls._deep_update(config, base_config)

        if output_path is not None:
            with open(output_path, 'w') as f:
                yaml.dump(config, f, default_flow_style=False, sort_keys=False)

        return config

    @staticmethod
    def _deep_update(base_dict: Dict, update_dict: Dict) -> Dict:
        """
        Recursively update nested dictionaries

        Args:
            base_dict: Base dictionary to update
            update_dict: Dictionary with updates

        Returns:
            Updated dictionary
        """
        for key, value in update_dict.items():
            if isinstance(value, dict):
                base_dict[key] = base_dict.get(key) or {}
                base_dict[key] = ConfigurationManager._deep_update(base_dict[key], value)
            else:
                base_dict[key] = value
        return base_dict

    @classmethod
    def generate_json_schema(
        cls,
        output_path: Optional[Path] = None
    ) -> Dict[str, Any]:
        """
        Write the JSON schema for configuration validation

        Args:
            output_path: Path to save the JSON schema, or None to only return it

        Returns:
            JSON schema dictionary
        """
        schema = load_schema_json()

        if output_path is not None:
            with open(output_path, 'w') as f:
                json.dump(schema, f, indent=2)

        return schema


@dataclass
class ValidationIssue:
    severity: str  # "error" | "warning"
    code: str
    path: str
    message: str


def _json_path(parts: list[str | int]) -> str:
    if not parts:
        return "$"
    out = "$"
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        else:
            out += f".{p}"
    return out


def _get_path(obj: dict, keys: list[str]) -> Any:
    cur: Any = obj
    for k in keys:
        if not isinstance(cur, dict) or k not in cur:
            return None
        cur = cur[k]
    return cur


def _is_power_of_two(value: Any) -> bool:
    return isinstance(value, int) and value > 0 and (value & (value - 1)) == 0


def validate_config_dict(cfg: Any, schema_path: str | None = None) -> dict:
    issues: list[ValidationIssue] = []

    if not isinstance(cfg, dict):
        issues.append(ValidationIssue("error", "config_not_object", "$", "configuration root must be a mapping/object"))
        return _result(issues)

    validator = Draft202012Validator(load_schema_json(schema_path))
    for err in sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path]):
        issues.append(ValidationIssue("error", "schema_validation_error", _json_path(list(err.path)), err.message))

    stack_tile = _get_path(cfg, ["stacking", "tile_size"])
    if stack_tile is not None and not _is_power_of_two(stack_tile):
        issues.append(ValidationIssue(
            "error", "stacking_tile_size_not_power_of_two", "$.stacking.tile_size",
            f"stacking.tile_size must be a power of two, got {stack_tile}"
        ))

    if _get_path(cfg, ["dedistort", "multiscale"]) is True and _get_path(cfg, ["dedistort", "sparse"]) is False:
        issues.append(ValidationIssue(
            "warning", "multiscale_without_sparse", "$.dedistort.multiscale",
            "multiscale only applies to sparse sampling"
        ))

    rejection = _get_path(cfg, ["dedistort", "rejection_percentile"])
    if isinstance(rejection, (int, float)) and rejection >= 1:
        issues.append(ValidationIssue(
            "warning", "rejection_discards_all", "$.dedistort.rejection_percentile",
            "rejection_percentile 1.0 discards every displacement sample"
        ))

    return _result(issues)


def validate_config_yaml_text(yaml_text: str, schema_path: str | None = None) -> dict:
    try:
        cfg = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        return _result([ValidationIssue("error", "yaml_parse_error", "$", str(e))])
    return validate_config_dict(cfg if cfg is not None else {}, schema_path)


def _result(issues: list[ValidationIssue]) -> dict:
    return {
        "valid": not any(i.severity == "error" for i in issues),
        "errors": [i.__dict__ for i in issues if i.severity == "error"],
        "warnings": [i.__dict__ for i in issues if i.severity == "warning"],
    }


class _Section:
    section = ""

    def __init__(self, cfg: Optional[Dict[str, Any]] = None):
        self._values = dict(DEFAULT_CONFIG[self.section])
        self._values.update((cfg or {}).get(self.section) or {})

    def _get(self, key: str) -> Any:
        return self._values[key]


class DedistortConfig(_Section):
    section = 'dedistort'

    @property
    def tile_size(self) -> int:
        return int(self._get('tile_size'))

    @property
    def sampling(self) -> float:
        return float(self._get('sampling'))

    @property
    def threshold(self) -> Optional[float]:
        value = self._get('threshold')
        return None if value is None else float(value)

    @property
    def iterations(self) -> int:
        return int(self._get('iterations'))

    @property
    def refine(self) -> bool:
        return bool(self._get('refine'))

    @property
    def sparse(self) -> bool:
        return bool(self._get('sparse'))

    @property
    def multiscale(self) -> bool:
        return bool(self._get('multiscale'))

    @property
    def rejection_percentile(self) -> float:
        return float(self._get('rejection_percentile'))

    @property
    def neighbors_k(self) -> int:
        return int(self._get('neighbors_k'))

    @property
    def tile_weighting(self) -> bool:
        return bool(self._get('tile_weighting'))

    @property
    def convergence_threshold(self) -> float:
        return float(self._get('convergence_threshold'))


class FilterConfig(_Section):
    section = 'filter'

    @property
    def search_radius(self) -> int:
        return int(self._get('search_radius'))

    @property
    def half_window(self) -> int:
        return int(self._get('half_window'))

    @property
    def mad_threshold(self) -> float:
        return float(self._get('mad_threshold'))

    @property
    def sigma(self) -> float:
        return float(self._get('sigma'))

    def as_kwargs(self) -> Dict[str, Any]:
        return {
            'search_radius': self.search_radius,
            'half_window': self.half_window,
            'mad_threshold': self.mad_threshold,
            'sigma': self.sigma,
        }


class ConsensusConfig(_Section):
    section = 'consensus'

    @property
    def max_comparisons(self) -> int:
        return int(self._get('max_comparisons'))

    @property
    def seed(self) -> int:
        return int(self._get('seed'))


class StackingConfig(_Section):
    section = 'stacking'

    @property
    def tile_size(self) -> int:
        return int(self._get('tile_size'))

    @property
    def sampling(self) -> float:
        return float(self._get('sampling'))

    @property
    def select(self) -> str:
        return str(self._get('select'))

    @property
    def best(self) -> float:
        return float(self._get('best'))

    @property
    def local(self) -> bool:
        return bool(self._get('local'))


class DeviceConfig(_Section):
    section = 'device'

    @property
    def enabled(self) -> bool:
        return bool(self._get('enabled'))

    @property
    def backend(self) -> str:
        return str(self._get('backend'))

    @property
    def min_tiles(self) -> int:
        return int(self._get('min_tiles'))


def max_workers(cfg: Optional[Dict[str, Any]] = None) -> Optional[int]:
    return ((cfg or {}).get('parallel') or {}).get('max_workers')
