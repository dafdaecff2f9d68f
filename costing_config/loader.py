"""
Configuration Loader (``costing_config.loader``).

Responsibility
--------------
Loads YAML configuration files and parses them into a validated
``CostingConfig``.  Runtime callers go through
``costing_config.get_active_config()``; this module is its machinery.

Invariants enforced
-------------------
* Unknown keys raise ``ValueError``; a typo never silently becomes a
  default.
* ``default_cost_method`` is parsed strictly (``InvalidMethodError``).
* Attempts are positive, decimal places and timeouts non-negative.
* ``compute_checksum`` is deterministic for identical data.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Top-level YAML that is not a mapping -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from costing_config.schema import CostingConfig
from costing_engines.valuation.cost_method import CostMethod

_FIELD_NAMES = frozenset(f.name for f in fields(CostingConfig))

_BOOL_FIELDS = ("echo", "allow_negative_stock")
_INT_FIELDS = (
    "pool_size",
    "max_overflow",
    "pool_timeout",
    "lock_timeout_ms",
    "unit_cost_decimal_places",
    "max_commit_attempts",
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML file and return its top-level mapping.

    Raises:
        FileNotFoundError: if ``path`` does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return data


def parse_config(data: dict[str, Any]) -> CostingConfig:
    """
    Build a CostingConfig from a flat mapping.

    Missing keys take the dataclass defaults.

    Raises:
        ValueError: unknown keys or out-of-range values.
        InvalidMethodError: malformed default_cost_method.
    """
    unknown = sorted(set(data) - _FIELD_NAMES)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

    values = dict(data)
    if "default_cost_method" in values:
        values["default_cost_method"] = CostMethod.parse(
            values["default_cost_method"], strict=True,
        )

    for name in _BOOL_FIELDS:
        if name in values and not isinstance(values[name], bool):
            raise ValueError(f"{name} must be a boolean, got {values[name]!r}")
    for name in _INT_FIELDS:
        if name in values and (
            isinstance(values[name], bool) or not isinstance(values[name], int)
        ):
            raise ValueError(f"{name} must be an integer, got {values[name]!r}")
    if "retry_backoff_seconds" in values:
        values["retry_backoff_seconds"] = float(values["retry_backoff_seconds"])

    config = CostingConfig(**values)
    validate_config(config)
    return config


def validate_config(config: CostingConfig) -> None:
    """Range checks on a parsed configuration.

    Raises:
        ValueError: listing every violated constraint.
    """
    errors: list[str] = []
    if not config.database_url:
        errors.append("database_url must not be empty")
    if config.max_commit_attempts < 1:
        errors.append("max_commit_attempts must be at least 1")
    if config.unit_cost_decimal_places < 0:
        errors.append("unit_cost_decimal_places must not be negative")
    if config.lock_timeout_ms < 0:
        errors.append("lock_timeout_ms must not be negative")
    if config.retry_backoff_seconds < 0:
        errors.append("retry_backoff_seconds must not be negative")
    if config.pool_size < 1:
        errors.append("pool_size must be at least 1")
    if config.max_overflow < 0:
        errors.append("max_overflow must not be negative")
    if not config.batch_number_prefix:
        errors.append("batch_number_prefix must not be empty")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
