"""
costing_config -- single public entrypoint for costing configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Services receive the returned
    ``CostingConfig`` by injection; no other component reads
    configuration files.

Architecture position:
    Configuration -- sits above ``costing_kernel`` and ``costing_engines``
    and below ``costing_services``.  The kernel MUST NEVER import from
    ``costing_config``.

Invariants enforced:
    - Layering: packaged ``defaults.yaml``, then the optional file, then
      keyword overrides.  Later layers win key by key.
    - Validation: unknown keys, malformed cost methods and out-of-range
      values are rejected before a config is returned.

Failure modes:
    - ``FileNotFoundError`` -- ``config_path`` does not exist.
    - ``yaml.YAMLError`` -- malformed YAML.
    - ``ValueError`` -- unknown keys or range violations.
    - ``InvalidMethodError`` -- unrecognized ``default_cost_method``.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``COSTING_CONFIG_TRACE`` log entry with the checksum of the merged
    source data, tying a run to the exact configuration it used.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from costing_config.loader import compute_checksum, load_yaml_file, parse_config
from costing_config.schema import CostingConfig

_logger = logging.getLogger("costing_kernel.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(
    config_path: Path | str | None = None,
    **overrides: Any,
) -> CostingConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Optional YAML file layered over the packaged defaults.
        **overrides: Individual keys layered over both.

    Returns:
        A validated, frozen CostingConfig.

    Raises:
        FileNotFoundError: If config_path does not exist.
        ValueError: If validation fails.
        InvalidMethodError: If default_cost_method is malformed.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if config_path is not None:
        data.update(load_yaml_file(Path(config_path)))
    data.update(overrides)

    config = parse_config(data)
    checksum = compute_checksum(data)

    _logger.info(
        "COSTING_CONFIG_TRACE",
        extra={
            "trace_type": "COSTING_CONFIG_TRACE",
            "config_path": str(config_path) if config_path is not None else None,
            "checksum": checksum,
            "default_cost_method": config.default_cost_method.value,
            "allow_negative_stock": config.allow_negative_stock,
            "override_keys": sorted(overrides),
        },
    )
    return config


__all__ = [
    "CostingConfig",
    "get_active_config",
]
