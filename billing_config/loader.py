"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads YAML configuration files and parses them into a frozen
``BillingConfig``.  Values come from three layers, later layers winning:

1. ``defaults.yaml`` shipped next to this module
2. an optional site file (explicit ``path`` or ``$FARM_BILLING_CONFIG``)
3. environment overrides (``$DATABASE_URL``, ``$FARM_BILLING_LOG_LEVEL``)

Failure modes
-------------
* Missing site file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys  -> ``ValueError`` (typos must not silently fall back to
  defaults).
* Invalid values  -> ``ValueError`` from ``BillingConfig.__post_init__``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import fields
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import BillingConfig

DEFAULTS_PATH = Path(__file__).with_name("defaults.yaml")

CONFIG_PATH_ENV = "FARM_BILLING_CONFIG"

_ENV_OVERRIDES = {
    "DATABASE_URL": "database_url",
    "FARM_BILLING_LOG_LEVEL": "log_level",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    # Site files may nest settings under a "billing" key
    return data.get("billing", data)


def parse_config(data: Mapping[str, Any]) -> BillingConfig:
    """
    Build a ``BillingConfig`` from a plain mapping.

    Raises:
        ValueError: on unknown keys or invalid values.
    """
    known = {f.name for f in fields(BillingConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown billing config keys: {sorted(unknown)}")

    values = dict(data)
    if "balance_tolerance" in values:
        values["balance_tolerance"] = Decimal(str(values["balance_tolerance"]))
    if "payment_methods" in values:
        values["payment_methods"] = tuple(values["payment_methods"])
    if "lock_timeout_seconds" in values:
        values["lock_timeout_seconds"] = float(values["lock_timeout_seconds"])
    return BillingConfig(**values)


def load_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> BillingConfig:
    """
    Load configuration from defaults, an optional site file and the
    environment.
    """
    environ = os.environ if environ is None else environ

    merged: dict[str, Any] = load_yaml_file(DEFAULTS_PATH)

    site_path = path or environ.get(CONFIG_PATH_ENV)
    if site_path:
        merged.update(load_yaml_file(Path(site_path)))

    for env_name, key in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            merged[key] = value

    return parse_config(merged)
