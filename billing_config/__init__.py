"""
Billing configuration.

The single public entry point for runtime config is ``get_active_config()``.
"""

import threading

from billing_config.loader import load_config, parse_config
from billing_config.schema import BillingConfig

__all__ = [
    "BillingConfig",
    "get_active_config",
    "load_config",
    "parse_config",
    "reset_active_config",
]

_active: BillingConfig | None = None
_lock = threading.Lock()


def get_active_config() -> BillingConfig:
    """Load (once) and return the process-wide configuration."""
    global _active
    with _lock:
        if _active is None:
            _active = load_config()
        return _active


def reset_active_config() -> None:
    """Drop the cached configuration. FOR TESTING ONLY."""
    global _active
    with _lock:
        _active = None
