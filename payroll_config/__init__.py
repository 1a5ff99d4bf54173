"""
payroll_config -- single public entrypoint for payroll runtime configuration.

Responsibility:
    Provides ``get_runtime_settings()``, the one way a process (CLI, worker,
    tests) obtains its ``RuntimeSettings``.  Values come from a YAML file
    (the packaged ``defaults.yaml`` unless a path is given) plus the
    ``PAYROLL_DATABASE_URL`` / ``PAYMENT_PROVIDER`` / ``PAYROLL_LOG_LEVEL``
    environment overrides.

Architecture position:
    Configuration -- sits above ``payroll_kernel`` and ``payroll_modules``.
    Neither of those imports from ``payroll_config``; they receive the
    parsed dataclasses by injection.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``PolicyConfigError`` -- unknown key or invalid value.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from payroll_config.loader import DEFAULTS_FILE, load_settings
from payroll_modules.payroll.config import RuntimeSettings

CONFIG_PATH_ENV = "PAYROLL_CONFIG"


def get_runtime_settings(
    config_path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> RuntimeSettings:
    """Load settings from ``config_path``, ``$PAYROLL_CONFIG``, or the defaults."""
    env = os.environ if environ is None else environ
    path = config_path or env.get(CONFIG_PATH_ENV) or DEFAULTS_FILE
    return load_settings(path, env)


__all__ = ["DEFAULTS_FILE", "get_runtime_settings", "load_settings"]
