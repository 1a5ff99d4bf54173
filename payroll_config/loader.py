"""
Configuration Loader (``payroll_config.loader``).

Responsibility
--------------
Loads a YAML settings file, applies environment overrides, and parses the
result into the frozen ``RuntimeSettings`` / ``PayrollPolicy`` /
``QueueSettings`` dataclasses from ``payroll_modules.payroll.config``.

Invariants enforced
-------------------
* Unknown keys are rejected (``PolicyConfigError``), never ignored.
* Environment overrides win over file values; file values win over the
  dataclass defaults.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  settings, logged with every load so a run can be tied to its policy.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``PolicyConfigError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from payroll_kernel.exceptions import PolicyConfigError
from payroll_kernel.logging_config import get_logger
from payroll_modules.payroll.config import (
    PayrollPolicy,
    QueueSettings,
    RuntimeSettings,
)

logger = get_logger("config.loader")

DEFAULTS_FILE = Path(__file__).parent / "defaults.yaml"

# environment variable -> top-level settings key
ENV_OVERRIDES = {
    "PAYROLL_DATABASE_URL": "database_url",
    "PAYMENT_PROVIDER": "payment_provider",
    "PAYROLL_LOG_LEVEL": "log_level",
}

_TOP_LEVEL_KEYS = {"database_url", "payment_provider", "log_level", "policy", "queue"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise PolicyConfigError(str(path), "top level must be a mapping")
    return data


def apply_env_overrides(
    data: dict[str, Any], environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return a copy of ``data`` with non-empty environment overrides applied."""
    env = os.environ if environ is None else environ
    merged = dict(data)
    for var, key in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            merged[key] = value
            logger.info("config_env_override", extra={"variable": var})
    return merged


def parse_settings(data: dict[str, Any]) -> RuntimeSettings:
    """Parse a settings dict into ``RuntimeSettings``."""
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise PolicyConfigError(unknown[0], "unknown settings key")

    kwargs: dict[str, Any] = {
        key: data[key]
        for key in ("database_url", "payment_provider", "log_level")
        if data.get(key) is not None
    }
    if data.get("policy"):
        kwargs["policy"] = PayrollPolicy.from_dict(data["policy"])
    if data.get("queue"):
        kwargs["queue"] = QueueSettings.from_dict(data["queue"])
    return RuntimeSettings(**kwargs)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def load_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> RuntimeSettings:
    """
    Load runtime settings from ``path`` (default: the packaged defaults.yaml).

    Postconditions:
        - Returns validated, frozen ``RuntimeSettings``.
        - A ``payroll_config_loaded`` log entry carries the source file,
          policy version and settings checksum.
    """
    source = Path(path) if path is not None else DEFAULTS_FILE
    data = apply_env_overrides(load_yaml_file(source), environ)
    settings = parse_settings(data)

    # Credentials in the database URL stay out of the log.
    redacted = {k: v for k, v in data.items() if k != "database_url"}
    logger.info(
        "payroll_config_loaded",
        extra={
            "source": str(source),
            "policy_version": settings.policy.policy_version,
            "payment_provider": settings.payment_provider,
            "checksum": compute_checksum(redacted),
        },
    )
    return settings
