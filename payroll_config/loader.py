"""
Configuration Loader (``payroll_config.loader``).

Responsibility
--------------
Loads the YAML configuration file, applies environment overrides and parses
the result into the frozen ``payroll_config.schema`` dataclasses. Runtime
callers go through ``payroll_config.get_settings()``; this module is its
implementation.

Invariants enforced
-------------------
* Unknown keys are rejected with ``ValueError``; a typo never silently falls
  back to a default.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` is a deterministic SHA-256 over the parsed sections.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown section or key, bad override value  -> ``ValueError``.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from payroll_config.schema import (
    ArtifactSettings,
    ContentStoreSettings,
    DatabaseSettings,
    ExecutionSettings,
    GatewaySettings,
    GitHubSettings,
    PayrollSettings,
    PriceFeedSettings,
    PricingSettings,
)

SECTIONS: dict[str, type] = {
    "execution": ExecutionSettings,
    "pricing": PricingSettings,
    "artifacts": ArtifactSettings,
    "database": DatabaseSettings,
    "gateway": GatewaySettings,
    "github": GitHubSettings,
    "price_feed": PriceFeedSettings,
    "content_store": ContentStoreSettings,
}

# Environment variable -> (section, key, converter)
ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "PAYROLL_DATABASE_URL": ("database", "url", str),
    "PAYROLL_MAX_CONCURRENCY": ("execution", "max_concurrency", int),
    "PAYROLL_MAX_RETRIES": ("execution", "max_retries", int),
    "PAYROLL_GATEWAY_URL": ("gateway", "base_url", str),
    "PAYROLL_HERMES_URL": ("price_feed", "base_url", str),
    "PAYROLL_MAX_STALENESS_SECONDS": ("pricing", "max_staleness_seconds", int),
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_section(section: str, data: Mapping[str, Any] | None) -> Any:
    """Build the dataclass for ``section`` from ``data``, rejecting unknown keys."""
    cls = SECTIONS[section]
    data = dict(data or {})
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown key(s) in '{section}' configuration: {', '.join(unknown)}")
    return cls(**data)


def apply_env_overrides(
    data: dict[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """Return a copy of ``data`` with recognised environment overrides applied."""
    merged = {name: dict(values or {}) for name, values in data.items()}
    for env_name, (section, key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from exc
        merged.setdefault(section, {})[key] = value
    return merged


def parse_settings(
    data: Mapping[str, Any],
    source_path: str | None = None,
) -> PayrollSettings:
    """
    Parse a full configuration mapping into ``PayrollSettings``.

    Raises:
        ValueError: unknown sections or keys.
    """
    unknown = sorted(set(data) - set(SECTIONS))
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(unknown)}")

    sections = {name: parse_section(name, data.get(name)) for name in SECTIONS}
    checksum = compute_checksum({
        name: dataclasses.asdict(value) for name, value in sections.items()
    })
    return PayrollSettings(**sections, source_path=source_path, checksum=checksum)


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
