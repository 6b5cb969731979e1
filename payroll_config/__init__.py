"""
payroll_config -- single public entrypoint for payroll engine configuration.

Responsibility:
    ``get_settings()`` is the only way to obtain configuration at runtime.
    Services receive the resulting ``PayrollSettings`` (or one of its
    sections) through their constructors; they never read files or the
    environment themselves. Secrets are not stored in configuration: each
    client section names the environment variable its secret lives in.

Architecture position:
    Configuration sits above ``payroll_kernel`` and beside
    ``payroll_services``. The kernel and engines MUST NEVER import from
    ``payroll_config``.

Failure modes:
    - ``FileNotFoundError`` -- the configured YAML file does not exist.
    - ``ValueError`` -- unknown sections or keys, or a bad override value.

Every successful ``get_settings()`` call emits a ``PAYROLL_CONFIG_TRACE``
log entry carrying the source path and the settings checksum.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from payroll_config.loader import apply_env_overrides, load_yaml_file, parse_settings
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

_logger = logging.getLogger("payroll_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"
CONFIG_PATH_ENV = "PAYROLL_CONFIG_PATH"

__all__ = [
    "ArtifactSettings",
    "ContentStoreSettings",
    "DatabaseSettings",
    "ExecutionSettings",
    "GatewaySettings",
    "GitHubSettings",
    "PayrollSettings",
    "PriceFeedSettings",
    "PricingSettings",
    "get_settings",
    "read_secret",
]


def get_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> PayrollSettings:
    """The ONLY public configuration entrypoint.

    Resolution order for the file: ``path`` argument, then
    ``$PAYROLL_CONFIG_PATH``, then the packaged ``defaults.yaml``.
    Recognised ``PAYROLL_*`` environment variables override file values.

    Not cached: callers hold the returned settings for the life of the
    process or test.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)

    data = apply_env_overrides(load_yaml_file(config_path), env)
    settings = parse_settings(data, source_path=str(config_path))

    _logger.info(
        "PAYROLL_CONFIG_TRACE",
        extra={
            "trace_type": "PAYROLL_CONFIG_TRACE",
            "source_path": str(config_path),
            "checksum": settings.checksum,
            "max_concurrency": settings.execution.max_concurrency,
            "database_dialect": settings.database.url.split(":", 1)[0],
        },
    )
    return settings


def read_secret(env_name: str, environ: Mapping[str, str] | None = None) -> str | None:
    """Read the secret a settings section points at; None when unset."""
    env = os.environ if environ is None else environ
    value = env.get(env_name)
    return value or None
