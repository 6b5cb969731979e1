"""
Configuration schema (``payroll_config.schema``).

Frozen dataclasses for every configuration section. Defaults here are the
values used when a YAML file omits a key; ``defaults.yaml`` restates them
for operators.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ExecutionSettings:
    """Payout execution tuning."""

    max_concurrency: int = 4  # clamped to 1..8 by the orchestrator
    max_retries: int = 3
    retry_delay_seconds: float = 2.0
    backoff: str = "exponential"  # "fixed" or "exponential"
    max_delay_seconds: float = 60.0
    attempt_timeout_seconds: float = 30.0
    confirmation_poll_attempts: int = 5
    confirmation_poll_interval_seconds: float = 2.0
    lock_ttl_seconds: int = 900
    queue_workers: int = 1


@dataclass(frozen=True)
class PricingSettings:
    default_asset_symbol: str = "HBAR"
    asset_decimals: int = 8
    max_staleness_seconds: int = 300


@dataclass(frozen=True)
class ArtifactSettings:
    """Settlement record emission."""

    enabled: bool = True
    max_upload_attempts: int = 3
    retry_delay_seconds: float = 1.0
    verify: bool = True


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///payroll.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10


@dataclass(frozen=True)
class GatewaySettings:
    """HTTP payment gateway. The API key is read from ``api_key_env``."""

    base_url: str = "http://localhost:8545"
    api_key_env: str = "PAYROLL_GATEWAY_API_KEY"
    account_pattern: str = r"^0\.0\.\d+$"
    timeout_seconds: float = 30.0
    memo_template: str = "Payroll {run_id}"


@dataclass(frozen=True)
class GitHubSettings:
    base_url: str = "https://api.github.com"
    token_env: str = "GITHUB_TOKEN"
    per_page: int = 100
    max_pages: int = 10
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class PriceFeedSettings:
    """Pyth Hermes endpoint and the feed id per asset symbol."""

    base_url: str = "https://hermes.pyth.network"
    timeout_seconds: float = 10.0
    feed_ids: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentStoreSettings:
    base_url: str = "https://node.lighthouse.storage"
    gateway_url: str = "https://gateway.lighthouse.storage/ipfs"
    api_key_env: str = "LIGHTHOUSE_API_KEY"
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class PayrollSettings:
    """
    Root configuration object.

    ``checksum`` is a SHA-256 over the parsed sections; two processes with the
    same checksum run with identical configuration.
    """

    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)
    artifacts: ArtifactSettings = field(default_factory=ArtifactSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    price_feed: PriceFeedSettings = field(default_factory=PriceFeedSettings)
    content_store: ContentStoreSettings = field(default_factory=ContentStoreSettings)
    source_path: str | None = None
    checksum: str = ""
