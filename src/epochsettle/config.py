"""
epochsettle/config.py

Configuration constants and validated configuration dataclasses.

Each component receives exactly one config object, built once at startup
(usually via SettlementConfig.from_env) and passed into its constructor.
"""

import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError


# ============================================================================
# CONSTANTS
# ============================================================================

SECONDS_PER_YEAR = 365 * 24 * 3600

# Fixed-point denominator for reward coefficients
DEFAULT_PRECISION = 10 ** 9

# Reward formula
DEFAULT_ALPHA = 0.1
DEFAULT_OFFLINE_THRESHOLD = 65          # seconds between pings before counted offline
DEFAULT_TENURE_EPOCHS = 10
DEFAULT_TENURE_LIVENESS = 0.9

# Batching
DEFAULT_BATCH_SIZE = 50

# Coordinator timing
DEFAULT_EPOCH_LENGTH = 7000             # blocks
DEFAULT_CONFIRMATION_BLOCKS = 150
DEFAULT_MAX_EPOCHS_PER_COMMIT = 1
DEFAULT_POLL_INTERVAL = 300             # seconds
DEFAULT_STATUS_RETENTION = 24 * 3600    # seconds

# Retry on commit collision
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_RANGE_SHIFT = 100               # blocks
DEFAULT_TX_TIMEOUT = 30                 # seconds

METADATA_LINK_TEMPLATE = "ipfs://rewards-{from_block}-{to_block}"

ENV_PREFIX = "EPOCHSETTLE_"


# ============================================================================
# COMPONENT CONFIGS
# ============================================================================

@dataclass
class RewardConfig:
    """Parameters of the reward formula."""
    alpha: float = DEFAULT_ALPHA
    offline_threshold_seconds: int = DEFAULT_OFFLINE_THRESHOLD
    tenure_epoch_count: int = DEFAULT_TENURE_EPOCHS
    tenure_liveness_threshold: float = DEFAULT_TENURE_LIVENESS
    precision: int = DEFAULT_PRECISION
    seconds_per_year: int = SECONDS_PER_YEAR

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not 0 < self.alpha <= 1:
            raise ConfigError(f"alpha must be in (0, 1], got {self.alpha}")
        if self.offline_threshold_seconds <= 0:
            raise ConfigError("offline_threshold_seconds must be positive")
        if self.tenure_epoch_count < 0:
            raise ConfigError("tenure_epoch_count must be >= 0")
        if not 0 <= self.tenure_liveness_threshold <= 1:
            raise ConfigError("tenure_liveness_threshold must be in [0, 1]")
        if self.precision < 1:
            raise ConfigError("precision must be >= 1")
        if self.seconds_per_year <= 0:
            raise ConfigError("seconds_per_year must be positive")


@dataclass
class BatchConfig:
    """Batch partitioning."""
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be >= 1, got {self.batch_size}")


@dataclass
class RetryPolicy:
    """
    Bounds for retrying a write operation.

    backoff is "fixed" (always base_delay) or "exponential"
    (base_delay * 2**attempt, capped at max_delay).
    """
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: str = "fixed"
    base_delay: float = 0.0
    max_delay: float = float(DEFAULT_TX_TIMEOUT)
    range_shift_blocks: int = DEFAULT_RANGE_SHIFT

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be >= 1")
        if self.backoff not in ("fixed", "exponential"):
            raise ConfigError(f"Unknown backoff strategy: {self.backoff}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.range_shift_blocks < 1:
            raise ConfigError("range_shift_blocks must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (0-based)."""
        if self.backoff == "exponential":
            return min(self.max_delay, self.base_delay * (2 ** attempt))
        return min(self.max_delay, self.base_delay)


@dataclass
class CoordinatorConfig:
    """Commit/approve loop timing and range selection."""
    epoch_length_blocks: int = DEFAULT_EPOCH_LENGTH
    confirmation_blocks: int = DEFAULT_CONFIRMATION_BLOCKS
    max_epochs_per_commit: int = DEFAULT_MAX_EPOCHS_PER_COMMIT
    commit_interval_seconds: float = DEFAULT_POLL_INTERVAL
    approve_interval_seconds: float = DEFAULT_POLL_INTERVAL
    status_retention_seconds: int = DEFAULT_STATUS_RETENTION
    metadata_link_template: str = METADATA_LINK_TEMPLATE
    verify_before_approve: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.epoch_length_blocks < 1:
            raise ConfigError("epoch_length_blocks must be >= 1")
        if self.confirmation_blocks < 0:
            raise ConfigError("confirmation_blocks must be >= 0")
        if self.max_epochs_per_commit < 1:
            raise ConfigError("max_epochs_per_commit must be >= 1")
        if self.commit_interval_seconds <= 0 or self.approve_interval_seconds <= 0:
            raise ConfigError("poll intervals must be positive")
        if self.status_retention_seconds < 0:
            raise ConfigError("status_retention_seconds must be >= 0")

    def metadata_link(self, from_block: int, to_block: int) -> str:
        return self.metadata_link_template.format(from_block=from_block, to_block=to_block)


@dataclass
class AprConfig:
    """Target APR, fixed or driven by network utilization."""
    base_apr: float = 0.2
    min_apr: float = 0.05
    max_apr: float = 0.7
    dynamic: bool = False
    target_capacity: int = 0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not 0 <= self.min_apr <= self.base_apr <= self.max_apr:
            raise ConfigError("APR bounds must satisfy 0 <= min <= base <= max")
        if self.dynamic and self.target_capacity <= 0:
            raise ConfigError("dynamic APR requires a positive target_capacity")


@dataclass
class ChainConfig:
    """Settlement ledger connection."""
    rpc_url: str = ""
    contract_address: str = ""         # rewards distribution
    registration_address: str = ""
    staking_address: str = ""
    private_key: str = ""
    logs_from_block: int = 1
    chain_id: Optional[int] = None
    tx_timeout_seconds: float = DEFAULT_TX_TIMEOUT
    gas_limit: Optional[int] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.tx_timeout_seconds <= 0:
            raise ConfigError("tx_timeout_seconds must be positive")
        if self.logs_from_block < 0:
            raise ConfigError("logs_from_block must be >= 0")

    @property
    def is_configured(self) -> bool:
        return all((
            self.rpc_url,
            self.contract_address,
            self.registration_address,
            self.staking_address,
            self.private_key,
        ))


@dataclass
class ClickHouseConfig:
    """Analytics store holding query and ping samples."""
    url: str = ""
    database: str = "testnet"
    username: str = ""
    password: str = ""
    timeout: float = 30.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ConfigError("clickhouse timeout must be positive")


@dataclass
class ApiConfig:
    """Admin HTTP server binding."""
    host: str = "127.0.0.1"
    port: int = 8080

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")


# ============================================================================
# AGGREGATE
# ============================================================================

@dataclass
class SettlementConfig:
    """All component configs for one distributor process."""
    reward: RewardConfig = field(default_factory=RewardConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    apr: AprConfig = field(default_factory=AprConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    clickhouse: ClickHouseConfig = field(default_factory=ClickHouseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    audit_log_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['chain']['private_key']:
            data['chain']['private_key'] = "***"
        if data['clickhouse']['password']:
            data['clickhouse']['password'] = "***"
        return data

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SettlementConfig":
        """
        Build configuration from EPOCHSETTLE_* environment variables.

        Unset variables keep their defaults.

        Raises:
            ConfigError: a variable is present but not parseable or out of range
        """
        env = os.environ if environ is None else environ

        def get(name: str, cast, default):
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                if cast is bool:
                    return raw.strip().lower() in ("1", "true", "yes", "on")
                return cast(raw)
            except ValueError:
                raise ConfigError(f"Invalid value for {ENV_PREFIX + name}: {raw!r}")

        return cls(
            reward=RewardConfig(
                alpha=get("ALPHA", float, DEFAULT_ALPHA),
                offline_threshold_seconds=get("OFFLINE_THRESHOLD", int, DEFAULT_OFFLINE_THRESHOLD),
                tenure_epoch_count=get("TENURE_EPOCHS", int, DEFAULT_TENURE_EPOCHS),
            ),
            batch=BatchConfig(batch_size=get("BATCH_SIZE", int, DEFAULT_BATCH_SIZE)),
            retry=RetryPolicy(
                max_attempts=get("MAX_RETRIES", int, DEFAULT_MAX_ATTEMPTS),
                backoff=get("RETRY_BACKOFF", str, "fixed"),
                base_delay=get("RETRY_DELAY", float, 0.0),
                range_shift_blocks=get("RANGE_SHIFT", int, DEFAULT_RANGE_SHIFT),
            ),
            coordinator=CoordinatorConfig(
                epoch_length_blocks=get("EPOCH_LENGTH", int, DEFAULT_EPOCH_LENGTH),
                confirmation_blocks=get("CONFIRMATION_BLOCKS", int, DEFAULT_CONFIRMATION_BLOCKS),
                max_epochs_per_commit=get("MAX_EPOCHS_PER_COMMIT", int, DEFAULT_MAX_EPOCHS_PER_COMMIT),
                commit_interval_seconds=get("COMMIT_INTERVAL", float, DEFAULT_POLL_INTERVAL),
                approve_interval_seconds=get("APPROVE_INTERVAL", float, DEFAULT_POLL_INTERVAL),
                status_retention_seconds=get("STATUS_RETENTION", int, DEFAULT_STATUS_RETENTION),
            ),
            apr=AprConfig(
                base_apr=get("BASE_APR", float, 0.2),
                dynamic=get("DYNAMIC_APR", bool, False),
                target_capacity=get("TARGET_CAPACITY", int, 0),
            ),
            chain=ChainConfig(
                rpc_url=get("RPC_URL", str, ""),
                contract_address=get("CONTRACT_ADDRESS", str, ""),
                registration_address=get("REGISTRATION_ADDRESS", str, ""),
                staking_address=get("STAKING_ADDRESS", str, ""),
                logs_from_block=get("LOGS_FROM_BLOCK", int, 1),
                private_key=get("PRIVATE_KEY", str, ""),
                chain_id=get("CHAIN_ID", int, None),
                tx_timeout_seconds=get("TX_TIMEOUT", float, float(DEFAULT_TX_TIMEOUT)),
            ),
            clickhouse=ClickHouseConfig(
                url=get("CLICKHOUSE_URL", str, ""),
                database=get("CLICKHOUSE_DATABASE", str, "testnet"),
                username=get("CLICKHOUSE_USER", str, ""),
                password=get("CLICKHOUSE_PASSWORD", str, ""),
            ),
            api=ApiConfig(
                host=get("API_HOST", str, "127.0.0.1"),
                port=get("API_PORT", int, 8080),
            ),
            audit_log_path=get("AUDIT_LOG", str, None),
        )
