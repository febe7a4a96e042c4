"""
Configuration module for the control plane operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "controlplane_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "controlplane_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Reconciler and scheduler configuration."""

    reconcile_interval: int = 60  # seconds between resyncs of settled records
    poll_interval: float = 1.0  # seconds between queue polls
    max_concurrent_reconciles: int = 5

    # Fixed requeue delays
    owner_requeue_delay: int = 20  # waiting for the owning cluster
    drain_requeue_delay: int = 30  # waiting for machines to drain

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Seed for failure domain choice; None draws from system entropy
    failure_domain_seed: Optional[int] = None

    bootstrap_config_kind: str = "CharmedK8sConfig"
    bootstrap_config_api_version: str = "bootstrap.cluster.x-k8s.io/v1beta1"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        seed = os.getenv("FAILURE_DOMAIN_SEED")
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "60")),
            poll_interval=float(os.getenv("POLL_INTERVAL", "1.0")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            owner_requeue_delay=int(os.getenv("OWNER_REQUEUE_DELAY", "20")),
            drain_requeue_delay=int(os.getenv("DRAIN_REQUEUE_DELAY", "30")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            failure_domain_seed=int(seed) if seed else None,
            bootstrap_config_kind=os.getenv("BOOTSTRAP_CONFIG_KIND", "CharmedK8sConfig"),
            bootstrap_config_api_version=os.getenv(
                "BOOTSTRAP_CONFIG_API_VERSION", "bootstrap.cluster.x-k8s.io/v1beta1"
            ),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
