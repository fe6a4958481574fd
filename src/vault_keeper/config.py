#!/usr/bin/env python3
"""Configuration management for the vault keeper.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate; the chain topology itself lives in the deployment file
(see ``registry``).
"""

import logging
import os
from dataclasses import dataclass, field

# Get logger for this module
logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    match raw.strip().lower():
        case "1" | "true" | "yes" | "on":
            return True
        case "0" | "false" | "no" | "off":
            return False
        case _:
            raise ValueError(f"Invalid boolean for {name}: {raw!r}")


def _env_number(name: str, default: str, kind: type = int) -> int | float:
    raw = os.environ.get(name, default)
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from None


@dataclass(frozen=True, slots=True)
class QuorumPolicy:
    """Threshold policy for quorum-verified reads.

    Attributes:
        min_consensus: Minimum number of endpoints that must return the same value
        timeout: Per-endpoint timeout in seconds; slower answers are ignored
        require_majority: Additionally require agreement from more than half
            of the endpoints that answered
    """

    min_consensus: int = 2
    timeout: float = 10.0
    require_majority: bool = False

    def __post_init__(self) -> None:
        """Validate quorum policy."""
        if self.min_consensus < 1:
            raise ValueError(f"Minimum consensus must be at least 1, got {self.min_consensus}")
        if self.timeout <= 0:
            raise ValueError(f"Quorum timeout must be positive, got {self.timeout}")
        if self.timeout > 120:
            raise ValueError(f"Quorum timeout too long (max 120s), got {self.timeout}")


@dataclass(frozen=True, slots=True)
class ConfirmationPolicy:
    """How long to wait for a write to become visible through quorum reads."""

    timeout: float = 180.0  # seconds until WriteConfirmationTimeout
    poll_interval: float = 5.0  # seconds between verification reads
    receipt_timeout: int = 120  # seconds to wait for a transaction receipt

    def __post_init__(self) -> None:
        """Validate confirmation policy."""
        if self.timeout <= 0:
            raise ValueError(f"Confirmation timeout must be positive, got {self.timeout}")
        if self.poll_interval <= 0:
            raise ValueError(f"Confirmation poll interval must be positive, got {self.poll_interval}")
        if self.poll_interval > self.timeout:
            raise ValueError(
                f"Confirmation poll interval ({self.poll_interval}s) exceeds timeout ({self.timeout}s)"
            )
        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry policy applied by callers of the quorum engine.

    The engine itself never retries; callers re-issue a failed quorum read up
    to ``attempts`` times, sleeping ``backoff * attempt`` seconds in between.
    """

    attempts: int = 3
    backoff: float = 2.0

    def __post_init__(self) -> None:
        """Validate retry policy."""
        if self.attempts < 1:
            raise ValueError(f"Retry attempts must be at least 1, got {self.attempts}")
        if self.attempts > 10:
            raise ValueError(f"Retry attempts too high (max 10), got {self.attempts}")
        if self.backoff < 0:
            raise ValueError(f"Retry backoff must be non-negative, got {self.backoff}")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.backoff * attempt


@dataclass(frozen=True, slots=True)
class KeeperConfig:
    """Main configuration for the vault keeper.

    Attributes:
        deployment_file: Path to the chain topology record
        run_state_path: Path of the persisted synchronization run-log
        quorum: Quorum policy for verified reads
        confirmation: Write confirmation policy
        retry: Retry policy for verified reads
        gas_limit: Gas limit for keeper transactions
        local_mode: Sign with a local key instead of a ROFL-provisioned one
        local_private_key: Private key for local mode
        rofl_key_id: Key identifier requested from the ROFL daemon
    """

    deployment_file: str = "deployments/deployment.json"
    run_state_path: str = "deployments/run-state.json"
    quorum: QuorumPolicy = field(default_factory=QuorumPolicy)
    confirmation: ConfirmationPolicy = field(default_factory=ConfirmationPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    gas_limit: int = 500000
    local_mode: bool = False
    local_private_key: str | None = None
    rofl_key_id: str = "vault-keeper"

    def __post_init__(self) -> None:
        """Validate keeper configuration."""
        if not self.deployment_file:
            raise ValueError("Deployment file path is required (DEPLOYMENT_FILE)")
        if not self.run_state_path:
            raise ValueError("Run state path is required (RUN_STATE_PATH)")
        if self.gas_limit <= 21000:
            raise ValueError(f"Gas limit too low, got {self.gas_limit}")

        if self.local_mode and not self.local_private_key:
            raise ValueError(
                "Local mode requires LOCAL_PRIVATE_KEY environment variable"
            )

        if self.local_private_key:
            # 64 hex chars, optionally with 0x prefix
            key = self.local_private_key.removeprefix("0x")
            if len(key) != 64:
                raise ValueError(
                    f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
                )
            try:
                int(key, 16)
            except ValueError:
                raise ValueError(
                    "Invalid private key format. Must be hexadecimal"
                ) from None

        if not self.local_mode and not self.rofl_key_id:
            raise ValueError("ROFL key id is required outside local mode (ROFL_KEY_ID)")

    @classmethod
    def from_env(cls, local_mode: bool = False) -> "KeeperConfig":
        """Load configuration from environment variables.

        Args:
            local_mode: Whether to sign with LOCAL_PRIVATE_KEY instead of a ROFL key

        Returns:
            KeeperConfig instance with loaded values

        Raises:
            ValueError: If environment variables are missing or invalid
        """
        quorum = QuorumPolicy(
            min_consensus=int(_env_number("QUORUM_MIN_CONSENSUS", "2")),
            timeout=float(_env_number("QUORUM_TIMEOUT", "10", float)),
            require_majority=_env_bool("QUORUM_REQUIRE_MAJORITY", False),
        )

        confirmation = ConfirmationPolicy(
            timeout=float(_env_number("CONFIRMATION_TIMEOUT", "180", float)),
            poll_interval=float(_env_number("CONFIRMATION_POLL_INTERVAL", "5", float)),
            receipt_timeout=int(_env_number("RECEIPT_TIMEOUT", "120")),
        )

        retry = RetryPolicy(
            attempts=int(_env_number("RETRY_COUNT", "3")),
            backoff=float(_env_number("RETRY_BACKOFF", "2", float)),
        )

        local_private_key = os.environ.get("LOCAL_PRIVATE_KEY") if local_mode else None

        return cls(
            deployment_file=os.environ.get("DEPLOYMENT_FILE", "deployments/deployment.json"),
            run_state_path=os.environ.get("RUN_STATE_PATH", "deployments/run-state.json"),
            quorum=quorum,
            confirmation=confirmation,
            retry=retry,
            gas_limit=int(_env_number("GAS_LIMIT", "500000")),
            local_mode=local_mode,
            local_private_key=local_private_key,
            rofl_key_id=os.environ.get("ROFL_KEY_ID", "vault-keeper"),
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Vault Keeper Configuration")
        logger.info("=" * 60)

        logger.info(f"Deployment file: {self.deployment_file}")
        logger.info(f"Run state: {self.run_state_path}")

        logger.info("Quorum:")
        logger.info(f"  Min Consensus: {self.quorum.min_consensus}")
        logger.info(f"  Timeout: {self.quorum.timeout} seconds")
        logger.info(f"  Require Majority: {self.quorum.require_majority}")

        logger.info("Confirmation:")
        logger.info(f"  Timeout: {self.confirmation.timeout} seconds")
        logger.info(f"  Poll Interval: {self.confirmation.poll_interval} seconds")
        logger.info(f"  Receipt Timeout: {self.confirmation.receipt_timeout} seconds")

        logger.info(f"Retry: {self.retry.attempts} attempts, backoff {self.retry.backoff}s")
        logger.info(f"Gas Limit: {self.gas_limit}")
        logger.info(f"Mode: {'LOCAL' if self.local_mode else 'ROFL'}")

        if self.local_mode:
            logger.info("  Local Key: [CONFIGURED]")
        else:
            logger.info(f"  ROFL Key ID: {self.rofl_key_id}")

        logger.info("=" * 60)
