#!/usr/bin/env python3
"""Data models for the vault keeper.

This module provides immutable data classes describing the chain topology,
the outcome of quorum-verified reads, bridge route status and the per-chain
progress of a round synchronization run.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChainRole(str, Enum):
    """Role a chain plays in pricing."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(frozen=True, slots=True)
class Endpoint:
    """A node that can answer queries for one chain.

    Attributes:
        url: HTTP(S) RPC URL
        chain_id: EVM chain ID served by the node
    """

    url: str
    chain_id: int

    def __str__(self) -> str:
        """Shortened URL, safe for logs (API keys usually live in the path)."""
        return self.url if len(self.url) <= 50 else f"{self.url[:47]}..."


@dataclass(frozen=True, slots=True)
class ChainDescriptor:
    """Identity and contract addresses of one supported chain.

    Attributes:
        name: Short chain name used in the topology record (e.g. 'base')
        chain_id: EVM chain ID
        chain_selector: Bridge (CCIP) chain selector
        endpoints: Ordered RPC endpoints for quorum reads; the first is used for writes
        role: Primary or secondary
        vault: Vault (share token) contract address
        wrapper: Stable wrapper contract address (withdrawal epochs live here)
        pool: Bridge token pool address
        token_admin_registry: Bridge token admin registry address, if known
        routes: Names of the chains this chain's pool should be connected to
    """

    name: str
    chain_id: int
    chain_selector: int
    endpoints: tuple[Endpoint, ...]
    role: ChainRole
    vault: str
    wrapper: str
    pool: str
    token_admin_registry: str | None = None
    routes: tuple[str, ...] = ()

    @property
    def is_primary(self) -> bool:
        return self.role is ChainRole.PRIMARY

    def __str__(self) -> str:
        return f"{self.name}({self.chain_id}, {self.role.value})"


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Outcome of one query against one endpoint.

    Exactly one of ``value`` (when ``ok``) or ``error`` is meaningful.
    """

    endpoint: Endpoint
    ok: bool
    value: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for diagnostics."""
        if self.ok:
            return {"endpoint": str(self.endpoint), "value": _printable(self.value)}
        return {"endpoint": str(self.endpoint), "error": self.error}


@dataclass(frozen=True, slots=True)
class ValueGroup:
    """Endpoints that returned structurally equal values."""

    value: Any
    count: int
    endpoints: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": _printable(self.value),
            "count": self.count,
            "endpoints": list(self.endpoints),
        }


@dataclass(frozen=True, slots=True)
class ConsensusOutcome:
    """Reduction of a set of QueryResults.

    Invariant: ``agreement <= successful <= total``.

    Attributes:
        chain: Chain name the query ran against
        value: Most frequent value (None if nothing succeeded)
        agreement: Number of endpoints that returned ``value``
        successful: Number of endpoints that answered within the timeout
        total: Number of endpoints queried
        groups: Every distinct value observed, most frequent first
        results: Raw per-endpoint results, in endpoint order
    """

    chain: str
    value: Any
    agreement: int
    successful: int
    total: int
    groups: tuple[ValueGroup, ...] = ()
    results: tuple[QueryResult, ...] = ()

    def __post_init__(self) -> None:
        if not 0 <= self.agreement <= self.successful <= self.total:
            raise ValueError(
                f"Inconsistent consensus counts: agreement={self.agreement}, "
                f"successful={self.successful}, total={self.total}"
            )

    def distribution(self) -> list[dict[str, Any]]:
        """Observed values with their counts, most frequent first."""
        return [group.to_dict() for group in self.groups]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for diagnostics."""
        return {
            "chain": self.chain,
            "value": _printable(self.value),
            "agreement": self.agreement,
            "successful": self.successful,
            "total": self.total,
            "distribution": self.distribution(),
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True, slots=True)
class AggregateState:
    """Global vault figures read from the primary chain.

    Attributes:
        staked_total: Assets held across all chains, pending deposits included
        pending_total: Deposits not yet converted to shares
        supply_total: Share supply across all chains
        decimals: Decimals of the share token (price scale)
    """

    staked_total: int
    pending_total: int
    supply_total: int
    decimals: int = 6

    def to_dict(self) -> dict[str, Any]:
        return {
            "staked_total": self.staked_total,
            "pending_total": self.pending_total,
            "supply_total": self.supply_total,
            "decimals": self.decimals,
        }


class RouteState(str, Enum):
    """Classification of a directed bridge route."""

    NOT_CONFIGURED = "NotConfigured"
    MISCONFIGURED = "Misconfigured"
    CONFIGURED = "Configured"


@dataclass(frozen=True, slots=True)
class RouteStatus:
    """Configuration status of the route source -> destination.

    Attributes:
        source: Source chain name
        destination: Destination chain name
        supported: Whether the source pool flags the destination as supported
        expected_pool: Pool address the route must point at
        remote_pool: Remote pool address actually registered (None if unset or reverted)
        deep_call: Name of the deep-read call that produced ``remote_pool``
        state: Classification derived from the facts above
    """

    source: str
    destination: str
    supported: bool
    expected_pool: str
    remote_pool: str | None
    deep_call: str | None
    state: RouteState

    def __str__(self) -> str:
        return f"{self.source} → {self.destination}: {self.state.value}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "destination": self.destination,
            "supported": self.supported,
            "expected_pool": self.expected_pool,
            "remote_pool": self.remote_pool,
            "deep_call": self.deep_call,
            "state": self.state.value,
        }


@dataclass(slots=True)
class ReconciliationReport:
    """Summary of one route reconciliation pass."""

    before: list[RouteStatus] = field(default_factory=list)
    after: list[RouteStatus] = field(default_factory=list)
    repaired: list[tuple[str, str]] = field(default_factory=list)
    added: list[tuple[str, str]] = field(default_factory=list)
    writes: int = 0

    @property
    def not_configured(self) -> list[RouteStatus]:
        return [s for s in self.after if s.state is RouteState.NOT_CONFIGURED]

    @property
    def misconfigured(self) -> list[RouteStatus]:
        return [s for s in self.after if s.state is RouteState.MISCONFIGURED]

    @property
    def healthy(self) -> bool:
        return all(s.state is RouteState.CONFIGURED for s in self.after)


class SyncStage(str, Enum):
    """Stages of a round synchronization run, in order."""

    IDLE = "Idle"
    PAUSING_ALL = "PausingAll"
    COMPUTING_GLOBAL_PRICE = "ComputingGlobalPrice"
    PROPAGATING_PRICE = "PropagatingPrice"
    SETTLING_WITHDRAWALS = "SettlingWithdrawals"
    RESUMING = "Resuming"
    COMPLETE = "Complete"


class ChainStep(str, Enum):
    """Last step a chain completed within a run."""

    NONE = "none"
    PAUSED = "paused"
    PRICED = "priced"
    SETTLED = "settled"
    RESUMED = "resumed"

    @property
    def rank(self) -> int:
        return _STEP_ORDER.index(self)


_STEP_ORDER = [ChainStep.NONE, ChainStep.PAUSED, ChainStep.PRICED, ChainStep.SETTLED, ChainStep.RESUMED]


def _printable(value: Any) -> Any:
    """Make a query value JSON friendly (bytes become hex, tuples become lists)."""
    match value:
        case bytes():
            return "0x" + value.hex()
        case tuple() | list():
            return [_printable(v) for v in value]
        case dict():
            return {str(k): _printable(v) for k, v in value.items()}
        case int() | float() | str() | bool() | None:
            return value
        case _:
            return str(value)
