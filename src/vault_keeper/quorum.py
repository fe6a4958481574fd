#!/usr/bin/env python3
"""Quorum-verified reads.

A single logical query is fanned out to every configured endpoint of a
chain, each invocation raced against the per-endpoint timeout, and the
answers reduced to one agreed value under the configured threshold policy.

The engine is read-only: query functions must be idempotent and free of
side effects, since a query that loses its timeout race is abandoned, not
cancelled remotely. It never retries; callers apply their RetryPolicy.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from decimal import Decimal
from fractions import Fraction
from typing import Any, TypeVar

from .config import QuorumPolicy
from .errors import AllEndpointsUnreachable, ConsensusNotReached
from .models import ConsensusOutcome, Endpoint, QueryResult, ValueGroup
from .registry import ChainRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A query receives the client bound to one endpoint (an AsyncWeb3 instance in production)
Query = Callable[[Any], Awaitable[T]]
ClientFactory = Callable[[Endpoint], Any]


def consensus_key(value: Any) -> Any:
    """Hashable key under which structurally equal values collide.

    Numbers compare by value whatever their representation (``1000``,
    ``1000.0`` and ``Decimal("1000")`` share a key); booleans stay distinct
    from numbers; bytes and sequences compare element-wise; mappings compare
    regardless of key order.
    """
    match value:
        case None:
            return ("none",)
        case bool():
            return ("bool", value)
        case int() | float() | Decimal() | Fraction():
            try:
                return ("num", Fraction(value))
            except (ValueError, OverflowError):
                # nan / inf
                return ("num", str(value))
        case str():
            return ("str", value)
        case bytes() | bytearray():
            return ("bytes", bytes(value))
        case Mapping():
            return ("map", tuple(sorted((str(k), consensus_key(v)) for k, v in value.items())))
        case list() | tuple():
            return ("seq", tuple(consensus_key(v) for v in value))
        case _:
            try:
                hash(value)
            except TypeError:
                return ("repr", repr(value))
            return ("obj", value)


def reduce_results(chain: str, results: list[QueryResult]) -> ConsensusOutcome:
    """Group successful answers and pick the most frequent value.

    ``results`` must be in endpoint order: ties between equally large groups
    go to the value first seen in that order, so completion order never
    influences the outcome.
    """
    groups: dict[Any, list[QueryResult]] = {}
    for result in results:
        if result.ok:
            groups.setdefault(consensus_key(result.value), []).append(result)

    # sorted() is stable, so equal counts keep first-seen order
    ranked = sorted(groups.values(), key=len, reverse=True)
    value_groups = tuple(
        ValueGroup(
            value=members[0].value,
            count=len(members),
            endpoints=tuple(str(m.endpoint) for m in members),
        )
        for members in ranked
    )

    successful = sum(1 for r in results if r.ok)
    best = value_groups[0] if value_groups else None
    return ConsensusOutcome(
        chain=chain,
        value=best.value if best else None,
        agreement=best.count if best else 0,
        successful=successful,
        total=len(results),
        groups=value_groups,
        results=tuple(results),
    )


def check_threshold(outcome: ConsensusOutcome, policy: QuorumPolicy, label: str) -> None:
    """Raise unless the outcome satisfies the policy."""
    if outcome.successful == 0:
        raise AllEndpointsUnreachable(outcome.chain, label, list(outcome.results))

    if outcome.agreement < policy.min_consensus:
        raise ConsensusNotReached(
            label,
            outcome,
            f"need {policy.min_consensus} matching responses, got {outcome.agreement}",
        )

    if policy.require_majority and outcome.agreement * 2 <= outcome.successful:
        raise ConsensusNotReached(
            label,
            outcome,
            f"majority required, got {outcome.agreement}/{outcome.successful} agreements",
        )


def default_client_factory(endpoint: Endpoint) -> Any:
    """Build an AsyncWeb3 client for the endpoint."""
    from .utils.contract_utility import ContractUtility

    return ContractUtility.reader(endpoint.url)


class QuorumReader:
    """Fans queries out to every endpoint of a chain and reduces the answers.

    Clients are created lazily, one per endpoint, and reused across queries.
    Concurrent endpoint tasks share nothing mutable: each produces its own
    immutable QueryResult.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        policy: QuorumPolicy | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """
        Initialize the QuorumReader.

        Args:
            registry: Chain topology providing the endpoints per chain
            policy: Default threshold policy
            client_factory: Builds the client handed to query functions
        """
        self.registry = registry
        self.policy = policy or QuorumPolicy()
        self.client_factory = client_factory or default_client_factory
        self._clients: dict[Endpoint, Any] = {}

    def client(self, endpoint: Endpoint) -> Any:
        if endpoint not in self._clients:
            self._clients[endpoint] = self.client_factory(endpoint)
        return self._clients[endpoint]

    async def _query_endpoint(self, endpoint: Endpoint, query: Query, timeout: float) -> QueryResult:
        try:
            client = self.client(endpoint)
            value = await asyncio.wait_for(query(client), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"{endpoint} timed out after {timeout}s")
            return QueryResult(endpoint=endpoint, ok=False, error=f"Timeout after {timeout}s")
        except Exception as e:
            logger.debug(f"{endpoint} failed: {type(e).__name__}: {e}")
            return QueryResult(endpoint=endpoint, ok=False, error=f"{type(e).__name__}: {e}")
        return QueryResult(endpoint=endpoint, ok=True, value=value)

    async def collect(self, chain: str, query: Query, policy: QuorumPolicy | None = None) -> ConsensusOutcome:
        """Query every endpoint of the chain and reduce, without applying the threshold."""
        policy = policy or self.policy
        endpoints = self.registry.get(chain).endpoints

        results = await asyncio.gather(
            *(self._query_endpoint(endpoint, query, policy.timeout) for endpoint in endpoints)
        )
        return reduce_results(chain, list(results))

    async def read_outcome(
        self,
        chain: str,
        query: Query,
        label: str = "query",
        policy: QuorumPolicy | None = None,
    ) -> ConsensusOutcome:
        """Quorum-verified read returning the full outcome.

        Raises:
            AllEndpointsUnreachable: If no endpoint answered in time
            ConsensusNotReached: If the best value fails the threshold
        """
        policy = policy or self.policy
        outcome = await self.collect(chain, query, policy)

        logger.debug(
            f"{chain} {label}: {outcome.successful}/{outcome.total} responded, "
            f"{outcome.agreement}/{outcome.successful} agree"
        )
        if len(outcome.groups) > 1:
            logger.warning(f"{chain} {label}: {len(outcome.groups)} different responses")
            for i, group in enumerate(outcome.groups, start=1):
                logger.warning(f"  {i}. {group.count}x: {group.to_dict()['value']} ({', '.join(group.endpoints)})")

        check_threshold(outcome, policy, label)
        return outcome

    async def read(
        self,
        chain: str,
        query: Query[T],
        label: str = "query",
        policy: QuorumPolicy | None = None,
    ) -> T:
        """Quorum-verified read returning only the agreed value."""
        outcome = await self.read_outcome(chain, query, label, policy)
        return outcome.value
