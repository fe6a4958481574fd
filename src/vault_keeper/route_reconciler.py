#!/usr/bin/env python3
"""Bridge route reconciliation.

A pool's ``isSupportedChain`` flag has been observed to be true while the
remote pool address behind it was never registered. Every ordered chain
pair is therefore classified from two independent, quorum-verified facts:

- shallow: the source pool flags the destination as supported;
- deep: the destination's pool is registered as the remote pool.

Only ``Misconfigured`` routes (flag set, deep check failing) are repaired,
by removing the destination and re-adding it with the expected pool.
``NotConfigured`` routes are only added by ``configure``, an explicit
operator command; ``reconcile`` reports them.
"""

import logging
from collections.abc import Mapping

from .contracts import REMOTE_POOL_CALLS, ZERO_ADDRESS, ChainContracts, encode_chain_update
from .errors import RouteMisconfigured
from .models import ChainDescriptor, ReconciliationReport, RouteState, RouteStatus
from .registry import ChainRegistry
from .verification import VerifiedReads

logger = logging.getLogger(__name__)


class RouteReconciler:
    """Verifies and repairs pool routes between every pair of chains."""

    def __init__(
        self,
        registry: ChainRegistry,
        reads: VerifiedReads,
        contracts: Mapping[str, ChainContracts],
    ) -> None:
        self.registry = registry
        self.reads = reads
        self.contracts = contracts
        self._expected: dict[str, str] = {}

    async def expected_pool(self, destination: ChainDescriptor) -> str:
        """
        Pool address every route into ``destination`` must point at.

        When the destination has a token admin registry its answer wins over
        the topology record; a disagreement between the two is logged.
        """
        if destination.name in self._expected:
            return self._expected[destination.name]

        expected = destination.pool
        if destination.token_admin_registry:
            registered = await self.reads.read(
                destination.name, self.contracts[destination.name].registered_pool(), "getPool"
            )
            if registered and registered != ZERO_ADDRESS:
                if registered != destination.pool:
                    logger.warning(
                        f"{destination.name}: token admin registry points at {registered}, "
                        f"deployment record says {destination.pool}; using the registry"
                    )
                expected = registered
            else:
                logger.warning(f"{destination.name}: no pool registered in the token admin registry")

        self._expected[destination.name] = expected
        return expected

    async def _deep_read(self, source: ChainDescriptor, destination: ChainDescriptor) -> tuple[tuple[str, ...], str | None]:
        """Registered remote pools, trying each call shape in order.

        Returns the pools from the first call shape that answers, and its
        name. A call shape that reverts on the source pool is skipped; if all
        of them revert the route has no readable remote pool.
        """
        contracts = self.contracts[source.name]
        for call in REMOTE_POOL_CALLS:
            pools = await self.reads.read(
                source.name, contracts.remote_pools(destination.chain_selector, call), call.name
            )
            if pools is None:
                logger.debug(f"{source.name} → {destination.name}: {call.name} reverted")
                continue
            return tuple(pools), call.name
        return (), None

    async def classify(self, source: ChainDescriptor, destination: ChainDescriptor) -> RouteStatus:
        """Classify one directed route from quorum-verified reads."""
        expected = await self.expected_pool(destination)
        supported = await self.reads.read(
            source.name,
            self.contracts[source.name].is_supported_chain(destination.chain_selector),
            "isSupportedChain",
        )

        if not supported:
            return RouteStatus(
                source=source.name,
                destination=destination.name,
                supported=False,
                expected_pool=expected,
                remote_pool=None,
                deep_call=None,
                state=RouteState.NOT_CONFIGURED,
            )

        pools, call_name = await self._deep_read(source, destination)
        configured = expected in pools
        return RouteStatus(
            source=source.name,
            destination=destination.name,
            supported=True,
            expected_pool=expected,
            remote_pool=expected if configured else (pools[0] if pools else None),
            deep_call=call_name,
            state=RouteState.CONFIGURED if configured else RouteState.MISCONFIGURED,
        )

    async def survey(self) -> list[RouteStatus]:
        """Classify every route the topology expects, in registry order."""
        statuses = []
        for source, destination in self.registry.routes():
            status = await self.classify(source, destination)
            match status.state:
                case RouteState.CONFIGURED:
                    logger.info(f"  ✓ {status} (via {status.deep_call})")
                case RouteState.MISCONFIGURED:
                    logger.warning(
                        f"  ✗ {status}: registered {status.remote_pool or 'none'}, "
                        f"expected {status.expected_pool}"
                    )
                case RouteState.NOT_CONFIGURED:
                    logger.warning(f"  ✗ {status}: destination not supported")
            statuses.append(status)
        return statuses

    async def _repair_source(
        self,
        source: ChainDescriptor,
        broken: list[RouteStatus],
    ) -> int:
        """Remove and re-add the broken destinations of one source pool.

        Returns:
            Number of writes issued
        """
        contracts = self.contracts[source.name]
        destinations = [self.registry.get(s.destination) for s in broken]
        names = ", ".join(d.name for d in destinations)

        logger.info(f"Removing {names} from {source.name} pool...")
        await contracts.apply_chain_updates([d.chain_selector for d in destinations], [])
        for destination in destinations:
            await self.reads.confirm(
                source.name,
                contracts.is_supported_chain(destination.chain_selector),
                "isSupportedChain",
                done=lambda supported: supported is False,
                operation=f"remove route to {destination.name}",
                expected=False,
            )

        return 1 + await self._add_routes(source, broken)

    async def _add_routes(self, source: ChainDescriptor, routes: list[RouteStatus]) -> int:
        """Add destinations to one source pool in a single write and verify them.

        Raises:
            RouteMisconfigured: If an added route does not verify as configured
        """
        contracts = self.contracts[source.name]
        destinations = [self.registry.get(s.destination) for s in routes]

        logger.info(f"Adding {', '.join(d.name for d in destinations)} to {source.name} pool...")
        additions = [
            encode_chain_update(destination, status.expected_pool)
            for destination, status in zip(destinations, routes)
        ]
        await contracts.apply_chain_updates([], additions)
        for destination in destinations:
            await self.reads.confirm(
                source.name,
                contracts.is_supported_chain(destination.chain_selector),
                "isSupportedChain",
                done=lambda supported: supported is True,
                operation=f"add route to {destination.name}",
                expected=True,
            )

        for destination in destinations:
            status = await self.classify(source, destination)
            if status.state is not RouteState.CONFIGURED:
                raise RouteMisconfigured(
                    status.source, status.destination, status.expected_pool,
                    status.remote_pool, status.supported,
                )
            logger.info(f"  ✓ {status} (via {status.deep_call})")

        return 1

    async def configure(self, dry_run: bool = False) -> ReconciliationReport:
        """
        Add every route the topology expects that no pool has enabled yet.

        Only ``NotConfigured`` routes are added, one write per source pool.
        Misconfigured routes are reported and left to ``reconcile``.

        Args:
            dry_run: Classify and report without writing

        Raises:
            RouteMisconfigured: If an added route does not verify
        """
        self._expected.clear()

        logger.info("=" * 60)
        logger.info(f"Route configuration across {len(self.registry)} chains{' (DRY RUN)' if dry_run else ''}")
        logger.info("=" * 60)

        report = ReconciliationReport(before=await self.survey())

        by_source: dict[str, list[RouteStatus]] = {}
        for status in report.before:
            if status.state is RouteState.NOT_CONFIGURED:
                by_source.setdefault(status.source, []).append(status)

        if not by_source:
            logger.info("Every route is already enabled")
            report.after = list(report.before)
        elif dry_run:
            logger.info(f"Dry run: {sum(map(len, by_source.values()))} routes would be added")
            report.after = list(report.before)
        else:
            for source_name, missing in by_source.items():
                report.writes += await self._add_routes(self.registry.get(source_name), missing)
                report.added.extend((s.source, s.destination) for s in missing)

            logger.info("Re-verifying all routes...")
            report.after = await self.survey()

        if misconfigured := report.misconfigured:
            logger.warning(f"{len(misconfigured)} routes misconfigured, repair them with reconcile-routes:")
            for status in misconfigured:
                logger.warning(f"  - {status.source} → {status.destination}")

        logger.info("=" * 60)
        logger.info(
            f"Configuration finished: {len(report.added)} added, {report.writes} writes, "
            f"{'healthy' if report.healthy else 'attention needed'}"
        )
        logger.info("=" * 60)
        return report

    async def reconcile(self, dry_run: bool = False) -> ReconciliationReport:
        """
        Verify every route and repair the misconfigured ones.

        On a fully configured topology this performs reads only.

        Args:
            dry_run: Classify and report without writing

        Returns:
            ReconciliationReport with the state before and after repair

        Raises:
            RouteMisconfigured: If a repaired route still does not verify
        """
        self._expected.clear()

        logger.info("=" * 60)
        logger.info(f"Route reconciliation across {len(self.registry)} chains{' (DRY RUN)' if dry_run else ''}")
        logger.info("=" * 60)

        report = ReconciliationReport(before=await self.survey())

        by_source: dict[str, list[RouteStatus]] = {}
        for status in report.before:
            if status.state is RouteState.MISCONFIGURED:
                by_source.setdefault(status.source, []).append(status)

        if not by_source:
            logger.info("No misconfigured routes")
            report.after = list(report.before)
        elif dry_run:
            logger.info(f"Dry run: {sum(map(len, by_source.values()))} routes would be repaired")
            report.after = list(report.before)
        else:
            for source_name, broken in by_source.items():
                report.writes += await self._repair_source(self.registry.get(source_name), broken)
                report.repaired.extend((s.source, s.destination) for s in broken)

            logger.info("Re-verifying all routes...")
            report.after = await self.survey()

        if not_configured := report.not_configured:
            logger.warning(f"{len(not_configured)} routes not configured (left for the operator):")
            for status in not_configured:
                logger.warning(f"  - {status.source} → {status.destination}")

        logger.info("=" * 60)
        logger.info(
            f"Reconciliation finished: {len(report.repaired)} repaired, {report.writes} writes, "
            f"{'healthy' if report.healthy else 'attention needed'}"
        )
        logger.info("=" * 60)
        return report
