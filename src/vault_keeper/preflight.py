#!/usr/bin/env python3
"""Read-only launch readiness checks.

Every check is a quorum-verified read; a check that cannot be verified is
reported as an issue rather than aborting the remaining checks.
"""

import logging
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .contracts import ChainContracts
from .errors import VaultKeeperError
from .models import RouteState, RouteStatus
from .registry import ChainRegistry
from .route_reconciler import RouteReconciler
from .verification import VerifiedReads

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreflightReport:
    """Issues block a launch; warnings do not."""

    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    routes: list[RouteStatus] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "routes": [r.to_dict() for r in self.routes],
        }


class PreflightCheck:
    """Verifies vault wiring and bridge routes before a launch or a round."""

    def __init__(
        self,
        registry: ChainRegistry,
        reads: VerifiedReads,
        contracts: Mapping[str, ChainContracts],
        reconciler: RouteReconciler | None = None,
    ) -> None:
        self.registry = registry
        self.reads = reads
        self.contracts = contracts
        self.reconciler = reconciler or RouteReconciler(registry, reads, contracts)

    async def _check(self, report: PreflightReport, description: str, read: Awaitable[Any]) -> Any:
        """Await a verified read, recording an issue if it cannot be verified."""
        try:
            return await read
        except VaultKeeperError as e:
            logger.error(f"  ✗ {description}: {e}")
            report.issues.append(f"{description}: could not be verified ({type(e).__name__})")
            return None

    async def run(self) -> PreflightReport:
        report = PreflightReport()

        logger.info("=" * 60)
        logger.info("Pre-flight check")
        logger.info("=" * 60)

        onchain_primaries: list[str] = []
        for chain in self.registry:
            contracts = self.contracts[chain.name]
            logger.info(f"{chain.name} ({chain.role.value}):")

            authorized = await self._check(
                report, f"{chain.name} pool authorization",
                self.reads.read(chain.name, contracts.pool_authorized(), "ccipPools"),
            )
            if authorized is False:
                report.issues.append(f"{chain.name}: pool {chain.pool} not authorized in vault {chain.vault}")
            elif authorized:
                logger.info(f"  ✓ Pool {chain.pool} authorized")

            if chain.token_admin_registry:
                registered = await self._check(
                    report, f"{chain.name} token admin registry",
                    self.reads.read(chain.name, contracts.registered_pool(), "getPool"),
                )
                if registered is not None and registered != chain.pool:
                    report.issues.append(
                        f"{chain.name}: token admin registry points at {registered}, expected {chain.pool}"
                    )
                elif registered is not None:
                    logger.info("  ✓ Pool registered in token admin registry")
            else:
                report.warnings.append(f"{chain.name}: no token admin registry configured, registration not checked")

            is_primary = await self._check(
                report, f"{chain.name} primary flag",
                self.reads.read(chain.name, contracts.is_primary_chain(), "isPrimaryChain"),
            )
            if is_primary:
                onchain_primaries.append(chain.name)
            if is_primary is not None and is_primary != chain.is_primary:
                report.issues.append(
                    f"{chain.name}: isPrimaryChain() is {is_primary}, deployment record says {chain.is_primary}"
                )

            deposits = await self._check(
                report, f"{chain.name} deposits flag",
                self.reads.read(chain.name, contracts.deposits_enabled(), "depositsEnabled"),
            )
            if deposits:
                report.warnings.append(f"{chain.name}: deposits already enabled")

        if len(onchain_primaries) != 1:
            report.issues.append(
                f"Expected exactly 1 chain reporting isPrimaryChain(), found {len(onchain_primaries)}: {onchain_primaries}"
            )

        logger.info("Routes:")
        routes = await self._check(report, "route survey", self.reconciler.survey())
        report.routes = routes or []
        for status in report.routes:
            if status.state is not RouteState.CONFIGURED:
                report.issues.append(f"route {status.source} → {status.destination} is {status.state.value}")

        for warning in report.warnings:
            logger.warning(f"  ! {warning}")
        for issue in report.issues:
            logger.error(f"  ✗ {issue}")

        logger.info("=" * 60)
        if report.ok:
            logger.info(f"✓ Pre-flight passed ({len(report.warnings)} warnings)")
        else:
            logger.error(f"✗ Pre-flight failed with {len(report.issues)} issues")
        logger.info("=" * 60)
        return report

    async def enable_deposits(self, force: bool = False) -> tuple[PreflightReport, dict[str, str] | None]:
        """
        Open deposits on every chain once the pre-flight check passes.

        Each chain is written only if its flag is still off, and every write
        is confirmed by a quorum read, so the command can be re-run after a
        partial failure.

        Args:
            force: Enable deposits even if the pre-flight check found issues

        Returns:
            The pre-flight report and, per chain, "enabled" or "already enabled";
            None instead of the per-chain results when the check blocked the launch
        """
        report = await self.run()
        if not report.ok and not force:
            logger.error("Deposits left disabled: fix the pre-flight issues or pass --force")
            return report, None
        if not report.ok:
            logger.warning(f"Enabling deposits despite {len(report.issues)} pre-flight issues (forced)")

        results: dict[str, str] = {}
        for chain in self.registry:
            contracts = self.contracts[chain.name]
            written = await self.reads.ensure_flag(
                chain.name,
                contracts.deposits_enabled,
                "depositsEnabled",
                True,
                lambda: contracts.set_deposits_enabled(True),
                "enable deposits",
            )
            results[chain.name] = "enabled" if written else "already enabled"
            logger.info(f"  {'✓' if written else '-'} {chain.name}: deposits {results[chain.name]}")
        return report, results
