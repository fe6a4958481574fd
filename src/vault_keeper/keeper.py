"""
Vault keeper service.

This module wires the chain registry, the quorum engine, the contract
bindings and the run-log together and exposes the operator commands.
"""

import logging
from typing import Any

from .config import KeeperConfig
from .contracts import ChainContracts
from .models import ReconciliationReport
from .preflight import PreflightCheck, PreflightReport
from .quorum import ClientFactory, QuorumReader
from .registry import ChainRegistry
from .round_sync import RoundSyncController
from .route_reconciler import RouteReconciler
from .run_state import RunState, RunStateStore
from .transaction_submitter import TransactionSubmitter
from .verification import VerifiedReads

logger = logging.getLogger(__name__)


class VaultKeeper:
    """
    Operator entry point for one multi-chain vault deployment.

    Read-only commands (status, pre-flight, dry runs) work without a signer;
    commands that write require one.
    """

    def __init__(
        self,
        config: KeeperConfig,
        registry: ChainRegistry,
        submitter: TransactionSubmitter | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """
        Initialize the VaultKeeper.

        Args:
            config: Keeper configuration
            registry: Chain topology
            submitter: Transaction submitter (None for read-only use)
            client_factory: Builds per-endpoint read clients (defaults to AsyncWeb3)
        """
        self.config = config
        self.registry = registry
        self.submitter = submitter

        self.reader = QuorumReader(registry, config.quorum, client_factory)
        self.reads = VerifiedReads(self.reader, config.retry, config.confirmation)
        self.contracts: dict[str, ChainContracts] = {
            chain.name: ChainContracts(chain, submitter) for chain in registry
        }
        self.store = RunStateStore(config.run_state_path)

        self.round_sync = RoundSyncController(registry, self.reads, self.contracts, self.store)
        self.reconciler = RouteReconciler(registry, self.reads, self.contracts)

        logger.info(
            f"VaultKeeper initialized: {len(registry)} chains, primary {registry.primary.name}, "
            f"{'signing' if submitter else 'read-only'}"
        )

    @classmethod
    async def from_env(cls, local_mode: bool = False, signer: bool = True) -> "VaultKeeper":
        """
        Create a VaultKeeper from environment variables.

        Args:
            local_mode: Sign with LOCAL_PRIVATE_KEY instead of a ROFL key
            signer: Whether the command needs to write

        Raises:
            ValueError: If the configuration or the deployment record is invalid
        """
        config = KeeperConfig.from_env(local_mode=local_mode)
        config.log_config()

        try:
            registry = ChainRegistry.load(config.deployment_file)
        except FileNotFoundError:
            raise ValueError(f"Deployment file not found: {config.deployment_file}") from None

        for chain in registry:
            logger.info(f"  {chain}: {len(chain.endpoints)} endpoints")

        submitter = await TransactionSubmitter.create(config, registry) if signer else None
        return cls(config, registry, submitter)

    def _require_signer(self, command: str) -> None:
        if self.submitter is None:
            raise ValueError(f"{command} needs a signer; the keeper was created read-only")

    async def sync_round(self, yield_amount: int, resume: bool = False) -> RunState:
        self._require_signer("sync-round")
        return await self.round_sync.sync_round(yield_amount, resume=resume)

    async def reconcile_routes(self, dry_run: bool = False) -> ReconciliationReport:
        if not dry_run:
            self._require_signer("reconcile-routes")
        return await self.reconciler.reconcile(dry_run=dry_run)

    async def configure_routes(self, dry_run: bool = False) -> ReconciliationReport:
        """Add the routes no pool has enabled yet (a deliberate operator decision)."""
        if not dry_run:
            self._require_signer("configure-routes")
        return await self.reconciler.configure(dry_run=dry_run)

    async def preflight(self) -> PreflightReport:
        return await PreflightCheck(self.registry, self.reads, self.contracts, self.reconciler).run()

    async def enable_deposits(self, force: bool = False) -> tuple[PreflightReport, dict[str, str] | None]:
        self._require_signer("enable-deposits")
        check = PreflightCheck(self.registry, self.reads, self.contracts, self.reconciler)
        return await check.enable_deposits(force=force)

    async def unpause(self, force: bool = False) -> dict[str, str]:
        self._require_signer("unpause")
        return await self.round_sync.unpause_all(force=force)

    async def status(self) -> dict[str, Any]:
        """Verified per-chain counters plus the persisted run-log."""
        chains = await self.round_sync.status()
        current = self.store.load()
        return {
            "chains": chains,
            "run": current.to_dict() if current else None,
            "completed_runs": len(self.store.history()),
        }
