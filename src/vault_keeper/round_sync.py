#!/usr/bin/env python3
"""Round synchronization across all chains.

One run drives every chain through

    PausingAll → ComputingGlobalPrice → PropagatingPrice
               → SettlingWithdrawals → Resuming → Complete

Chains cannot transact atomically with each other, so each chain's step is
its own transaction. The run is therefore sequential and order-preserving,
every decision is taken on quorum-verified reads, and progress is persisted
after each chain step. A failure halts the run where it is: completed steps
are never reversed automatically. Re-entry is idempotent because every
write is preceded by a read of the chain's current state.
"""

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from .contracts import ChainContracts
from .errors import PartialRunHalted, VaultKeeperError
from .models import AggregateState, ChainDescriptor, ChainStep, SyncStage
from .registry import ChainRegistry
from .run_state import RunState, RunStateStore
from .verification import VerifiedReads

logger = logging.getLogger(__name__)

PriceFunction = Callable[[AggregateState, int], int]

STAGES: tuple[SyncStage, ...] = (
    SyncStage.PAUSING_ALL,
    SyncStage.COMPUTING_GLOBAL_PRICE,
    SyncStage.PROPAGATING_PRICE,
    SyncStage.SETTLING_WITHDRAWALS,
    SyncStage.RESUMING,
)


def compute_share_price(state: AggregateState, yield_amount: int) -> int:
    """Global price per share for the round being closed.

    Integer arithmetic only: the same inputs give the same price, bit for
    bit, wherever it is computed.

    Raises:
        ValueError: If the yield would make the vault's assets negative
    """
    unit = 10 ** state.decimals
    assets = state.staked_total - state.pending_total + yield_amount
    if assets < 0:
        raise ValueError(
            f"Negative vault assets: staked={state.staked_total}, "
            f"pending={state.pending_total}, yield={yield_amount}"
        )
    if state.supply_total == 0:
        return unit
    return assets * unit // state.supply_total


class RoundSyncController:
    """Drives one round transition across every chain in the registry."""

    def __init__(
        self,
        registry: ChainRegistry,
        reads: VerifiedReads,
        contracts: Mapping[str, ChainContracts],
        store: RunStateStore,
        price_function: PriceFunction = compute_share_price,
    ) -> None:
        """
        Initialize the RoundSyncController.

        Args:
            registry: Chain topology; iteration order is the pricing order
            reads: Quorum reads with retry and confirmation policies
            contracts: Contract bindings per chain name
            store: Persistence for the run-log
            price_function: Computes the price from verified primary inputs
        """
        self.registry = registry
        self.reads = reads
        self.contracts = contracts
        self.store = store
        self.price_function = price_function

        missing = [c.name for c in registry if c.name not in contracts]
        if missing:
            raise ValueError(f"No contract bindings for chains: {missing}")

    # ------------------------------------------------------------------
    # Entry points

    async def sync_round(self, yield_amount: int = 0, resume: bool = False) -> RunState:
        """
        Run (or resume) one full round synchronization.

        Args:
            yield_amount: Signed yield booked in the round being closed
            resume: Continue the incomplete run recorded in the run-log

        Returns:
            The completed RunState

        Raises:
            PartialRunHalted: If any step failed; nothing is rolled back
        """
        state = await self._prepare(yield_amount, resume)

        logger.info("=" * 60)
        logger.info(f"Round sync {state.run_id}: target round {state.target_round}")
        logger.info("=" * 60)

        start = STAGES.index(state.stage) if state.stage in STAGES else 0
        handlers: dict[SyncStage, Callable[[RunState], Awaitable[None]]] = {
            SyncStage.PAUSING_ALL: self._pause_all,
            SyncStage.COMPUTING_GLOBAL_PRICE: self._compute_global_price,
            SyncStage.PROPAGATING_PRICE: self._propagate_price,
            SyncStage.SETTLING_WITHDRAWALS: self._settle_withdrawals,
            SyncStage.RESUMING: self._resume_all,
        }

        for stage in STAGES[start:]:
            state.enter(stage)
            self.store.save(state)
            logger.info(f"--- {stage.value} ---")
            await handlers[stage](state)

        state.enter(SyncStage.COMPLETE)
        self.store.save(state)

        logger.info("=" * 60)
        logger.info(f"✓ Round {state.target_round} synchronized on {len(self.registry)} chains (price {state.price})")
        logger.info("=" * 60)
        return state

    async def status(self) -> dict[str, dict[str, Any]]:
        """Quorum-verified round, epoch and pause flag of every chain."""
        report: dict[str, dict[str, Any]] = {}
        for chain in self.registry:
            contracts = self.contracts[chain.name]
            report[chain.name] = {
                "role": chain.role.value,
                "round": await self.reads.read(chain.name, contracts.current_round(), "round"),
                "epoch": await self.reads.read(chain.name, contracts.current_epoch(), "currentEpoch"),
                "paused": await self.reads.read(chain.name, contracts.is_paused(), "isPaused"),
            }
        return report

    async def unpause_all(self, force: bool = False) -> dict[str, str]:
        """
        Manually unpause every chain (idempotent).

        Refuses while a run is incomplete and has not yet settled withdrawals,
        unless ``force`` is set: unpausing before settlement exposes a
        half-rolled round to users.

        Returns:
            Per chain, "already active" or "unpaused"
        """
        pending = self.store.load_incomplete()
        unsettled = pending is not None and pending.stage in (SyncStage.IDLE, *STAGES[:-1])
        if unsettled and not force:
            raise PartialRunHalted(
                pending, None, "run incomplete before the resume stage; resume the run instead"
            )

        results: dict[str, str] = {}
        for chain in self.registry:
            unpaused = await self._set_paused(chain, False)
            results[chain.name] = "unpaused" if unpaused else "already active"
            logger.info(f"  {chain.name}: {results[chain.name]}")
        return results

    # ------------------------------------------------------------------
    # Run preparation

    async def _prepare(self, yield_amount: int, resume: bool) -> RunState:
        pending = self.store.load_incomplete()

        if pending is not None:
            if not resume:
                raise PartialRunHalted(
                    pending, None, "an incomplete run exists; resume it before starting a new one"
                )
            if set(pending.chain_steps) != set(self.registry.names):
                raise PartialRunHalted(
                    pending, None, f"run covers chains {sorted(pending.chain_steps)}, "
                    f"registry has {sorted(self.registry.names)}"
                )
            if pending.yield_amount != yield_amount:
                logger.warning(
                    f"Resuming run {pending.run_id} with its recorded yield {pending.yield_amount} "
                    f"(ignoring {yield_amount})"
                )
            logger.info(f"Resuming run {pending.run_id} from {pending.stage.value}")
            return pending

        if resume:
            logger.info("No incomplete run recorded, starting a new one")

        rounds: dict[str, int] = {}
        epochs: dict[str, int] = {}
        for chain in self.registry:
            contracts = self.contracts[chain.name]
            rounds[chain.name] = await self.reads.read(chain.name, contracts.current_round(), "round")
            epochs[chain.name] = await self.reads.read(chain.name, contracts.current_epoch(), "currentEpoch")

        current = rounds[self.registry.primary.name]
        state = RunState.new(current + 1, yield_amount, self.registry.names)

        diverged = {
            name: (rounds[name], epochs[name])
            for name in self.registry.names
            if rounds[name] != current or epochs[name] != current
        }
        if diverged:
            raise PartialRunHalted(
                state, None,
                f"chains out of sync before start (primary at round {current}); "
                f"(round, epoch) per diverged chain: {diverged}",
            )

        self.store.save(state)
        return state

    # ------------------------------------------------------------------
    # Stage handlers

    def _halt(self, state: RunState, chain: str | None, reason: str, cause: Exception | None = None) -> PartialRunHalted:
        state.halt_reason = reason
        self.store.save(state)
        logger.error(f"✗ Run {state.run_id} halted in {state.stage.value}" + (f" at {chain}" if chain else ""))
        logger.error(f"  Reason: {reason}")
        for name, step in state.chain_steps.items():
            logger.error(f"  {name:<15} last completed step: {step.value}")
        return PartialRunHalted(state, chain, reason, cause)

    async def _for_each_chain(
        self,
        state: RunState,
        step: ChainStep,
        action: Callable[[RunState, ChainDescriptor], Awaitable[None]],
    ) -> None:
        """Apply ``action`` to every chain, in registry order, that has not reached ``step``."""
        for chain in self.registry:
            if state.reached(chain.name, step):
                logger.info(f"  {chain.name}: {step.value} already recorded, skipping")
                continue
            try:
                await action(state, chain)
            except PartialRunHalted:
                raise
            except Exception as e:
                raise self._halt(state, chain.name, f"{step.value} step failed: {e}", e) from e

            state.mark(chain.name, step)
            self.store.save(state)

    async def _set_paused(self, chain: ChainDescriptor, paused: bool) -> bool:
        """Bring the chain to the pause state; returns whether a write was needed."""
        contracts = self.contracts[chain.name]
        written = await self.reads.ensure_flag(
            chain.name,
            contracts.is_paused,
            "isPaused",
            paused,
            lambda: contracts.set_paused(paused),
            "pause" if paused else "unpause",
        )
        if written:
            logger.info(f"  ✓ {chain.name} {'paused' if paused else 'unpaused'}")
        return written

    async def _pause_all(self, state: RunState) -> None:
        async def pause(_: RunState, chain: ChainDescriptor) -> None:
            if not await self._set_paused(chain, True):
                logger.info(f"  {chain.name}: already paused")

        await self._for_each_chain(state, ChainStep.PAUSED, pause)

    async def _compute_global_price(self, state: RunState) -> None:
        if state.price is not None:
            logger.info(f"  Price already computed for run {state.run_id}: {state.price}")
            return

        primary = self.registry.primary
        contracts = self.contracts[primary.name]
        try:
            aggregate = AggregateState(
                staked_total=await self.reads.read(primary.name, contracts.global_total_staked(), "globalTotalStaked"),
                pending_total=await self.reads.read(primary.name, contracts.global_total_pending(), "globalTotalPending"),
                supply_total=await self.reads.read(primary.name, contracts.global_share_supply(), "globalShareSupply"),
                decimals=await self.reads.read(primary.name, contracts.decimals(), "decimals"),
            )
            price = self.price_function(aggregate, state.yield_amount)
        except (VaultKeeperError, ValueError) as e:
            raise self._halt(state, primary.name, f"price computation failed: {e}", e) from e

        logger.info(f"  Staked: {aggregate.staked_total}")
        logger.info(f"  Pending: {aggregate.pending_total}")
        logger.info(f"  Supply: {aggregate.supply_total}")
        logger.info(f"  Yield: {state.yield_amount}")
        logger.info(f"  Price per share: {price} (decimals {aggregate.decimals})")

        state.aggregate = aggregate.to_dict()
        state.price = price
        self.store.save(state)

    async def _advance_counter(
        self,
        state: RunState,
        chain: ChainDescriptor,
        label: str,
        query_factory: Callable[[], Any],
        write: Callable[[], Awaitable[str]],
        operation: str,
    ) -> None:
        """Advance a round/epoch counter from target-1 to target, exactly once."""
        target = state.target_round
        current = await self.reads.read(chain.name, query_factory(), label)

        if current == target:
            logger.info(f"  {chain.name}: {label} already at {target}")
            return
        if current != target - 1:
            raise self._halt(
                state, chain.name, f"{label} is {current}, expected {target - 1} or {target}"
            )

        await write()
        observed = await self.reads.confirm(
            chain.name,
            query_factory(),
            label,
            done=lambda value: value != target - 1,
            operation=operation,
            expected=target,
        )
        if observed != target:
            raise self._halt(
                state, chain.name, f"{operation} advanced {label} to {observed}, expected {target}"
            )
        logger.info(f"  ✓ {chain.name} {label} → {target}")

    async def _propagate_price(self, state: RunState) -> None:
        if state.price is None:
            raise self._halt(state, None, "no computed price recorded for this run")
        price = state.price

        async def apply(_: RunState, chain: ChainDescriptor) -> None:
            contracts = self.contracts[chain.name]
            if chain.is_primary:
                write, operation = (lambda: contracts.roll_to_next_round(price)), "rollToNextRound"
            else:
                write, operation = (lambda: contracts.apply_global_price(price)), "applyGlobalPrice"

            await self._advance_counter(state, chain, "round", contracts.current_round, write, operation)

            closed_round = state.target_round - 1
            on_chain = await self.reads.read(chain.name, contracts.round_price(closed_round), "roundPricePerShare")
            if on_chain != price:
                raise self._halt(
                    state, chain.name,
                    f"roundPricePerShare({closed_round}) is {on_chain}, expected {price}",
                )

        await self._for_each_chain(state, ChainStep.PRICED, apply)

    async def _settle_withdrawals(self, state: RunState) -> None:
        async def settle(_: RunState, chain: ChainDescriptor) -> None:
            contracts = self.contracts[chain.name]
            await self._advance_counter(
                state, chain, "currentEpoch", contracts.current_epoch,
                contracts.process_withdrawals, "processWithdrawals",
            )

        await self._for_each_chain(state, ChainStep.SETTLED, settle)

    async def _resume_all(self, state: RunState) -> None:
        async def resume(_: RunState, chain: ChainDescriptor) -> None:
            if not await self._set_paused(chain, False):
                logger.info(f"  {chain.name}: already active")

        await self._for_each_chain(state, ChainStep.RESUMED, resume)

        # Terminal check: every chain unpaused with round == epoch == target
        try:
            report = await self.status()
        except VaultKeeperError as e:
            raise self._halt(state, None, f"final verification failed: {e}", e) from e

        target = state.target_round
        for name, chain_status in report.items():
            if chain_status["paused"] or chain_status["round"] != target or chain_status["epoch"] != target:
                raise self._halt(
                    state, name,
                    f"final state round={chain_status['round']}, epoch={chain_status['epoch']}, "
                    f"paused={chain_status['paused']}; expected round=epoch={target}, unpaused",
                )
