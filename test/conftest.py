#!/usr/bin/env python3
"""Shared fixtures: in-memory chains served by several fake RPC nodes.

Each chain's contract state lives in one ``FakeChainState``. Every endpoint
of the chain is a ``FakeNode`` reading that state, and can be made slow,
unreachable or stale (frozen on an old snapshot) to exercise the quorum.
``FakeContracts`` mirrors the ``ChainContracts`` interface: queries read
through whichever node the quorum engine hands them, writes mutate the
canonical state and are recorded.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any

import pytest
from eth_abi import encode
from web3 import Web3

from vault_keeper.config import ConfirmationPolicy, QuorumPolicy, RetryPolicy
from vault_keeper.contracts import decode_remote_pools
from vault_keeper.models import ChainDescriptor
from vault_keeper.quorum import QuorumReader
from vault_keeper.registry import ChainRegistry
from vault_keeper.run_state import RunStateStore
from vault_keeper.verification import VerifiedReads


def address(n: int) -> str:
    return Web3.to_checksum_address("0x" + f"{n:02x}" * 20)


CHAIN_LAYOUT = {
    # name: (chain id, selector, primary, first address byte)
    "ethereum": (1, 5009297550715157269, True, 0x10),
    "base": (8453, 15971525489660198786, False, 0x20),
    "arbitrum": (42161, 4949039107694359620, False, 0x30),
}


def deployment_record(names: list[str] | None = None, endpoints: int = 3) -> dict[str, Any]:
    """Deployment record for the given chains, with ``endpoints`` fallback URLs each."""
    record: dict[str, Any] = {"deployer": address(0x01), "timestamp": "2025-06-02T14:21:07Z"}
    for name in names or list(CHAIN_LAYOUT):
        chain_id, selector, primary, base = CHAIN_LAYOUT[name]
        record[name] = {
            "chainId": chain_id,
            "chainSelector": str(selector),
            "isPrimary": primary,
            "vault": address(base + 1),
            "sherpaUSD": address(base + 2),
            "newCcipPool": address(base + 3),
            "rpcEnvVar": f"{name.upper()}_RPC_URL",
            "rpcUrls": [f"https://{name}-{i}.rpc.test" for i in range(1, endpoints + 1)],
        }
    return record


@dataclass
class FakeChainState:
    """Canonical contract state of one chain."""

    round: int = 1
    epoch: int = 1
    paused: bool = False
    staked: int = 1_000_000_000
    pending: int = 0
    supply: int = 1_000_000_000
    decimals: int = 6
    is_primary_chain: bool = False
    pool_authorized: bool = True
    deposits_enabled: bool = False
    registered_pool: str | None = None
    round_prices: dict[int, int] = field(default_factory=dict)
    # selector -> (supported flag, registered remote pools)
    routes: dict[int, tuple[bool, tuple[str, ...]]] = field(default_factory=dict)
    # call shapes this pool implementation does not support
    reverting_calls: set[str] = field(default_factory=set)
    # selectors whose deep reads revert (flag set, remote pool never registered)
    unreadable_routes: set[int] = field(default_factory=set)
    # selector -> raw getRemotePools entries served instead of the encoded pools
    raw_remote_pools: dict[int, list[bytes]] = field(default_factory=dict)

    def lookup(self, key: str, *args: Any) -> Any:
        match key:
            case "round_price":
                return self.round_prices.get(args[0], 0)
            case "is_supported_chain":
                return self.routes.get(args[0], (False, ()))[0]
            case "remote_pools":
                selector, call_name = args
                if call_name in self.reverting_calls or selector in self.unreadable_routes:
                    return None
                raw = self.raw_remote_pools.get(selector)
                if raw is None:
                    raw = [encode(["address"], [pool]) for pool in self.routes.get(selector, (False, ()))[1]]
                if call_name == "getRemotePool":
                    return raw[0] if raw else b""
                return raw
            case _:
                return getattr(self, key)


class FakeNode:
    """One RPC endpoint serving a chain's state."""

    def __init__(self, state: FakeChainState, delay: float = 0.0, down: bool = False) -> None:
        self.state = state
        self.delay = delay
        self.down = down
        self.frozen: FakeChainState | None = None
        # Per-key answers that differ from the chain (a node on a fork)
        self.overrides: dict[str, Any] = {}
        self.calls = 0

    def freeze(self) -> None:
        """Keep serving the current state forever (a node stuck behind the chain head)."""
        self.frozen = copy.deepcopy(self.state)

    async def get(self, key: str, *args: Any) -> Any:
        self.calls += 1
        if self.down:
            raise ConnectionError("connection refused")
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.overrides:
            return self.overrides[key]
        return (self.frozen or self.state).lookup(key, *args)


class FakeContracts:
    """In-memory stand-in for ``ChainContracts``."""

    def __init__(self, chain: ChainDescriptor, state: FakeChainState) -> None:
        self.chain = chain
        self.state = state
        self.writes: list[tuple[str, tuple[Any, ...]]] = []
        self.failures: dict[str, Exception] = {}
        # Re-adding a route sets the flag but registers no pool
        self.broken_add = False

    def _query(self, key: str, *args: Any):
        async def query(node: FakeNode) -> Any:
            return await node.get(key, *args)
        return query

    def is_paused(self):
        return self._query("paused")

    def current_round(self):
        return self._query("round")

    def round_price(self, round_number: int):
        return self._query("round_price", round_number)

    def current_epoch(self):
        return self._query("epoch")

    def global_total_staked(self):
        return self._query("staked")

    def global_total_pending(self):
        return self._query("pending")

    def global_share_supply(self):
        return self._query("supply")

    def decimals(self):
        return self._query("decimals")

    def is_primary_chain(self):
        return self._query("is_primary_chain")

    def pool_authorized(self):
        return self._query("pool_authorized")

    def deposits_enabled(self):
        return self._query("deposits_enabled")

    def registered_pool(self):
        return self._query("registered_pool")

    def is_supported_chain(self, selector: int):
        return self._query("is_supported_chain", selector)

    def remote_pools(self, selector: int, call):
        async def query(node: FakeNode) -> Any:
            raw = await node.get("remote_pools", selector, call.name)
            return None if raw is None else call.decode(raw)
        return query

    async def _write(self, function: str, *args: Any) -> str:
        if function in self.failures:
            raise self.failures[function]
        self.writes.append((function, args))
        return "0x" + f"{len(self.writes):064x}"

    async def set_paused(self, paused: bool) -> str:
        tx = await self._write("setSystemPaused", paused)
        self.state.paused = paused
        return tx

    async def set_deposits_enabled(self, enabled: bool) -> str:
        tx = await self._write("setDepositsEnabled", enabled)
        self.state.deposits_enabled = enabled
        return tx

    async def roll_to_next_round(self, price: int) -> str:
        tx = await self._write("rollToNextRound", price)
        self.state.round_prices[self.state.round] = price
        self.state.round += 1
        return tx

    async def apply_global_price(self, price: int) -> str:
        tx = await self._write("applyGlobalPrice", price)
        self.state.round_prices[self.state.round] = price
        self.state.round += 1
        return tx

    async def process_withdrawals(self) -> str:
        tx = await self._write("processWithdrawals")
        self.state.epoch += 1
        return tx

    async def apply_chain_updates(self, removals: list[int], additions: list[tuple[Any, ...]]) -> str:
        tx = await self._write("applyChainUpdates", removals, additions)
        for selector in removals:
            self.state.routes.pop(selector, None)
            self.state.unreadable_routes.discard(selector)
            self.state.raw_remote_pools.pop(selector, None)
        for selector, remote_pools, *_ in additions:
            pools = () if self.broken_add else decode_remote_pools(remote_pools)
            self.state.routes[selector] = (True, pools)
        return tx


class FakeDeployment:
    """Registry, fake nodes and fake contracts for a set of chains."""

    def __init__(self, tmp_path, names: list[str] | None = None, endpoints: int = 3,
                 quorum: QuorumPolicy | None = None) -> None:
        self.registry = ChainRegistry.from_dict(deployment_record(names, endpoints), environ={})
        self.states: dict[str, FakeChainState] = {}
        self.nodes: dict[str, list[FakeNode]] = {}
        self.contracts: dict[str, FakeContracts] = {}
        self._by_url: dict[str, FakeNode] = {}

        for chain in self.registry:
            state = FakeChainState(is_primary_chain=chain.is_primary)
            self.states[chain.name] = state
            self.nodes[chain.name] = [FakeNode(state) for _ in chain.endpoints]
            for endpoint, node in zip(chain.endpoints, self.nodes[chain.name]):
                self._by_url[endpoint.url] = node
            self.contracts[chain.name] = FakeContracts(chain, state)

        self.reader = QuorumReader(
            self.registry,
            quorum or QuorumPolicy(min_consensus=2, timeout=0.5),
            client_factory=lambda endpoint: self._by_url[endpoint.url],
        )
        self.reads = VerifiedReads(
            self.reader,
            RetryPolicy(attempts=1, backoff=0),
            ConfirmationPolicy(timeout=0.3, poll_interval=0.01),
        )
        self.store = RunStateStore(tmp_path / "run-state.json")

    def connect_all_routes(self) -> None:
        """Fully configure every route of the mesh."""
        for source, destination in self.registry.routes():
            self.states[source.name].routes[destination.chain_selector] = (True, (destination.pool,))

    def total_writes(self) -> int:
        return sum(len(c.writes) for c in self.contracts.values())


@pytest.fixture
def deployment(tmp_path) -> FakeDeployment:
    return FakeDeployment(tmp_path)
