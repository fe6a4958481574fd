#!/usr/bin/env python3
"""Contract bindings for one chain.

``ChainContracts`` exposes the vault, wrapper, bridge pool and token admin
registry of a chain as two kinds of operations:

- read *queries*: callables taking an endpoint client, meant to be handed
  to the QuorumReader so every decision-driving read is quorum-verified;
- *writes*: coroutines that submit a transaction through the
  TransactionSubmitter and return its hash.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from eth_abi import encode
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from .models import ChainDescriptor
from .quorum import Query

if TYPE_CHECKING:
    from .transaction_submitter import TransactionSubmitter

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[str] | None = None, view: bool = False) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in (outputs or [])],
        "stateMutability": "view" if view else "nonpayable",
    }


_RATE_LIMITER_COMPONENTS = [
    {"name": "isEnabled", "type": "bool"},
    {"name": "capacity", "type": "uint128"},
    {"name": "rate", "type": "uint128"},
]

VAULT_ABI: list[dict[str, Any]] = [
    _fn("isPaused", [], ["bool"], view=True),
    _fn("setSystemPaused", [("paused", "bool")]),
    _fn("round", [], ["uint256"], view=True),
    _fn("roundPricePerShare", [("round", "uint256")], ["uint256"], view=True),
    _fn("rollToNextRound", [("pricePerShare", "uint256")]),
    _fn("applyGlobalPrice", [("pricePerShare", "uint256")]),
    _fn("globalTotalStaked", [], ["uint256"], view=True),
    _fn("globalTotalPending", [], ["uint256"], view=True),
    _fn("globalShareSupply", [], ["uint256"], view=True),
    _fn("decimals", [], ["uint8"], view=True),
    _fn("isPrimaryChain", [], ["bool"], view=True),
    _fn("ccipPools", [("pool", "address")], ["bool"], view=True),
    _fn("depositsEnabled", [], ["bool"], view=True),
    _fn("setDepositsEnabled", [("enabled", "bool")]),
]

WRAPPER_ABI: list[dict[str, Any]] = [
    _fn("currentEpoch", [], ["uint256"], view=True),
    _fn("processWithdrawals", []),
]

POOL_ABI: list[dict[str, Any]] = [
    _fn("isSupportedChain", [("remoteChainSelector", "uint64")], ["bool"], view=True),
    _fn("getRemotePool", [("remoteChainSelector", "uint64")], ["bytes"], view=True),
    _fn("getRemotePools", [("remoteChainSelector", "uint64")], ["bytes[]"], view=True),
    {
        "type": "function",
        "name": "applyChainUpdates",
        "inputs": [
            {"name": "remoteChainSelectorsToRemove", "type": "uint64[]"},
            {
                "name": "chainsToAdd",
                "type": "tuple[]",
                "components": [
                    {"name": "remoteChainSelector", "type": "uint64"},
                    {"name": "remotePoolAddresses", "type": "bytes[]"},
                    {"name": "remoteTokenAddress", "type": "bytes"},
                    {"name": "outboundRateLimiterConfig", "type": "tuple", "components": _RATE_LIMITER_COMPONENTS},
                    {"name": "inboundRateLimiterConfig", "type": "tuple", "components": _RATE_LIMITER_COMPONENTS},
                ],
            },
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

TOKEN_ADMIN_REGISTRY_ABI: list[dict[str, Any]] = [
    _fn("getPool", [("token", "address")], ["address"], view=True),
]

# Rate limiting disabled on keeper-managed routes
DISABLED_RATE_LIMITER: tuple[bool, int, int] = (False, 0, 0)


def _address_or_none(raw: bytes) -> str | None:
    if len(raw) < 20:
        return None
    address = AsyncWeb3.to_checksum_address("0x" + raw[-20:].hex())
    return None if address == ZERO_ADDRESS else address


def decode_remote_pool(raw: bytes) -> tuple[str, ...]:
    """Decode ``getRemotePool`` output: a single ABI-encoded address, possibly empty."""
    address = _address_or_none(bytes(raw))
    return (address,) if address else ()


def decode_remote_pools(raw: list[bytes]) -> tuple[str, ...]:
    """Decode ``getRemotePools`` output: a list of encoded addresses.

    Entries are read like ``getRemotePool`` output, so a packed 20-byte
    address decodes too; entries too short to hold an address are dropped.
    """
    return tuple(address for item in raw if (address := _address_or_none(bytes(item))))


@dataclass(frozen=True, slots=True)
class RemotePoolCall:
    """One call shape for reading the registered remote pool of a route."""

    name: str
    decode: Callable[[Any], tuple[str, ...]]


# Capability negotiation for the deep route check: pool implementations
# expose one of these. Tried in this order; the first that answers wins.
REMOTE_POOL_CALLS: tuple[RemotePoolCall, ...] = (
    RemotePoolCall("getRemotePool", decode_remote_pool),
    RemotePoolCall("getRemotePools", decode_remote_pools),
)


def encode_chain_update(destination: ChainDescriptor, remote_pool: str) -> tuple[Any, ...]:
    """Build the ``chainsToAdd`` entry pointing a source pool at the destination."""
    return (
        destination.chain_selector,
        [encode(["address"], [remote_pool])],
        encode(["address"], [destination.vault]),
        DISABLED_RATE_LIMITER,
        DISABLED_RATE_LIMITER,
    )


class ChainContracts:
    """Queries and writes against the contracts of one chain."""

    def __init__(self, chain: ChainDescriptor, submitter: "TransactionSubmitter | None" = None) -> None:
        """
        Initialize the ChainContracts.

        Args:
            chain: Descriptor of the chain
            submitter: Transaction submitter for writes (None for read-only use)
        """
        self.chain = chain
        self.submitter = submitter

    # ------------------------------------------------------------------
    # Read queries

    def _call(self, address: str, abi: list[dict[str, Any]], function: str, *args: Any) -> Query:
        async def query(w3: AsyncWeb3) -> Any:
            contract = w3.eth.contract(address=address, abi=abi)
            return await getattr(contract.functions, function)(*args).call()

        query.__qualname__ = f"{self.chain.name}.{function}"
        return query

    def is_paused(self) -> Query[bool]:
        return self._call(self.chain.vault, VAULT_ABI, "isPaused")

    def current_round(self) -> Query[int]:
        return self._call(self.chain.vault, VAULT_ABI, "round")

    def round_price(self, round_number: int) -> Query[int]:
        return self._call(self.chain.vault, VAULT_ABI, "roundPricePerShare", round_number)

    def current_epoch(self) -> Query[int]:
        return self._call(self.chain.wrapper, WRAPPER_ABI, "currentEpoch")

    def global_total_staked(self) -> Query[int]:
        return self._call(self.chain.vault, VAULT_ABI, "globalTotalStaked")

    def global_total_pending(self) -> Query[int]:
        return self._call(self.chain.vault, VAULT_ABI, "globalTotalPending")

    def global_share_supply(self) -> Query[int]:
        return self._call(self.chain.vault, VAULT_ABI, "globalShareSupply")

    def decimals(self) -> Query[int]:
        return self._call(self.chain.vault, VAULT_ABI, "decimals")

    def is_primary_chain(self) -> Query[bool]:
        return self._call(self.chain.vault, VAULT_ABI, "isPrimaryChain")

    def pool_authorized(self) -> Query[bool]:
        return self._call(self.chain.vault, VAULT_ABI, "ccipPools", self.chain.pool)

    def deposits_enabled(self) -> Query[bool]:
        return self._call(self.chain.vault, VAULT_ABI, "depositsEnabled")

    def is_supported_chain(self, selector: int) -> Query[bool]:
        return self._call(self.chain.pool, POOL_ABI, "isSupportedChain", selector)

    def registered_pool(self) -> Query[str]:
        """Pool registered for this chain's share token in the token admin registry."""
        if not self.chain.token_admin_registry:
            raise ValueError(f"{self.chain.name}: no token admin registry configured")
        return self._call(self.chain.token_admin_registry, TOKEN_ADMIN_REGISTRY_ABI, "getPool", self.chain.vault)

    def remote_pools(self, selector: int, call: RemotePoolCall) -> Query[tuple[str, ...] | None]:
        """Deep route check using one call shape.

        Returns the registered remote pool addresses (possibly empty), or None
        when the call reverts, which some pool implementations do for an
        unset route or an unsupported call shape.
        """
        async def query(w3: AsyncWeb3) -> tuple[str, ...] | None:
            contract = w3.eth.contract(address=self.chain.pool, abi=POOL_ABI)
            try:
                raw = await getattr(contract.functions, call.name)(selector).call()
            except (ContractLogicError, BadFunctionCallOutput):
                return None
            return call.decode(raw)

        query.__qualname__ = f"{self.chain.name}.{call.name}"
        return query

    # ------------------------------------------------------------------
    # Writes

    async def _send(self, address: str, abi: list[dict[str, Any]], function: str, *args: Any) -> str:
        if self.submitter is None:
            raise RuntimeError(f"{self.chain.name}: contracts bound read-only, cannot call {function}")
        return await self.submitter.submit(self.chain.name, address, abi, function, list(args))

    async def set_paused(self, paused: bool) -> str:
        return await self._send(self.chain.vault, VAULT_ABI, "setSystemPaused", paused)

    async def set_deposits_enabled(self, enabled: bool) -> str:
        return await self._send(self.chain.vault, VAULT_ABI, "setDepositsEnabled", enabled)

    async def roll_to_next_round(self, price: int) -> str:
        return await self._send(self.chain.vault, VAULT_ABI, "rollToNextRound", price)

    async def apply_global_price(self, price: int) -> str:
        return await self._send(self.chain.vault, VAULT_ABI, "applyGlobalPrice", price)

    async def process_withdrawals(self) -> str:
        return await self._send(self.chain.wrapper, WRAPPER_ABI, "processWithdrawals")

    async def apply_chain_updates(self, removals: list[int], additions: list[tuple[Any, ...]]) -> str:
        return await self._send(self.chain.pool, POOL_ABI, "applyChainUpdates", removals, additions)
