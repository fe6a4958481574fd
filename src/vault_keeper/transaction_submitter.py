#!/usr/bin/env python3
"""Transaction submission for the vault keeper.

Writes go through a single signing client per chain, bound to the chain's
first endpoint: a write needs no consensus, only its *effect* is verified
afterwards through quorum reads. The operator key is either a local key
(local mode) or provisioned by the ROFL daemon.
"""

import logging
from typing import TYPE_CHECKING, Any

from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted
from web3.types import TxReceipt

from .errors import TransactionFailed
from .utils.contract_utility import ContractUtility
from .utils.rofl_utility import RoflUtility

if TYPE_CHECKING:
    from .config import KeeperConfig
    from .registry import ChainRegistry

logger = logging.getLogger(__name__)


class TransactionSubmitter:
    """Signs, sends and waits for keeper transactions on every chain."""

    def __init__(
        self,
        registry: "ChainRegistry",
        secret: str,
        gas_limit: int = 500000,
        receipt_timeout: int = 120,
    ) -> None:
        """
        Initialize the TransactionSubmitter.

        Args:
            registry: Chain topology (the first endpoint of each chain is used)
            secret: Operator private key
            gas_limit: Gas limit for every keeper transaction
            receipt_timeout: Seconds to wait for a receipt
        """
        if not secret:
            raise ValueError("Private key is required for signing transactions")

        self.registry = registry
        self.secret = secret
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.submitted = 0
        self._utilities: dict[str, ContractUtility] = {}

    @classmethod
    async def create(cls, config: "KeeperConfig", registry: "ChainRegistry") -> "TransactionSubmitter":
        """Build a submitter, fetching the operator key from ROFL outside local mode."""
        if config.local_mode:
            logger.debug("Using local private key (LOCAL MODE)")
            secret = config.local_private_key or ""
        else:
            logger.debug(f"Fetching operator key {config.rofl_key_id!r} from ROFL...")
            secret = await RoflUtility().fetch_key(config.rofl_key_id)
            logger.debug("Operator key fetched successfully")

        return cls(
            registry=registry,
            secret=secret,
            gas_limit=config.gas_limit,
            receipt_timeout=config.confirmation.receipt_timeout,
        )

    def utility(self, chain: str) -> ContractUtility:
        """Signing utility for the chain, created on first use."""
        if chain not in self._utilities:
            endpoint = self.registry.get(chain).endpoints[0]
            utility = ContractUtility(endpoint.url, self.secret)
            logger.info(f"Signer {utility.address} for {chain} bound to {endpoint}")
            self._utilities[chain] = utility
        return self._utilities[chain]

    async def submit(
        self,
        chain: str,
        address: str,
        abi: list[dict[str, Any]],
        function: str,
        args: list[Any],
    ) -> str:
        """
        Submit a transaction and wait for a successful receipt.

        Args:
            chain: Chain name
            address: Contract address
            abi: Contract ABI
            function: Function name
            args: Positional function arguments

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            TransactionFailed: If the node rejects the transaction, no receipt
                arrives in time, or the receipt reports a revert
        """
        utility = self.utility(chain)
        contract = utility.contract(address, abi)
        logger.info(f"Submitting {function}{tuple(args)} on {chain} to {address}")

        try:
            gas_price = await utility.w3.eth.gas_price
            tx_hash: HexBytes = await getattr(contract.functions, function)(*args).transact({
                'gas': self.gas_limit,
                'gasPrice': gas_price
            })
        except Exception as e:
            logger.error(f"✗ {function} on {chain} rejected: {e}")
            raise TransactionFailed(chain, function, str(e)) from e

        tx_hex = AsyncWeb3.to_hex(tx_hash)
        self.submitted += 1
        logger.info(f"✓ Transaction submitted successfully: {tx_hex}")

        try:
            receipt: TxReceipt = await utility.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as e:
            logger.error(f"✗ No receipt for {tx_hex} within {self.receipt_timeout}s")
            raise TransactionFailed(chain, function, f"no receipt within {self.receipt_timeout}s", tx_hex) from e

        if (status := receipt.get('status', 0)) == 1:
            logger.info(f"✓ Transaction confirmed in block {receipt['blockNumber']}")
            return tx_hex

        logger.error(f"✗ Transaction failed with status={status}")
        raise TransactionFailed(chain, function, f"reverted (status={status})", tx_hex)
