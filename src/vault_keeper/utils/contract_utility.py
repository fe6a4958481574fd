import logging
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.contract import AsyncContract
from web3.middleware import SignAndSendRawMiddlewareBuilder

logger = logging.getLogger(__name__)


class ContractUtility:
    """
    Utility for building web3 clients against one RPC endpoint.
    
    Can be used in two modes:
    1. Signing mode: Initialize with RPC URL and secret for sending transactions
    2. Read-only mode: Initialize with RPC URL only (or use ``reader``) for quorum reads
    """

    def __init__(self, rpc_url: str, secret: str = "") -> None:
        """
        Initialize the ContractUtility.
        
        Args:
            rpc_url: RPC URL for the network (required)
            secret: Private key for signing transactions (optional - if not provided, read-only mode)
        """
        if not rpc_url:
            raise ValueError("RPC URL is required")
            
        self.rpc_url = rpc_url
        self.w3: AsyncWeb3 = self.reader(rpc_url)
        self.account: LocalAccount | None = None
        
        # Add signing middleware only if secret is provided
        if secret:
            self._add_signing_middleware(secret)

    @staticmethod
    def reader(rpc_url: str) -> AsyncWeb3:
        """Build an unsigned AsyncWeb3 client for the endpoint."""
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))

    def _add_signing_middleware(self, secret: str) -> None:
        """
        Add signing middleware to the existing Web3 instance.
        
        Args:
            secret: Private key for signing transactions
        """
        if not secret:
            raise ValueError("Private key is required for signing transactions")

        account: LocalAccount = Account.from_key(secret)
        self.w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(account))
        self.w3.eth.default_account = account.address
        self.account = account
        logger.debug(f"Signing middleware added for {account.address}")

    @property
    def address(self) -> str | None:
        return self.account.address if self.account else None

    def contract(self, address: str, abi: list[dict[str, Any]]) -> AsyncContract:
        """Bind a contract to this utility's client."""
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)
