#!/usr/bin/env python3
"""Tests for ContractUtility class.

This module tests both signing mode and read-only mode of the
ContractUtility class.
"""

import unittest
from unittest.mock import MagicMock, Mock, patch

import pytest
from eth_account import Account
from web3 import AsyncWeb3

from vault_keeper.contracts import VAULT_ABI
from vault_keeper.utils.contract_utility import ContractUtility


class TestContractUtility(unittest.TestCase):
    """Test cases for ContractUtility class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_rpc_url = "https://test.rpc.url"
        self.test_private_key = "0x" + "1" * 64  # Valid test private key
        self.test_address = Account.from_key(self.test_private_key).address

    @patch('vault_keeper.utils.contract_utility.AsyncWeb3')
    def test_init_read_only_mode(self, mock_web3):
        """Test initialization in read-only mode (no private key)."""
        mock_w3_instance = MagicMock()
        mock_web3.return_value = mock_w3_instance
        mock_web3.AsyncHTTPProvider = Mock(return_value="mock_provider")

        utility = ContractUtility(self.test_rpc_url)

        mock_web3.assert_called_once_with("mock_provider")
        mock_web3.AsyncHTTPProvider.assert_called_once_with(self.test_rpc_url)
        assert utility.rpc_url == self.test_rpc_url
        assert utility.w3 == mock_w3_instance
        assert utility.address is None
        # Middleware should not be added in read-only mode
        mock_w3_instance.middleware_onion.add.assert_not_called()

    @patch('vault_keeper.utils.contract_utility.AsyncWeb3')
    @patch('vault_keeper.utils.contract_utility.SignAndSendRawMiddlewareBuilder')
    @patch('vault_keeper.utils.contract_utility.Account')
    def test_init_signing_mode(self, mock_account, mock_middleware_builder, mock_web3):
        """Test initialization in signing mode (with private key)."""
        mock_w3_instance = MagicMock()
        mock_web3.return_value = mock_w3_instance

        mock_account_instance = MagicMock()
        mock_account_instance.address = self.test_address
        mock_account.from_key.return_value = mock_account_instance

        mock_middleware = MagicMock()
        mock_middleware_builder.build.return_value = mock_middleware

        utility = ContractUtility(self.test_rpc_url, self.test_private_key)

        mock_account.from_key.assert_called_once_with(self.test_private_key)
        mock_middleware_builder.build.assert_called_once_with(mock_account_instance)
        mock_w3_instance.middleware_onion.add.assert_called_once_with(mock_middleware)
        assert mock_w3_instance.eth.default_account == self.test_address
        assert utility.address == self.test_address

    def test_init_no_rpc_url(self):
        """Test initialization fails without RPC URL."""
        with pytest.raises(ValueError, match="RPC URL is required"):
            ContractUtility("")

        with pytest.raises(ValueError, match="RPC URL is required"):
            ContractUtility(None)

    def test_signing_with_real_account(self):
        """Test that the signer address derives from the key."""
        utility = ContractUtility(self.test_rpc_url, self.test_private_key)

        assert utility.address == self.test_address
        assert utility.w3.eth.default_account == self.test_address

    def test_reader_is_unsigned(self):
        """Test the static reader builds a plain AsyncWeb3 client."""
        w3 = ContractUtility.reader(self.test_rpc_url)

        assert isinstance(w3, AsyncWeb3)

    def test_contract_checksums_address(self):
        """Test contract binding with a lowercase address."""
        utility = ContractUtility(self.test_rpc_url)

        contract = utility.contract("0x85bfe05492afc3d04ff3b2ca6771acf6f853d90d", VAULT_ABI)

        assert contract.address == "0x85BfE05492aFC3D04Ff3B2ca6771ACF6f853d90d"
        assert hasattr(contract.functions, "rollToNextRound")


if __name__ == "__main__":
    unittest.main()
