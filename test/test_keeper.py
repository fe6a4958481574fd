#!/usr/bin/env python3
"""Tests for the VaultKeeper wiring."""

import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from vault_keeper.config import KeeperConfig
from vault_keeper.contracts import ChainContracts
from vault_keeper.keeper import VaultKeeper
from vault_keeper.registry import ChainRegistry

from conftest import deployment_record

TEST_KEY = "0x" + "1" * 64


@pytest.fixture
def deployment_file(tmp_path):
    path = tmp_path / "deployment.json"
    path.write_text(json.dumps(deployment_record()))
    return path


class TestVaultKeeper:
    """Construction and command guards."""

    def test_init_wires_components(self, tmp_path):
        registry = ChainRegistry.from_dict(deployment_record(), environ={})
        config = KeeperConfig(run_state_path=str(tmp_path / "run.json"))

        keeper = VaultKeeper(config, registry)

        assert set(keeper.contracts) == {"ethereum", "base", "arbitrum"}
        assert all(isinstance(c, ChainContracts) for c in keeper.contracts.values())
        assert keeper.reader.policy == config.quorum
        assert keeper.reads.retry == config.retry
        assert keeper.store.path == tmp_path / "run.json"
        assert keeper.submitter is None

    @pytest.mark.asyncio
    async def test_read_only_keeper_refuses_writes(self, tmp_path):
        registry = ChainRegistry.from_dict(deployment_record(), environ={})
        keeper = VaultKeeper(KeeperConfig(run_state_path=str(tmp_path / "run.json")), registry)

        with pytest.raises(ValueError, match="sync-round needs a signer"):
            await keeper.sync_round(0)
        with pytest.raises(ValueError, match="unpause needs a signer"):
            await keeper.unpause()
        with pytest.raises(ValueError, match="reconcile-routes needs a signer"):
            await keeper.reconcile_routes()
        with pytest.raises(ValueError, match="configure-routes needs a signer"):
            await keeper.configure_routes()
        with pytest.raises(ValueError, match="enable-deposits needs a signer"):
            await keeper.enable_deposits()

    @pytest.mark.asyncio
    async def test_configure_dry_run_needs_no_signer(self, tmp_path):
        registry = ChainRegistry.from_dict(deployment_record(), environ={})
        keeper = VaultKeeper(KeeperConfig(run_state_path=str(tmp_path / "run.json")), registry)

        with patch.object(keeper.reconciler, "configure", new=AsyncMock(return_value="report")) as configure:
            assert await keeper.configure_routes(dry_run=True) == "report"

        configure.assert_called_once_with(dry_run=True)

    @pytest.mark.asyncio
    async def test_dry_run_needs_no_signer(self, tmp_path):
        registry = ChainRegistry.from_dict(deployment_record(), environ={})
        keeper = VaultKeeper(KeeperConfig(run_state_path=str(tmp_path / "run.json")), registry)

        with patch.object(keeper.reconciler, "reconcile", new=AsyncMock(return_value="report")) as reconcile:
            assert await keeper.reconcile_routes(dry_run=True) == "report"

        reconcile.assert_called_once_with(dry_run=True)

    @pytest.mark.asyncio
    async def test_status_includes_run_log(self, tmp_path):
        registry = ChainRegistry.from_dict(deployment_record(), environ={})
        keeper = VaultKeeper(KeeperConfig(run_state_path=str(tmp_path / "run.json")), registry)
        chains = {"ethereum": {"role": "primary", "round": 3, "epoch": 3, "paused": False}}

        with patch.object(keeper.round_sync, "status", new=AsyncMock(return_value=chains)):
            status = await keeper.status()

        assert status == {"chains": chains, "run": None, "completed_runs": 0}

    @pytest.mark.asyncio
    async def test_from_env_local(self, deployment_file, tmp_path):
        environ = {
            "DEPLOYMENT_FILE": str(deployment_file),
            "RUN_STATE_PATH": str(tmp_path / "run.json"),
            "LOCAL_PRIVATE_KEY": TEST_KEY,
        }
        with patch.dict(os.environ, environ, clear=True):
            keeper = await VaultKeeper.from_env(local_mode=True)

        assert keeper.submitter is not None
        assert keeper.submitter.secret == TEST_KEY
        assert keeper.registry.primary.name == "ethereum"
        assert keeper.contracts["base"].submitter is keeper.submitter

    @pytest.mark.asyncio
    async def test_from_env_read_only_skips_key(self, deployment_file):
        with patch.dict(os.environ, {"DEPLOYMENT_FILE": str(deployment_file)}, clear=True):
            with patch("vault_keeper.transaction_submitter.RoflUtility") as mock_rofl_class:
                keeper = await VaultKeeper.from_env(signer=False)

        mock_rofl_class.assert_not_called()
        assert keeper.submitter is None

    @pytest.mark.asyncio
    async def test_from_env_missing_deployment(self, tmp_path):
        with patch.dict(os.environ, {"DEPLOYMENT_FILE": str(tmp_path / "missing.json")}, clear=True):
            with pytest.raises(ValueError, match="Deployment file not found"):
                await VaultKeeper.from_env(signer=False)
