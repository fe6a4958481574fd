#!/usr/bin/env python3
"""Tests for the pre-flight check."""

import pytest

from vault_keeper.preflight import PreflightCheck

from conftest import address


def preflight(deployment) -> PreflightCheck:
    return PreflightCheck(deployment.registry, deployment.reads, deployment.contracts)


class TestPreflight:
    """Read-only readiness checks."""

    @pytest.mark.asyncio
    async def test_ready_deployment_passes(self, deployment):
        deployment.connect_all_routes()

        report = await preflight(deployment).run()

        assert report.ok
        assert report.issues == []
        assert len(report.routes) == 6
        # No token admin registries configured in the fake record
        assert len(report.warnings) == 3
        assert deployment.total_writes() == 0

    @pytest.mark.asyncio
    async def test_unauthorized_pool(self, deployment):
        deployment.connect_all_routes()
        deployment.states["base"].pool_authorized = False

        report = await preflight(deployment).run()

        assert not report.ok
        assert any("base: pool" in issue and "not authorized" in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_primary_flag_mismatch(self, deployment):
        deployment.connect_all_routes()
        deployment.states["arbitrum"].is_primary_chain = True

        report = await preflight(deployment).run()

        assert any("arbitrum: isPrimaryChain() is True" in issue for issue in report.issues)
        assert any("found 2" in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_deposits_enabled_is_a_warning(self, deployment):
        deployment.connect_all_routes()
        deployment.states["ethereum"].deposits_enabled = True

        report = await preflight(deployment).run()

        assert report.ok
        assert "ethereum: deposits already enabled" in report.warnings

    @pytest.mark.asyncio
    async def test_broken_routes_are_issues(self, deployment):
        deployment.connect_all_routes()
        deployment.states["base"].routes[deployment.registry.get("ethereum").chain_selector] = (True, (address(0xEE),))

        report = await preflight(deployment).run()

        assert report.issues == ["route base → ethereum is Misconfigured"]
        assert report.to_dict()["ok"] is False

    @pytest.mark.asyncio
    async def test_unverifiable_check_is_reported(self, deployment):
        deployment.connect_all_routes()
        for node in deployment.nodes["arbitrum"]:
            node.down = True

        report = await preflight(deployment).run()

        assert not report.ok
        assert "arbitrum pool authorization: could not be verified (AllEndpointsUnreachable)" in report.issues
        assert any(issue.startswith("route survey") for issue in report.issues)


class TestEnableDeposits:
    """Opening deposits after the readiness checks."""

    @pytest.mark.asyncio
    async def test_enables_every_chain(self, deployment):
        deployment.connect_all_routes()

        report, results = await preflight(deployment).enable_deposits()

        assert report.ok
        assert results == {"ethereum": "enabled", "base": "enabled", "arbitrum": "enabled"}
        assert all(state.deposits_enabled for state in deployment.states.values())
        for contracts in deployment.contracts.values():
            assert contracts.writes == [("setDepositsEnabled", (True,))]

    @pytest.mark.asyncio
    async def test_rerun_skips_enabled_chains(self, deployment):
        deployment.connect_all_routes()
        deployment.states["base"].deposits_enabled = True

        _, results = await preflight(deployment).enable_deposits()

        assert results["base"] == "already enabled"
        assert deployment.contracts["base"].writes == []
        assert deployment.total_writes() == 2

    @pytest.mark.asyncio
    async def test_failed_preflight_blocks(self, deployment):
        deployment.connect_all_routes()
        deployment.states["base"].pool_authorized = False

        report, results = await preflight(deployment).enable_deposits()

        assert not report.ok
        assert results is None
        assert deployment.total_writes() == 0

    @pytest.mark.asyncio
    async def test_force_overrides_failed_preflight(self, deployment):
        deployment.states["base"].pool_authorized = False

        report, results = await preflight(deployment).enable_deposits(force=True)

        assert not report.ok
        assert set(results.values()) == {"enabled"}
        assert deployment.total_writes() == 3
