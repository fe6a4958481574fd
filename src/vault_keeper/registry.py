#!/usr/bin/env python3
"""Chain registry: static topology of every supported chain.

The topology record is the deployment JSON written by the deployment
tooling. Endpoints come from the environment (``<rpcEnvVar>``,
``<rpcEnvVar>_2``, ``<rpcEnvVar>_3``) followed by the public fallbacks listed
in the record.
"""

import json
import logging
import os
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from web3 import Web3

from .models import ChainDescriptor, ChainRole, Endpoint

logger = logging.getLogger(__name__)

ENDPOINT_SUFFIXES: tuple[str, ...] = ("", "_2", "_3")


def _checksum(chain: str, label: str, address: str | None) -> str:
    if not address:
        raise ValueError(f"{chain}: {label} address is required")
    if not Web3.is_address(address):
        raise ValueError(f"{chain}: invalid {label} address: {address}")
    return Web3.to_checksum_address(address)


def _validate_url(chain: str, url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(
            f"{chain}: invalid RPC URL scheme: {parsed.scheme}. "
            "Expected http or https"
        )
    return url


def collect_endpoint_urls(name: str, entry: Mapping[str, Any], environ: Mapping[str, str]) -> list[str]:
    """Ordered, de-duplicated endpoint URLs for one chain."""
    env_var = entry.get("rpcEnvVar") or f"{name.upper()}_RPC_URL"
    candidates = [environ.get(f"{env_var}{suffix}") for suffix in ENDPOINT_SUFFIXES]
    candidates.extend(entry.get("rpcUrls", []))

    urls: list[str] = []
    for url in candidates:
        if url and url not in urls:
            urls.append(_validate_url(name, url))
    return urls


class ChainRegistry:
    """Read-only view of the chain topology.

    Iteration order is the pricing order: the primary chain first, then the
    secondaries in the order they appear in the topology record.
    """

    def __init__(self, chains: list[ChainDescriptor]) -> None:
        primaries = [c for c in chains if c.is_primary]
        if len(primaries) != 1:
            raise ValueError(f"Expected exactly 1 primary chain, found {len(primaries)}")

        names = [c.name for c in chains]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate chain names in topology: {names}")

        for chain in chains:
            if not chain.endpoints:
                raise ValueError(f"No RPC endpoints configured for {chain.name}")
            unknown = [r for r in chain.routes if r not in names or r == chain.name]
            if unknown:
                raise ValueError(f"{chain.name}: invalid route destinations {unknown}")

        self._chains: dict[str, ChainDescriptor] = {
            c.name: c for c in primaries + [c for c in chains if not c.is_primary]
        }

    @classmethod
    def from_dict(cls, deployment: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> "ChainRegistry":
        """Build a registry from a parsed deployment record."""
        environ = os.environ if environ is None else environ
        chains: list[ChainDescriptor] = []

        for name, entry in deployment.items():
            if not isinstance(entry, Mapping) or "chainId" not in entry:
                # Non-chain metadata (timestamps, deployer, ...)
                continue

            chain_id = int(entry["chainId"])
            endpoints = tuple(
                Endpoint(url=url, chain_id=chain_id)
                for url in collect_endpoint_urls(name, entry, environ)
            )
            registry_address = entry.get("tokenAdminRegistry")

            chains.append(ChainDescriptor(
                name=name,
                chain_id=chain_id,
                chain_selector=int(entry["chainSelector"]),
                endpoints=endpoints,
                role=ChainRole.PRIMARY if entry.get("isPrimary") else ChainRole.SECONDARY,
                vault=_checksum(name, "vault", entry.get("vault")),
                wrapper=_checksum(name, "wrapper", entry.get("sherpaUSD")),
                pool=_checksum(name, "pool", entry.get("newCcipPool")),
                token_admin_registry=_checksum(name, "token admin registry", registry_address)
                if registry_address else None,
                routes=tuple(entry.get("routes", ())),
            ))

        return cls(chains)

    @classmethod
    def load(cls, path: str | Path, environ: Mapping[str, str] | None = None) -> "ChainRegistry":
        """Load the topology record from disk.

        Raises:
            FileNotFoundError: If the deployment file doesn't exist
            ValueError: If the record is invalid
        """
        deployment_path = Path(path)
        with deployment_path.open() as file:
            deployment: dict[str, Any] = json.load(file)

        registry = cls.from_dict(deployment, environ)
        logger.info(
            f"Loaded {len(registry)} chains from {deployment_path} "
            f"(primary: {registry.primary.name})"
        )
        return registry

    def __iter__(self) -> Iterator[ChainDescriptor]:
        return iter(self._chains.values())

    def __len__(self) -> int:
        return len(self._chains)

    def __contains__(self, name: object) -> bool:
        return name in self._chains

    def get(self, name: str) -> ChainDescriptor:
        try:
            return self._chains[name]
        except KeyError:
            raise ValueError(
                f"Unknown chain: {name}. Must be one of: {', '.join(self._chains)}"
            ) from None

    @property
    def names(self) -> list[str]:
        return list(self._chains)

    @property
    def primary(self) -> ChainDescriptor:
        return next(iter(self._chains.values()))

    def destinations(self, source: str) -> list[ChainDescriptor]:
        """Chains the source pool should be connected to (full mesh by default)."""
        chain = self.get(source)
        if chain.routes:
            return [self._chains[name] for name in self._chains if name in chain.routes]
        return [c for c in self._chains.values() if c.name != source]

    def routes(self) -> Iterator[tuple[ChainDescriptor, ChainDescriptor]]:
        """Every ordered (source, destination) pair that should be bridge-connected."""
        for source in self._chains.values():
            for destination in self.destinations(source.name):
                yield source, destination
