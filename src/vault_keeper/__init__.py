"""
Multi-chain vault keeper.

Synchronizes vault rounds across chains from quorum-verified reads and keeps
the bridge routes between the chains' pools configured.
"""

from .config import KeeperConfig, QuorumPolicy
from .errors import (
    AllEndpointsUnreachable,
    ConsensusNotReached,
    PartialRunHalted,
    RouteMisconfigured,
    TransactionFailed,
    VaultKeeperError,
    WriteConfirmationTimeout,
)
from .keeper import VaultKeeper
from .quorum import QuorumReader
from .registry import ChainRegistry
from .round_sync import RoundSyncController, compute_share_price
from .route_reconciler import RouteReconciler

__all__ = [
    "AllEndpointsUnreachable",
    "ChainRegistry",
    "ConsensusNotReached",
    "KeeperConfig",
    "PartialRunHalted",
    "QuorumPolicy",
    "QuorumReader",
    "RouteMisconfigured",
    "RouteReconciler",
    "RoundSyncController",
    "TransactionFailed",
    "VaultKeeper",
    "VaultKeeperError",
    "WriteConfirmationTimeout",
    "compute_share_price",
]
__version__ = "0.1.0"
