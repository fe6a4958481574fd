#!/usr/bin/env python3
"""Entry point for the multi-chain vault keeper.

Runs one operator command against every chain of the deployment, either
inside ROFL (operator key provisioned by the ROFL daemon) or locally with
a private key from the environment.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from vault_keeper.errors import VaultKeeperError
from vault_keeper.keeper import VaultKeeper

# Commands that never write
READ_ONLY_COMMANDS = {"preflight", "status"}


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Multi-chain Vault Keeper - synchronize rounds and bridge routes across chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  DEPLOYMENT_FILE          - Chain topology record (default: deployments/deployment.json)
  RUN_STATE_PATH           - Round sync run-log (default: deployments/run-state.json)
  <CHAIN>_RPC_URL[_2|_3]   - RPC endpoints per chain (or the record's rpcEnvVar)
  QUORUM_MIN_CONSENSUS     - Matching responses required (default: 2)
  QUORUM_TIMEOUT           - Per-endpoint timeout in seconds (default: 10)
  QUORUM_REQUIRE_MAJORITY  - Also require a majority of responses (default: false)
  CONFIRMATION_TIMEOUT     - Seconds to wait for a write to verify (default: 180)
  RETRY_COUNT              - Attempts per verified read (default: 3)
  LOCAL_PRIVATE_KEY        - Private key for local mode (required with --local)
  ROFL_KEY_ID              - ROFL key id of the operator key (default: vault-keeper)
  LOG_LEVEL                - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--local",
        action="store_true",
        default=False,
        help="Run in local mode without ROFL utilities (sign with LOCAL_PRIVATE_KEY)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync-round", help="Roll every chain to the next round")
    sync.add_argument("--yield", dest="yield_amount", type=int, default=0,
                      help="Signed yield booked in the closing round, in token base units")
    sync.add_argument("--resume", action="store_true", help="Resume the incomplete run")

    reconcile = commands.add_parser("reconcile-routes", help="Verify and repair bridge routes")
    reconcile.add_argument("--dry-run", action="store_true", help="Report without writing")

    configure = commands.add_parser("configure-routes", help="Add bridge routes that are not enabled yet")
    configure.add_argument("--dry-run", action="store_true", help="Report without writing")

    commands.add_parser("preflight", help="Read-only launch readiness checks")

    deposits = commands.add_parser("enable-deposits", help="Open deposits on every chain after pre-flight passes")
    deposits.add_argument("--force", action="store_true",
                          help="Enable deposits even if the pre-flight check found issues")

    unpause = commands.add_parser("unpause", help="Unpause every chain")
    unpause.add_argument("--force", action="store_true",
                         help="Unpause even if the recorded run has not settled withdrawals")

    commands.add_parser("status", help="Verified round, epoch and pause state of every chain")
    return parser


async def run_command(keeper: VaultKeeper, args: argparse.Namespace) -> int:
    """Run the selected command; returns the process exit code."""
    match args.command:
        case "sync-round":
            state = await keeper.sync_round(args.yield_amount, resume=args.resume)
            print(json.dumps(state.to_dict(), indent=2))
            return 0
        case "reconcile-routes":
            report = await keeper.reconcile_routes(dry_run=args.dry_run)
            print(json.dumps([s.to_dict() for s in report.after], indent=2))
            return 0 if report.healthy else 3
        case "configure-routes":
            report = await keeper.configure_routes(dry_run=args.dry_run)
            print(json.dumps([s.to_dict() for s in report.after], indent=2))
            return 0 if report.healthy else 3
        case "preflight":
            preflight = await keeper.preflight()
            print(json.dumps(preflight.to_dict(), indent=2))
            return 0 if preflight.ok else 3
        case "enable-deposits":
            preflight, deposits = await keeper.enable_deposits(force=args.force)
            print(json.dumps({"preflight": preflight.to_dict(), "deposits": deposits}, indent=2))
            return 0 if deposits is not None else 3
        case "unpause":
            print(json.dumps(await keeper.unpause(force=args.force), indent=2))
            return 0
        case "status":
            print(json.dumps(await keeper.status(), indent=2))
            return 0
        case _:
            raise ValueError(f"Unknown command: {args.command}")


async def main() -> None:
    """Main entry point for the vault keeper.

    Raises:
        SystemExit: With 1 on configuration errors, 2 on keeper errors,
            3 when a report found problems
    """
    load_dotenv()
    args: argparse.Namespace = build_parser().parse_args()

    # Set up logging with specified level
    setup_logging(args.log_level)

    if mode_msg := ("(LOCAL MODE)" if args.local else ""):
        logger.info(f"=== Vault Keeper: {args.command} {mode_msg} ===")
    else:
        logger.info(f"=== Vault Keeper: {args.command} ===")

    read_only = args.command in READ_ONLY_COMMANDS or getattr(args, "dry_run", False)

    try:
        keeper: VaultKeeper = await VaultKeeper.from_env(local_mode=args.local, signer=not read_only)
        exit_code = await run_command(keeper, args)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - DEPLOYMENT_FILE: Chain topology record")
        logger.error("  - <CHAIN>_RPC_URL: At least one RPC endpoint per chain")
        if args.local:
            logger.error("  - LOCAL_PRIVATE_KEY: Required for local mode")
        sys.exit(1)

    except VaultKeeperError as e:
        logger.error(f"✗ {type(e).__name__}: {e}")
        print(json.dumps(e.to_dict(), indent=2, default=str))
        sys.exit(2)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, stopping; resume with 'sync-round --resume'")
        sys.exit(130)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    # Run the main async function
    asyncio.run(main())
