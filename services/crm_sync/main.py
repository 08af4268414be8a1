"""
Main CLI module for the CRM sync service.

Examples:
  python -m services.crm_sync check
  python -m services.crm_sync find --name "Jane Doe" --email jane@example.org
  python -m services.crm_sync sync 42 --full
"""

import argparse
import json
import sys
from typing import List, Optional

from . import __version__
from .client import RemoteClient
from .errors import ConfigurationError, CrmSyncError
from .log_config import configure_logging, get_logger
from .matcher import ConstituentMatcher
from .settings import settings
from .store import SqlAttributeStore
from .sync import ConstituentSync

logger = get_logger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_check(config, client: RemoteClient, args) -> int:
    """Connection test: one uncached read of the constituent list."""
    response = client.get("constituents", {"limit": 1}, use_cache=False)
    _print_json({
        "success": response.success,
        "http_status": response.http_status,
        "error": response.error,
    })
    if response.success:
        logger.info("Connection check passed", http_status=response.http_status)
        return 0
    logger.error("Connection check failed", http_status=response.http_status, error=response.error)
    return 1


def cmd_find(config, client: RemoteClient, args) -> int:
    matcher = ConstituentMatcher.from_settings(client, config, logger=logger)
    match = matcher.find_constituent(args.name, args.email or [])
    if match is None:
        _print_json({"found": False})
        return 0
    _print_json({
        "found": True,
        "id": match.id,
        "matched_email": match.matched_email,
        "method": match.method,
    })
    return 0


def cmd_sync(config, client: RemoteClient, args) -> int:
    if not config.db_dsn:
        raise ConfigurationError("DB_DSN is required for sync")

    store = SqlAttributeStore.from_dsn(config.db_dsn)
    syncer = ConstituentSync.from_settings(config, store, client=client, logger=logger)
    outcome = syncer.sync_entity(args.entity_id, full_resync=args.full)
    _print_json({
        "entity_id": outcome.entity_id,
        "constituent_id": outcome.constituent_id,
        "method": outcome.method,
        "created": outcome.created,
        "actions": outcome.actions,
    })
    return 0


def cmd_rate_status(config, client: RemoteClient, args) -> int:
    _print_json(client.rate_budget.status())
    return 0


COMMANDS = {
    "check": cmd_check,
    "find": cmd_find,
    "sync": cmd_sync,
    "rate-status": cmd_rate_status,
}


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="crm-sync",
        description="Reconcile local entities with CRM constituents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  crm-sync check
  crm-sync find --name "Jane Doe" --email jane@example.org --email jane+news@example.org
  crm-sync sync 42 --full
  crm-sync rate-status
        """
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration"
    )

    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Override log format from configuration"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"crm-sync {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Test the API connection")

    find = subparsers.add_parser("find", help="Find a constituent by name and email")
    find.add_argument("--name", required=True, help="Full name")
    find.add_argument("--email", action="append", help="Email address (repeatable)")

    sync = subparsers.add_parser("sync", help="Sync one local entity")
    sync.add_argument("entity_id", help="Local entity id")
    sync.add_argument("--full", action="store_true", help="Replace every contact record (full resync)")

    subparsers.add_parser("rate-status", help="Show rate budget usage")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI application.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level, args.log_format)

    config = settings()
    logger.info(
        "Service starting",
        service_name=config.service_name,
        version=__version__,
        environment=config.environment,
        command=args.command,
    )

    try:
        with RemoteClient(config, logger=logger) as client:
            return COMMANDS[args.command](config, client, args)

    except KeyboardInterrupt:
        logger.warning("Service interrupted by user")
        return 1
    except CrmSyncError as e:
        logger.error(
            "Command failed",
            command=args.command,
            error=str(e),
            error_type=type(e).__name__,
            retryable=e.retryable,
        )
        return 1


def cli_main():
    """Entry point for setuptools console scripts."""
    sys.exit(main())


if __name__ == "__main__":
    sys.exit(main())
