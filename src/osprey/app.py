# =============================================================================
# Osprey Command Line
# =============================================================================
# Entry point of the `osprey` command.
#
# Commands:
#   osprey sync ACCOUNT [--mailbox PATH] [--load-more] [--refresh]
#                               One sync pass, then exit
#   osprey push                 Keep push accounts current over IMAP IDLE and
#                               poll the others, until interrupted
#   osprey search ACCOUNT QUERY [--mailbox PATH] [--offset N]
#                               Search a mailbox on the server
#
# The app manages:
#   - Configuration loading
#   - Logging setup (log file under the XDG state directory plus stderr)
#   - Building and tearing down the SyncService
# =============================================================================

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from osprey import __app_name__, __version__
from osprey.config import Config, ConfigError, print_paths
from osprey.core import Account, MessagingError
from osprey.imap.folder import SearchParams
from osprey.service import SyncService

logger = logging.getLogger(__name__)

# How often the push daemon checks connectivity and due polls
DAEMON_TICK = 60  # seconds


def setup_logging(debug: bool = False) -> None:
    """Log to the state directory and to stderr."""
    log_file = Config.log_file_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stderr),
        ],
    )


# =============================================================================
# Commands
# =============================================================================

async def _find_account(service: SyncService, name: str) -> Account | None:
    account = await service.repo.get_account_by_name(name)
    if account is None:
        print(f"Unknown account: {name}", file=sys.stderr)
    return account


async def run_sync(service: SyncService, args: argparse.Namespace) -> int:
    account = await _find_account(service, args.account)
    if account is None:
        return 1

    orchestrator = service.orchestrator
    if args.mailbox is None:
        result = await orchestrator.sync_account(account.id, ui_refresh=args.refresh)
        for mailbox_result in result.mailboxes:
            _print_result(mailbox_result)
        return 0 if result.success else 1

    try:
        await service.folders.sync_folders(account)
    except MessagingError as e:
        print(f"Could not list folders of {account.name}: {e}", file=sys.stderr)
        return 1
    mailbox = await service.repo.get_mailbox_by_server_id(account.id, args.mailbox)
    if mailbox is None:
        print(f"Unknown mailbox: {args.mailbox}", file=sys.stderr)
        return 1
    result = await orchestrator.sync_mailbox(
        mailbox.id, ui_refresh=args.refresh, delta_message_count=1 if args.load_more else 0
    )
    _print_result(result)
    return 0 if result.success else 1


def _print_result(result) -> None:
    if result.success and result.reconcile is not None:
        r = result.reconcile
        print(
            f"mailbox {result.mailbox_id}: {r.new_messages} new, "
            f"{r.updated_messages} updated, {r.deleted_messages} deleted"
        )
    elif result.success:
        print(f"mailbox {result.mailbox_id}: nothing to do")
    else:
        print(f"mailbox {result.mailbox_id}: {result.status.name} {result.error or ''}")


async def run_search(service: SyncService, args: argparse.Namespace) -> int:
    account = await _find_account(service, args.account)
    if account is None:
        return 1

    mailbox = await service.repo.get_mailbox_by_server_id(account.id, args.mailbox)
    if mailbox is None:
        print(f"Unknown mailbox: {args.mailbox}", file=sys.stderr)
        return 1
    dest = await service.get_search_mailbox(account)

    total = await service.searcher.search_mailbox(
        account.id, SearchParams(args.query, offset=args.offset), mailbox.id, dest.id
    )
    print(f"{total} hits")
    for message in await service.repo.get_messages(dest.id):
        print(f"  [{message.server_id}] {message.sender}: {message.subject}")
    return 0


async def run_push(service: SyncService) -> int:
    accounts = [a for a in await service.repo.get_all_accounts() if a.enabled]
    if not accounts:
        print("No accounts configured", file=sys.stderr)
        return 1

    for account in accounts:
        await service.orchestrator.sync_account(account.id)
    await service.start_push()
    logger.info(f"Push running for {len(accounts)} accounts")

    # account_id -> daemon ticks left until the next poll
    polls = {a.id: a.sync_interval for a in accounts if a.sync_interval > 0}
    probe_host = accounts[0]
    while True:
        await asyncio.sleep(DAEMON_TICK)
        await service.connectivity.probe(probe_host.imap_host, probe_host.imap_port)
        for account in accounts:
            if account.id not in polls:
                continue
            polls[account.id] -= 1
            if polls[account.id] <= 0:
                polls[account.id] = account.sync_interval
                service.pool.spawn(
                    service.orchestrator.sync_account(account.id),
                    name=f"poll-{account.name}",
                )


async def run(config: Config, args: argparse.Namespace) -> int:
    service = SyncService(config)
    await service.start()
    try:
        if args.command == "sync":
            return await run_sync(service, args)
        if args.command == "search":
            return await run_search(service, args)
        return await run_push(service)
    finally:
        await service.close()


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Osprey: IMAP mailbox synchronization with IDLE push",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    commands = parser.add_subparsers(dest="command")

    sync = commands.add_parser("sync", help="Run one sync pass")
    sync.add_argument("account", help="Account name from the config file")
    sync.add_argument("--mailbox", help="Only sync this folder (server path)")
    sync.add_argument("--load-more", action="store_true", help="Fetch older messages")
    sync.add_argument("--refresh", action="store_true", help="Force a full sync")

    commands.add_parser("push", help="Run the push daemon until interrupted")

    search = commands.add_parser("search", help="Search a folder on the server")
    search.add_argument("account", help="Account name from the config file")
    search.add_argument("query", help="Text to search for")
    search.add_argument("--mailbox", default="INBOX", help="Folder to search (default: INBOX)")
    search.add_argument("--offset", type=int, default=0, help="Hits to skip (load more)")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Osprey.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration
        4. Runs the requested command

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    # Handle --paths flag
    if args.paths:
        print_paths()
        return 0

    if args.command is None:
        print("Nothing to do. Try: osprey sync ACCOUNT, osprey push", file=sys.stderr)
        return 2

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    setup_logging(args.debug)

    try:
        return asyncio.run(run(config, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
