"""Ledgerboard Entry Point.

Command-line entry point for a ledger-backed board. It handles
configuration, logging, the discovery record lookup and runs a board
session against the in-memory ledger.
"""

import sys
import argparse
import logging
import asyncio
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import dns.asyncresolver
import dns.exception
import dns.resolver

from config.config_manager import ConfigManager, get_config_manager
from core.crypto_manager import BoardRecord, CryptoManager
from core.db_manager import DBManager
from core.error_handler import BoardError, get_error_handler
from core.fee_engine import DustChangePolicy, FeeEngine
from core.transport import MemoryLedger
from logic.board_manager import BoardSession
from logic.thread_manager import Post, flatten


DEMO_FUNDS = 100_000_000


def setup_logging(log_level: str, log_path: Path):
    """
    Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_path: Path to log file
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_path, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized at level {log_level}")
    logger.info(f"Log file: {log_path}")


async def resolve_txt(domain: str) -> List[List[str]]:
    """
    Look up the TXT records of a domain.

    Args:
        domain: Domain name

    Returns:
        One list of strings per record; empty if the domain has none
    """
    try:
        answer = await dns.asyncresolver.resolve(domain, 'TXT')
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        return []
    except dns.exception.DNSException as e:
        logging.getLogger(__name__).warning(f"TXT lookup for {domain} failed: {e}")
        return []

    return [
        [part.decode('utf-8', errors='replace') for part in rdata.strings]
        for rdata in answer
    ]


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description='Ledgerboard - Bulletin board stored in ledger transactions',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the board of a domain on an offline ledger
  python main.py example.com --passphrase secret --offline

  # Post as the owner, then reply by hash prefix
  python main.py example.com --passphrase secret --offline --post "# Hello"
  python main.py example.com --passphrase secret --offline --post "Hi" --reply-to 1a2b
        """
    )

    parser.add_argument('domain', nargs='?', default=None, help='Board domain (default: from config)')
    parser.add_argument('--passphrase', required=True, help='Passphrase the local key is derived from')
    parser.add_argument('--post', action='append', default=[], metavar='CONTENT', help='Post content (repeatable)')
    parser.add_argument('--reply-to', default=None, metavar='HASH', help='Hash or prefix of the post to answer')
    parser.add_argument('--payment', type=int, default=None, help='Extra payment to the owner')
    parser.add_argument(
        '--offline',
        action='store_true',
        help='Skip DNS and publish a local discovery record for this key'
    )
    parser.add_argument('--config', type=str, default=None, metavar='PATH', help='Path to configuration file')
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Override logging level from config'
    )

    return parser.parse_args(argv)


def format_post(post: Post, depth: int = 0) -> str:
    indent = "  " * depth
    return f"{indent}{post.hash[:8]} {post.timestamp:%Y-%m-%d %H:%M} {post.author[:16]}: {post.title}"


def print_threads(threads: List[Post]) -> None:
    def walk(post: Post, depth: int):
        print(format_post(post, depth))
        for reply in post.replies:
            walk(reply, depth + 1)

    for root in threads:
        walk(root, 0)


async def run_demo(args: argparse.Namespace, config_manager: ConfigManager) -> int:
    """
    Run one board session on an in-memory ledger.

    Returns:
        Process exit code
    """
    logger = logging.getLogger(__name__)

    board_config = config_manager.get_board_config()
    ledger_config = config_manager.get_ledger_config()
    sync_config = config_manager.get_sync_config()
    storage_config = config_manager.get_storage_config()

    domain = args.domain or board_config.domain
    if not domain:
        logger.error("No board domain given")
        return 2

    crypto_manager = CryptoManager()
    keypair = crypto_manager.derive_keypair(args.passphrase, domain)

    ledger = MemoryLedger()
    ledger.fund(keypair.public_key, DEMO_FUNDS)

    if args.offline:
        record = BoardRecord.create(keypair.public_key).format()

        async def resolve_records(_domain: str):
            return [record]
    else:
        resolve_records = resolve_txt

    db = DBManager(config_manager.expand_path(storage_config.db_path))
    db.initialize_database()

    error_handler = get_error_handler()
    error_handler.set_notification_callback(
        lambda title, content, severity: print(f"[{severity.value}] {title}: {content}")
    )

    session = BoardSession(
        domain=domain,
        transport=ledger,
        resolve_records=resolve_records,
        db=db,
        fee_engine=FeeEngine(
            dust=ledger_config.dust,
            fee_rate=ledger_config.fee_rate,
            change_policy=DustChangePolicy(board_config.change_policy),
            consolidate_owner_funds=board_config.consolidate_owner_funds
        ),
        keypair=keypair,
        crypto_manager=crypto_manager,
        error_handler=error_handler,
        scan_delta=timedelta(days=sync_config.scan_delta_days),
        pass_delay=sync_config.pass_delay
    )
    session.on_record_needed = lambda text: print(f"Add this TXT record to {domain}: {text}")
    session.on_post = lambda post: logger.info(f"New post {post.hash[:8]}: {post.title}")

    payment = board_config.author_payment if args.payment is None else args.payment
    exit_code = 0
    try:
        resolution = await session.start()
        logger.info(f"Joined {domain} as {'owner' if resolution.is_owner else 'guest'}")
        await session.wait_ready()

        for content in args.post:
            try:
                accepted, txid = await session.post(content, reply_to=args.reply_to, author_payment=payment)
            except BoardError as e:
                print(f"Post failed: {e}")
                exit_code = 1
                continue
            print(f"{'Posted' if accepted else 'Rejected'} {txid}")
            if not accepted:
                exit_code = 1

        threads = session.list()
        print_threads(threads)
        logger.info(f"{len(flatten(threads))} posts in {len(threads)} threads")
    finally:
        await session.close()
        db.close()

    return exit_code


def main(argv: Optional[List[str]] = None):
    """Main application entry point."""
    args = parse_arguments(argv)

    config_path = Path(args.config) if args.config else None
    try:
        config_manager = get_config_manager(config_path)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    logging_config = config_manager.get_logging_config()
    setup_logging(
        args.log_level or logging_config.level,
        config_manager.expand_path(logging_config.log_path)
    )

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("Starting Ledgerboard")

    exit_code = asyncio.run(run_demo(args, config_manager))

    logger.info("Ledgerboard shutdown complete")
    logger.info("=" * 60)
    sys.exit(exit_code)


if __name__ == '__main__':
    main()
