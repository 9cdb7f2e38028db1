#!/usr/bin/env python3
"""
Studio Inbox command line.

Usage:
    # Create accounts/folders from config/accounts.yaml and rules from config/inbox_rules.yaml
    python3 sync_inbox.py seed

    # Sync every account once (or a single one)
    python3 sync_inbox.py sync
    python3 sync_inbox.py sync --account studio@example.com

    # Run the cadence scheduler (also sends due scheduled messages)
    python3 sync_inbox.py schedule
    python3 sync_inbox.py schedule --once

    # Start the HTTP API
    python3 sync_inbox.py serve --port 8000

Options:
    --verbose           Show debug logging
    --quiet             Only warnings and errors
"""

import asyncio
import sys
import argparse
import logging
from dotenv import load_dotenv

# Load environment variables FIRST (before any imports that need them)
load_dotenv()

from studio_inbox.core.config import get_settings
from studio_inbox.core.database import create_tables, get_session_factory, init_db
from studio_inbox.core.database.repository import InboxRepository
from studio_inbox.core.paths import get_config_path
from studio_inbox.core.accounts.manager import AccountManager
from studio_inbox.core.email.errors import InboxError
from studio_inbox.core.email.imap_transport import ImapTransport
from studio_inbox.core.email.rule_engine import load_rules_from_yaml, seed_rules
from studio_inbox.core.email.scheduler import SyncScheduler
from studio_inbox.core.email.service import InboxService
from studio_inbox.core.email.sync_engine import SyncEngine

logger = logging.getLogger("sync_inbox")


def setup_logging(verbose: bool = False, quiet: bool = False):
    settings = get_settings()
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=settings.log_format)
    # imapclient logs every command at DEBUG
    logging.getLogger("imapclient").setLevel(logging.WARNING)


def cmd_seed(args) -> int:
    session_factory = get_session_factory()
    db = session_factory()
    try:
        manager = AccountManager(args.accounts, strict=not args.allow_missing_credentials)
        stats = manager.seed(db, user_id=args.user)
        print(f"Accounts: {stats['created']} created, {stats['updated']} updated")

        rules_path = args.rules or get_config_path("inbox_rules.yaml")
        if rules_path:
            rule_stats = seed_rules(db, load_rules_from_yaml(rules_path), user_id=args.user)
            print(f"Rules: {rule_stats['created']} created, {rule_stats['updated']} updated, "
                  f"{rule_stats['skipped']} skipped")
        else:
            print("No inbox_rules.yaml found, skipping rules")
    finally:
        db.close()
    return 0


async def cmd_sync(args) -> int:
    session_factory = get_session_factory()
    db = session_factory()
    try:
        accounts = InboxRepository(db).list_accounts(args.user)
        if args.account:
            accounts = [a for a in accounts if a.email_address.lower() == args.account.lower()]
            if not accounts:
                print(f"Unknown account: {args.account}")
                return 1
        account_ids = [str(a.id) for a in accounts]
    finally:
        db.close()

    engine = SyncEngine(session_factory, ImapTransport())
    results = await engine.sync_accounts(account_ids)

    exit_code = 0
    for result in results:
        new = len(result.new_message_ids)
        print(f"{result.account_id}: {result.status} ({new} new)")
        for outcome in result.folders:
            line = f"  {outcome.folder_name:<24} {outcome.status:<8} {outcome.fetched} fetched, {outcome.inserted} new"
            if outcome.error:
                line += f"  [{outcome.error}]"
            print(line)
        if result.status in ("error", "partial"):
            exit_code = 2
    return exit_code


async def cmd_schedule(args) -> int:
    session_factory = get_session_factory()
    transport = ImapTransport()
    engine = SyncEngine(session_factory, transport)
    scheduler = SyncScheduler(engine, session_factory, poll_interval=args.interval)

    async def send_due():
        db = session_factory()
        try:
            sent, failed = await InboxService(db, transport=transport, user_id=args.user).dispatch_scheduled()
            if sent or failed:
                logger.info(f"Scheduled messages: {len(sent)} sent, {len(failed)} failed")
        finally:
            db.close()

    if args.once:
        results = await scheduler.run_once()
        await send_due()
        print(f"Synced {len(results)} due accounts")
        return 0

    async def send_loop():
        while True:
            try:
                await send_due()
            except InboxError as e:
                logger.error(f"Sending scheduled messages failed: {e.message}")
            await asyncio.sleep(args.interval)

    sender = asyncio.create_task(send_loop())
    try:
        await scheduler.run_forever()
    finally:
        sender.cancel()
    return 0


def cmd_serve(args) -> int:
    import uvicorn
    uvicorn.run("studio_inbox.api.main:app", host=args.host, port=args.port or get_settings().api_port)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description='Studio Inbox: multi-account sync and API')
    parser.add_argument('--verbose', action='store_true', help='Show debug logging')
    parser.add_argument('--quiet', action='store_true', help='Only warnings and errors')
    parser.add_argument('--database-url', type=str, default=None, help='Override DATABASE_URL')
    parser.add_argument('--user', type=str, default='default', help='Owner of accounts and rules')
    sub = parser.add_subparsers(dest='command', required=True)

    seed = sub.add_parser('seed', help='Create accounts, folders and rules from YAML config')
    seed.add_argument('--accounts', type=str, default=None, help='Path to accounts.yaml')
    seed.add_argument('--rules', type=str, default=None, help='Path to inbox_rules.yaml')
    seed.add_argument('--allow-missing-credentials', action='store_true',
                      help='Seed accounts even if their credential env var is unset')

    sync = sub.add_parser('sync', help='Run one sync pass')
    sync.add_argument('--account', type=str, default=None, help='Only this account (email address)')

    schedule = sub.add_parser('schedule', help='Sync accounts on their cadence')
    schedule.add_argument('--once', action='store_true', help='Sync due accounts once and exit')
    schedule.add_argument('--interval', type=float, default=30.0, help='Seconds between checks')

    serve = sub.add_parser('serve', help='Start the HTTP API')
    serve.add_argument('--host', type=str, default='0.0.0.0')
    serve.add_argument('--port', type=int, default=None)

    args = parser.parse_args()
    setup_logging(args.verbose, args.quiet)

    if args.command == 'serve':
        return cmd_serve(args)

    try:
        init_db(args.database_url)
        create_tables()
        if args.command == 'seed':
            return cmd_seed(args)
        if args.command == 'sync':
            return asyncio.run(cmd_sync(args))
        if args.command == 'schedule':
            return asyncio.run(cmd_schedule(args))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1
    except (InboxError, FileNotFoundError) as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
