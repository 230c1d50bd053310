#!/usr/bin/env python3
"""
Inbox Rules Engine - command line entry point
"""
import argparse
import hmac
import sys
import time
from typing import List, Optional

import structlog

from .config import ConfigError, Settings, load_settings
from .database.connection import get_db_session, init_db
from .database.repository import Repository
from .logging_config import configure_logging
from .providers.errors import ProviderError
from .providers.factory import create_provider
from .rules.loader import load_rules_file, sync_rules
from .rules.schema import RuleValidationError
from .services import build_engine, build_scheduler

logger = structlog.get_logger()

BATCH_SIZE = 50


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description='Inbox Rules Engine')
    parser.add_argument('--env-file', help='Path to a .env file')
    commands = parser.add_subparsers(dest='command', required=True)

    load = commands.add_parser('load-rules', help='Validate the rules file and sync it to the database')
    load.add_argument('--file', help='Rules file (defaults to RULES_FILE)')

    process = commands.add_parser('process', help='Run the rules over recent messages')
    process.add_argument('--account', help='Account email (defaults to the only account)')
    process.add_argument('--max-emails', type=int, help='Maximum number of emails to process')
    process.add_argument('--days', type=int, help='Process emails from last N days')
    process.add_argument('--rerun', action='store_true', help='Re-run messages that were already processed')

    sweep = commands.add_parser('sweep', help='Execute due scheduled actions')
    sweep.add_argument('--secret', help='Must match CRON_SECRET when it is set')
    sweep.add_argument('--loop', action='store_true', help='Keep sweeping every SWEEP_INTERVAL_SECONDS')

    for name, help_text in (('cancel', 'Cancel a pending scheduled action'),
                            ('retry', 'Retry a failed scheduled action')):
        command = commands.add_parser(name, help=help_text)
        command.add_argument('scheduled_action_id', type=int)

    for name, help_text in (('approve', 'Run a rule that is waiting for approval'),
                            ('reject', 'Skip a rule that is waiting for approval')):
        command = commands.add_parser(name, help=help_text)
        command.add_argument('executed_rule_id', type=int)
        command.add_argument('--account', help='Account email (defaults to the only account)')

    serve = commands.add_parser('serve', help='Serve the HTTP API')
    serve.add_argument('--host', default='127.0.0.1')
    serve.add_argument('--port', type=int, default=8000)
    return parser.parse_args(argv)


def resolve_account(repo: Repository, email: Optional[str]):
    if email:
        account = repo.get_account_by_email(email)
        if account is None:
            raise LookupError(f"Unknown account {email}; run load-rules first")
        return account
    accounts = repo.list_accounts()
    if len(accounts) != 1:
        raise LookupError("Pass --account; there is not exactly one account")
    return accounts[0]


def load_rules(settings: Settings, path: Optional[str] = None) -> int:
    rules_file = path or settings.rules_file
    config = load_rules_file(rules_file)
    with get_db_session() as db:
        sync_rules(db, config)
    logger.info("Loaded rules", file=rules_file, count=len(config.rules))
    return 0


def process(settings: Settings, args: argparse.Namespace) -> int:
    with get_db_session() as db:
        repo = Repository(db)
        account = resolve_account(repo, args.account)
        provider = create_provider(account, settings)
        engine = build_engine(repo, provider, settings)

        query = None
        if args.days:
            if provider.name == 'google':
                query = f"newer_than:{args.days}d"
            else:
                logger.warning("--days is only supported for Gmail accounts")
        logger.info("Fetching messages...", account=account.email, max_emails=args.max_emails, days=args.days)
        refs = provider.list_all_messages(query=query, max_total=args.max_emails)
        logger.info(f"Found {len(refs)} messages to process")

        totals = {'processed': 0, 'skipped': 0, 'errors': 0}
        for i in range(0, len(refs), BATCH_SIZE):
            batch = refs[i:i + BATCH_SIZE]
            logger.info(f"Processing batch {i // BATCH_SIZE + 1} ({len(batch)} messages)")
            result = engine.process_batch(account, [ref.id for ref in batch], rerun=args.rerun)
            totals['processed'] += result.processed
            totals['skipped'] += result.skipped
            totals['errors'] += result.errors

        logger.info("Email processing completed", **totals)
    return 0


def sweep(settings: Settings, args: argparse.Namespace) -> int:
    if settings.cron_secret and not hmac.compare_digest(args.secret or '', settings.cron_secret):
        logger.error("Sweep secret does not match CRON_SECRET")
        return 1
    while True:
        with get_db_session() as db:
            result = build_scheduler(Repository(db), settings).sweep()
        logger.info("Sweep completed", **result.as_dict())
        if not args.loop:
            return 0
        time.sleep(settings.sweep_interval_seconds)


def transition(settings: Settings, args: argparse.Namespace) -> int:
    with get_db_session() as db:
        scheduler = build_scheduler(Repository(db), settings)
        operation = scheduler.cancel if args.command == 'cancel' else scheduler.retry
        if scheduler.repo.get_scheduled_action(args.scheduled_action_id) is None:
            logger.error("Scheduled action not found", scheduled_action_id=args.scheduled_action_id)
            return 1
        if not operation(args.scheduled_action_id):
            logger.error(f"Could not {args.command} scheduled action in its current state",
                         scheduled_action_id=args.scheduled_action_id)
            return 1
    logger.info(f"Scheduled action {args.command} succeeded", scheduled_action_id=args.scheduled_action_id)
    return 0


def review(settings: Settings, args: argparse.Namespace) -> int:
    with get_db_session() as db:
        repo = Repository(db)
        account = resolve_account(repo, args.account)
        engine = build_engine(repo, create_provider(account, settings), settings)
        if args.command == 'approve':
            executed_rule = engine.approve_executed_rule(account, args.executed_rule_id)
        else:
            executed_rule = engine.reject_executed_rule(args.executed_rule_id)
        logger.info(f"Executed rule {args.command}d", executed_rule_id=executed_rule.id,
                    status=executed_rule.status)
    return 0


def serve(settings: Settings, args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app
    uvicorn.run(create_app(settings), host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the Inbox Rules Engine"""
    args = parse_args(argv)
    try:
        settings = load_settings(args.env_file)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    init_db(settings.database_url)

    try:
        if args.command == 'load-rules':
            return load_rules(settings, args.file)
        if args.command == 'process':
            return process(settings, args)
        if args.command == 'sweep':
            return sweep(settings, args)
        if args.command in ('cancel', 'retry'):
            return transition(settings, args)
        if args.command in ('approve', 'reject'):
            return review(settings, args)
        return serve(settings, args)
    except (RuleValidationError, LookupError, ValueError, OSError, ProviderError) as e:
        logger.error("Command failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == '__main__':
    sys.exit(main())
