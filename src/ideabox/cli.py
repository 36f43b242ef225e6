"""Command-line interface for IdeaBox.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import timezone
from pathlib import Path
from typing import Any

import structlog

from ideabox import __version__
from ideabox.ai import AnalysisService
from ideabox.config import Settings, get_settings
from ideabox.exceptions import IdeaBoxError
from ideabox.gmail.client import GmailClient
from ideabox.models import GmailAccount, SyncConfig, SyncReport
from ideabox.storage import SQLiteMessageStore
from ideabox.sync import SyncOrchestrator

logger = structlog.get_logger()

DEFAULT_USER = "local"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ideabox", description="IdeaBox email intelligence")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database (default: settings database_path)",
    )
    parser.add_argument("--user", default=DEFAULT_USER, help="User ID that owns the accounts")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Sync connected Gmail accounts")
    sync_parser.add_argument("--account", default=None, help="Only sync this account ID")
    sync_parser.add_argument(
        "--max-results",
        type=int,
        default=None,
        help="Message IDs to list per account (default: settings sync_max_results)",
    )
    sync_parser.add_argument(
        "--query",
        default=None,
        help="Extra Gmail search query (same syntax as Gmail search box)",
    )
    sync_parser.add_argument("--full", action="store_true", help="Record the run as a full sync")
    sync_parser.add_argument(
        "--no-analysis",
        action="store_true",
        help="Skip AI analysis of newly stored messages",
    )
    sync_parser.add_argument(
        "--analysis-max",
        type=int,
        default=None,
        help="Maximum messages to analyze afterwards (default: settings analysis_max_emails)",
    )

    analyze_parser = subparsers.add_parser("analyze", help="Analyze stored, unanalyzed messages")
    analyze_parser.add_argument("--limit", type=int, default=None, help="Maximum messages to analyze")

    show_parser = subparsers.add_parser("show", help="Show a stored message with its analysis")
    show_parser.add_argument("message_id", type=int, help="Stored message ID")

    runs_parser = subparsers.add_parser("runs", help="Show recent sync runs")
    runs_parser.add_argument("--limit", type=int, default=20, help="Max runs to show")

    accounts_parser = subparsers.add_parser("accounts", help="Manage connected Gmail accounts")
    accounts_sub = accounts_parser.add_subparsers(dest="accounts_command", required=True)

    list_parser = accounts_sub.add_parser("list", help="List connected accounts")
    list_parser.add_argument("--all", action="store_true", help="Include disabled accounts")

    connect_parser = accounts_sub.add_parser("connect", help="Connect a Gmail account via OAuth")
    connect_parser.add_argument(
        "--credentials",
        type=Path,
        default=None,
        help="OAuth client secrets file (default: settings gmail_credentials_path)",
    )

    return parser


def _open_store(args: argparse.Namespace, settings: Settings) -> SQLiteMessageStore:
    store = SQLiteMessageStore(args.db or settings.database_path)
    store.initialize()
    return store


def _print_report(report: SyncReport) -> None:
    for entry in report.results:
        result = entry.result
        status = "OK" if result.success else "FAILED"
        print(
            f"{status}\t{entry.email}\tfetched={result.messages_fetched} "
            f"created={result.messages_created} skipped={result.messages_skipped} "
            f"failed={result.messages_failed}"
        )
        for failure in result.errors[:5]:
            print(f"  - {failure.message_id}: {failure.error}")

    totals = report.totals
    print(
        f"\nSynced {totals.accounts_synced}/{len(report.results)} accounts: "
        f"{totals.total_created} new, {totals.total_skipped} skipped, "
        f"{totals.total_failed} failed in {report.duration_ms} ms"
    )
    if report.analysis is not None:
        analysis = report.analysis
        if analysis.error:
            print(f"Analysis failed: {analysis.error}")
        else:
            print(
                f"Analyzed {analysis.success_count} messages "
                f"({analysis.failure_count} failed, ${analysis.estimated_cost:.4f})"
            )


async def _cmd_sync(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = _open_store(args, settings)

    config = SyncConfig(
        max_results=args.max_results or settings.sync_max_results,
        query=args.query,
        full_sync=args.full,
        run_analysis=not args.no_analysis,
        analysis_max_emails=args.analysis_max or settings.analysis_max_emails,
    )
    analysis_service = None if args.no_analysis else AnalysisService(store, settings=settings)
    orchestrator = SyncOrchestrator(store, settings, analysis_service=analysis_service)

    try:
        report = await asyncio.wait_for(
            orchestrator.sync_user(args.user, config, account_id=args.account),
            timeout=settings.sync_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error("sync_timed_out", timeout_seconds=settings.sync_timeout_seconds)
        print(f"Sync timed out after {settings.sync_timeout_seconds:.0f}s", file=sys.stderr)
        return 1

    if not report.results:
        print(f"No enabled accounts for user {args.user!r}. Run 'ideabox accounts connect' first.")
        return 0

    _print_report(report)
    return 0 if report.totals.success else 1


async def _cmd_analyze(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = _open_store(args, settings)

    summary = await AnalysisService(store, settings=settings).run(args.user, args.limit)
    print(
        f"Analyzed {summary.success_count} messages ({summary.failure_count} failed), "
        f"{summary.actions_created} actions, {summary.tokens_used} tokens, "
        f"${summary.estimated_cost:.4f}"
    )
    for category, count in sorted(summary.categorized.items()):
        print(f"- {category}: {count}")
    total_cost = await store.total_api_cost(args.user)
    print(f"Total API spend: ${total_cost:.4f}")
    return 0 if summary.failure_count == 0 else 1


async def _cmd_show(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = _open_store(args, settings)

    row = await store.get_message(args.message_id)
    if row is None or row["user_id"] != args.user:
        print(f"No message {args.message_id} for user {args.user!r}", file=sys.stderr)
        return 1

    print(f"{row['subject'] or '(no subject)'}")
    print(f"From: {row['sender_email']}\tDate: {row['date']}")
    if row["analysis_error"]:
        print(f"Analysis failed: {row['analysis_error']}")
    elif row["category"] is None:
        print("Not analyzed yet")
    else:
        print(f"Category: {row['category']}\tUrgency: {row['urgency_score']}")
        print(f"Summary: {row['summary']}")
    for action in await store.list_actions(args.message_id):
        due = f" (due {action['due_date']})" if action["due_date"] else ""
        print(f"- [ ] {action['title']}{due}")
    return 0


async def _cmd_runs(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = _open_store(args, settings)

    for run in await store.list_sync_runs(args.user, limit=args.limit):
        started = run.started_at.isoformat() if run.started_at else "?"
        print(
            f"{run.id}\t{started}\t{run.account_id}\t{run.sync_type.value}\t{run.status.value}\t"
            f"fetched={run.messages_fetched} created={run.messages_created} "
            f"skipped={run.messages_skipped} failed={run.messages_failed}"
            + (f"\t{run.error_message}" if run.error_message else "")
        )
    return 0


async def _cmd_accounts_list(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = _open_store(args, settings)

    for account in await store.list_accounts(args.user, enabled_only=not args.all):
        last_sync = account.last_sync_at.isoformat() if account.last_sync_at else "never"
        enabled = "enabled" if account.sync_enabled else "disabled"
        print(f"{account.id}\t{account.email}\t{enabled}\tlast sync: {last_sync}")
    return 0


def _run_oauth_flow(credentials_path: Path, scope: str) -> Any:
    # Imported lazily to keep import-time cost low and tests fast.
    from google_auth_oauthlib.flow import InstalledAppFlow

    flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes=[scope])
    return flow.run_local_server(port=0)


async def _cmd_accounts_connect(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = _open_store(args, settings)

    credentials_path: Path = args.credentials or settings.gmail_credentials_path
    if not credentials_path.exists():
        print(f"OAuth client secrets file not found: {credentials_path}", file=sys.stderr)
        return 2

    creds = await asyncio.to_thread(_run_oauth_flow, credentials_path, settings.gmail_scope)
    gmail = await GmailClient.from_access_token(creds.token, settings=settings)
    profile = await gmail.get_profile()
    email = str(profile["emailAddress"]).lower()

    existing = [
        a for a in await store.list_accounts(args.user, enabled_only=False) if a.email == email
    ]
    expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
    account = GmailAccount(
        id=existing[0].id if existing else uuid.uuid4().hex,
        user_id=args.user,
        email=email,
        access_token=creds.token,
        refresh_token=creds.refresh_token or (existing[0].refresh_token if existing else None),
        token_expiry=expiry,
        last_history_id=existing[0].last_history_id if existing else None,
        last_sync_at=existing[0].last_sync_at if existing else None,
    )
    await store.save_account(account)

    logger.info("gmail_account_connected", account_id=account.id, email=email)
    print(f"Connected {email} as account {account.id}")
    return 0


def _configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


def main(args: list[str] | None = None) -> int:
    """Main entry point for the IdeaBox CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()
    _configure_logging(settings.log_level)

    logger.info("ideabox_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    commands = {
        "sync": _cmd_sync,
        "analyze": _cmd_analyze,
        "runs": _cmd_runs,
        "show": _cmd_show,
    }

    try:
        if parsed.command in commands:
            return asyncio.run(commands[parsed.command](parsed))
        if parsed.command == "accounts":
            if parsed.accounts_command == "list":
                return asyncio.run(_cmd_accounts_list(parsed))
            if parsed.accounts_command == "connect":
                return asyncio.run(_cmd_accounts_connect(parsed))
    except IdeaBoxError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
