"""Command-line entry point for Case Automation."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from case_automation.automation import (
    ApprovalError,
    MissingSecretError,
    verify_approval_token,
)
from case_automation.core import AppSettings, configure_logging, load_app_settings
from case_automation.core.container import ADVISOR, APPROVALS, build_container


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Case automation engine")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("info", help="Show the active configuration.")

    execute_parser = subparsers.add_parser(
        "execute-batch", help="Approve and execute a pending batch."
    )
    execute_parser.add_argument("batch_id")
    execute_parser.add_argument(
        "--user-email",
        default="cli@localhost",
        help="Identity recorded as the approver (default: cli@localhost).",
    )

    token_parser = subparsers.add_parser(
        "issue-token", help="Print approve and reject links for a batch."
    )
    token_parser.add_argument("batch_id")

    verify_parser = subparsers.add_parser(
        "verify-token", help="Check a token's signature and expiry."
    )
    verify_parser.add_argument("token")

    suggestions_parser = subparsers.add_parser(
        "suggestions", help="List rule optimization suggestions."
    )
    suggestions_parser.add_argument("--limit", type=int, default=10)
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit code."""
    command = args.command or "info"
    if command == "info":
        _print_info(settings)
        return 0
    if command == "verify-token":
        payload = verify_approval_token(args.token, settings.approval.hmac_secret)
        if payload is None:
            print("Token is invalid or expired.")
            return 1
        _print_json(payload.to_dict())
        return 0

    container = build_container(settings)
    try:
        if command == "execute-batch":
            service = container.resolve(APPROVALS)
            outcome = asyncio.run(service.approve_in_app(args.batch_id, args.user_email))
            _print_json(outcome.to_dict())
            return 0 if outcome.success else 2
        if command == "issue-token":
            service = container.resolve(APPROVALS)
            links = service.issue_approval_links(service.get_batch(args.batch_id))
            print(f"Approve: {links.approve_url}")
            print(f"Reject:  {links.reject_url}")
            return 0
        if command == "suggestions":
            report = container.resolve(ADVISOR).get_suggestions(limit=args.limit)
            _print_json(report.to_dict())
            return 0
    except ApprovalError as exc:
        print(f"{exc.code}: {exc.message}", file=sys.stderr)
        return 1
    except MissingSecretError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        container.close()
    raise ValueError(f"Unsupported command: {command}")


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _print_info(settings: AppSettings) -> None:
    print("Case automation is ready.")
    print(f"Database path: {settings.storage.db_path}")
    print(f"App base URL: {settings.approval.app_base_url}")
    print(f"Approval secret configured: {bool(settings.approval.hmac_secret)}")
    print(f"Gmail configured: {bool(settings.gmail.access_token or settings.gmail.refresh_token)}")
    print(
        "Calendar configured: "
        f"{bool(settings.calendar.access_token or settings.calendar.refresh_token)}"
    )
    print(f"Dropbox configured: {bool(settings.dropbox.access_token)}")


def _print_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


if __name__ == "__main__":
    main()
