#!/usr/bin/env python3
"""
CampusGuard -- identity, authorization and security audit core.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py create-admin --username registrar --email registrar@campus.edu
  python main.py create-admin --username registrar --email registrar@campus.edu --password-stdin < pw.txt
  python main.py audit
  python main.py audit --security --limit 100
  python main.py audit --action LOGIN_FAILED --user 7 --json

Environment variables:
  SECRET_KEY        Token signing key (>= 32 chars). Required unless DEBUG=true.
  IDENTITY_DB_URL   SQLAlchemy URL of the identity store.
  AUDIT_DB_URL      SQLAlchemy URL of the audit store.
"""

import argparse
import getpass
import json
import sys

from audit.models import AuditAction, EventFilter, SecurityEvent
from auth.models import Role
from auth.outcomes import AuthFailure
from auth.service import SecurityCore, build_security_core
from core.config import get_settings
from core.context import SYSTEM_CONTEXT


def _read_password(from_stdin: bool) -> str | None:
    """Prompt twice (or read one line from stdin). Returns None if the prompts disagree."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def create_admin(core: SecurityCore, username: str, email: str, password: str) -> int:
    """Provision an admin identity from the command line. Returns a process exit code.

    Goes through AuthService like the HTTP endpoint does, so the same policy
    checks apply and the creation is audited (actor: none, source: cli).
    """
    result = core.service.create_identity(None, username, email, password, Role.admin, SYSTEM_CONTEXT)
    if isinstance(result, AuthFailure):
        print(f"  [!] {result.public_message}")
        for problem in result.detail.get("errors", [])[1:]:
            print(f"      {problem}")
        return 1
    print(f"  Admin '{result.username}' created (id={result.id}).")
    return 0


def _format_event(event: SecurityEvent) -> str:
    actor = event.actor_id if event.actor_id is not None else "-"
    resource = f"{event.resource_type}:{event.resource_id}" if event.resource_id else event.resource_type
    return (
        f"  {event.timestamp.isoformat(timespec='seconds')}  {event.action.value:<28} "
        f"{event.outcome.value:<8} actor={actor:<5} {resource:<20} {event.source_address}"
    )


def show_audit(core: SecurityCore, filters: EventFilter, limit: int, as_json: bool) -> int:
    page = core.audit.query(filters, page=1, limit=limit)
    if as_json:
        print(
            json.dumps(
                [
                    {
                        "id": e.id,
                        "timestamp": e.timestamp.isoformat(),
                        "action": e.action.value,
                        "outcome": e.outcome.value,
                        "actor_id": e.actor_id,
                        "resource_type": e.resource_type,
                        "resource_id": e.resource_id,
                        "source_address": e.source_address,
                        "details": e.details,
                    }
                    for e in page.items
                ],
                indent=2,
            )
        )
        return 0

    print(f"\nCampusGuard -- audit trail ({len(page.items)} of {page.total} events)")
    print("-" * 40)
    for event in page.items:
        print(_format_event(event))
    if not page.items:
        print("  No matching events.")
    print()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="campusguard",
        description="Identity, authorization and security audit core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    admin = sub.add_parser("create-admin", help="Create an admin identity")
    admin.add_argument("--username", required=True)
    admin.add_argument("--email", required=True)
    admin.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )

    audit = sub.add_parser("audit", help="Print recent audit events, newest first")
    audit.add_argument("--limit", type=int, default=50, help="Number of events (default: 50)")
    audit.add_argument(
        "--action",
        choices=[a.value for a in AuditAction],
        metavar="ACTION",
        help="Only this action (e.g. LOGIN_FAILED)",
    )
    audit.add_argument("--user", type=int, metavar="ID", help="Only events performed by this identity")
    audit.add_argument("--security", action="store_true", help="Only failures and security-relevant actions")
    audit.add_argument("--json", action="store_true", help="Output structured JSON")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "serve":
        import uvicorn

        uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    if args.command == "audit" and args.limit < 1:
        parser.error("--limit must be a positive integer")

    core = build_security_core(get_settings())
    try:
        if args.command == "create-admin":
            password = _read_password(args.password_stdin)
            if password is None:
                return 1
            return create_admin(core, args.username, args.email, password)

        filters = EventFilter(
            actor_id=args.user,
            action=AuditAction(args.action) if args.action else None,
            security_only=args.security,
        )
        return show_audit(core, filters, args.limit, args.json)
    finally:
        core.close()


if __name__ == "__main__":
    sys.exit(main())
