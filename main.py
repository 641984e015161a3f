#!/usr/bin/env python3
"""
ClinicGate -- operator CLI for the auth store.

Talks to the same database as the API (DATABASE_URL), through AuthService, so
every command goes through the same validation, transactions and logging.

Usage:
  python main.py create-admin --username ana --email ana@clinic.com
  python main.py issue-invite --role terapeuta --email rui@clinic.com --ttl-hours 24
  python main.py issue-invite --role secretaria --code TEST-1
  python main.py logout-all ana
  python main.py purge-sessions
  python main.py list-sessions --user ana --json

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: clinicgate_auth.db beside the code).
  SECRET_KEY    Required unless DEBUG=true. Must match the API's key for issued tokens to verify.
"""

from __future__ import annotations

import argparse
import getpass
import json
import sys
from typing import Optional

from auth.errors import AuthServiceError
from auth.permissions import ROLES
from auth.service import AuthService
from core.config import get_settings


def _print_error(exc: AuthServiceError) -> None:
    print(f"  [!] {exc.message}", file=sys.stderr)


def _cmd_create_admin(auth: AuthService, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    user = auth.create_user(args.username, args.email, password, "admin")
    print(f"Admin '{user.username}' created (id={user.id}).")
    return 0


def _cmd_issue_invite(auth: AuthService, args: argparse.Namespace) -> int:
    invite = auth.issue_invite(
        args.role,
        email=args.email,
        ttl_seconds=args.ttl_hours * 3600 if args.ttl_hours else None,
        code=args.code,
    )
    print(f"Invite code: {invite.code}")
    print(f"  role:    {invite.role}")
    print(f"  email:   {invite.email or '(any)'}")
    print(f"  expires: {invite.expires_at.isoformat(timespec='seconds')}")
    return 0


def _cmd_logout_all(auth: AuthService, args: argparse.Namespace) -> int:
    user = auth.users.find_by_username_or_email(args.user)
    result = auth.logout_all(user.id)
    print(
        f"Signed '{user.username}' out everywhere: "
        f"token_version={result.token_version}, {result.sessions_removed} session(s) removed."
    )
    return 0


def _cmd_purge_sessions(auth: AuthService, args: argparse.Namespace) -> int:
    removed = auth.purge_expired_sessions()
    print(f"{removed} expired session(s) removed.")
    return 0


def _cmd_list_sessions(auth: AuthService, args: argparse.Namespace) -> int:
    usernames = {u.id: u.username for u in auth.list_users()}
    if args.user:
        user = auth.users.find_by_username_or_email(args.user)
        sessions = auth.find_sessions_by_user(user.id)
    else:
        sessions = auth.list_all_sessions(include_expired=args.all)

    rows = [
        {
            "id": s.id,
            "user": usernames.get(s.user_id, str(s.user_id)),
            "created_at": s.created_at.isoformat(timespec="seconds") if s.created_at else None,
            "expires_at": s.expires_at.isoformat(timespec="seconds"),
            "active": auth.session_is_live(s),
            "user_agent": s.user_agent,
        }
        for s in sessions
    ]
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        print("No sessions.")
        return 0
    for row in rows:
        status = "active" if row["active"] else "expired"
        print(f"  #{row['id']:<5} {row['user']:<20} {status:<8} expires {row['expires_at']}  {row['user_agent'] or ''}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinicgate",
        description="Manage ClinicGate users, invites and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --username ana --email ana@clinic.com
  python main.py issue-invite --role terapeuta --ttl-hours 24
  python main.py logout-all ana@clinic.com
  python main.py list-sessions --all
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-admin", help="Create an admin account directly")
    p.add_argument("--username", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--password", help="Prompted for when omitted")
    p.set_defaults(handler=_cmd_create_admin)

    p = sub.add_parser("issue-invite", help="Issue a single-use signup code")
    p.add_argument("--role", choices=list(ROLES), default="terapeuta")
    p.add_argument("--email", help="Restrict redemption to this address")
    p.add_argument("--ttl-hours", type=int, metavar="HOURS", help="Lifetime (default: INVITE_EXPIRE_DAYS)")
    p.add_argument("--code", help="Use this code instead of generating one")
    p.set_defaults(handler=_cmd_issue_invite)

    p = sub.add_parser("logout-all", help="Revoke every token and session of a user")
    p.add_argument("user", metavar="USERNAME_OR_EMAIL")
    p.set_defaults(handler=_cmd_logout_all)

    p = sub.add_parser("purge-sessions", help="Delete expired session rows")
    p.set_defaults(handler=_cmd_purge_sessions)

    p = sub.add_parser("list-sessions", help="List sessions")
    p.add_argument("--user", metavar="USERNAME_OR_EMAIL", help="Only this user's active sessions")
    p.add_argument("--all", action="store_true", help="Include expired rows")
    p.add_argument("--json", action="store_true", help="Output structured JSON")
    p.set_defaults(handler=_cmd_list_sessions)

    return parser


def main(argv: Optional[list[str]] = None, auth: Optional[AuthService] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    owns_service = auth is None
    if auth is None:
        auth = AuthService.from_url(get_settings().database_url)
    try:
        return args.handler(auth, args)
    except AuthServiceError as exc:
        _print_error(exc)
        return 1
    finally:
        if owns_service:
            auth.close()


if __name__ == "__main__":
    sys.exit(main())
