#!/usr/bin/env python3
"""
Whisper identity -- operator command line.

Maintenance tasks that run against the identity database directly, outside
the HTTP service. Uses the same settings (environment / .env) as the API.

Usage:
  python main.py purge-tokens
  python main.py audit
  python main.py audit --user 42 --limit 20
  python main.py unlock 42

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the identity database (default sqlite:///whisper_identity.db)
  SECRET_KEY, TWO_FACTOR_ENCRYPTION_KEY   required unless DEBUG=true
"""

import argparse
import json
import logging
import sys
from typing import Optional

from auth.models import RequestContext
from auth.service import IdentityService, build_identity_service
from core.config import get_settings

logger = logging.getLogger("whisper.cli")


def _cmd_purge_tokens(identity: IdentityService, args: argparse.Namespace) -> int:
    removed = identity.ledger.purge_expired()
    print(f"Purged {removed} expired token(s).")
    return 0


def _cmd_audit(identity: IdentityService, args: argparse.Namespace) -> int:
    events = identity.audit.recent(user_id=args.user, limit=args.limit)
    if not events:
        print("No audit events.")
        return 0
    for event in events:
        when = event.created_at.isoformat(timespec="seconds") if event.created_at else "-"
        meta = json.dumps(event.metadata, sort_keys=True) if event.metadata else ""
        print(f"{when}  {event.action.value:<30} user={event.user_id or '-':<6} ip={event.ip_address or '-'}  {meta}")
    return 0


def _cmd_unlock(identity: IdentityService, args: argparse.Namespace) -> int:
    result = identity.login.unlock_account(args.user_id, RequestContext(path="cli:unlock"))
    if not result.ok:
        print(f"  [!] {result.failure.message}")
        return 1
    print(f"Unlocked user {args.user_id}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="whisper-identity",
        description="Operator tasks for the Whisper identity database.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    purge = sub.add_parser("purge-tokens", help="Delete expired security tokens.")
    purge.set_defaults(handler=_cmd_purge_tokens)

    audit = sub.add_parser("audit", help="Print recent audit events, newest first.")
    audit.add_argument("--user", type=int, default=None, metavar="ID", help="Only events for this user id.")
    audit.add_argument("--limit", type=int, default=50, metavar="N", help="Maximum events to print (default 50).")
    audit.set_defaults(handler=_cmd_audit)

    unlock = sub.add_parser("unlock", help="Clear a user's failed-login lockout.")
    unlock.add_argument("user_id", type=int, metavar="USER_ID")
    unlock.set_defaults(handler=_cmd_unlock)
    return parser


def main(argv: Optional[list[str]] = None, identity: Optional[IdentityService] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    owned = identity is None
    if identity is None:
        identity = build_identity_service(get_settings())
    try:
        return args.handler(identity, args)
    finally:
        if owned:
            identity.close()


if __name__ == "__main__":
    sys.exit(main())
