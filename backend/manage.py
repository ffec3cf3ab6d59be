#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from relayum import create_app
from relayum.admin.routes import storage_report
from relayum.extensions import db
from relayum.janitor import run_janitor_cycle
from relayum.models import User
from relayum.quota.accountant import recompute_usage


def _find_user(name_or_id: str) -> User:
    user = User.query.filter_by(username=name_or_id).one_or_none()
    if user is None and name_or_id.isdigit():
        user = db.session.get(User, int(name_or_id))
    if user is None:
        raise SystemExit(f"User not found: {name_or_id}")
    return user


def cmd_purge_expired(args: argparse.Namespace) -> int:
    result = run_janitor_cycle()
    print(f"Purged {result['anonymous_shares']} anonymous shares and {result['files']} expired files")
    return 0


def cmd_recompute_usage(args: argparse.Namespace) -> int:
    users = [_find_user(args.user)] if args.user else User.query.order_by(User.id).all()
    for user in users:
        previous, current = recompute_usage(user.id)
        print(f"{user.username}: {previous} -> {current} bytes")
    db.session.commit()
    return 0


def cmd_validate_storage(args: argparse.Namespace) -> int:
    report = storage_report(_find_user(args.user))
    print(json.dumps(report, indent=2))
    return 1 if report["invalid"] or report["missing_blobs"] else 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Relayum maintenance commands.")
    commands = parser.add_subparsers(dest="command", required=True)

    purge = commands.add_parser("purge-expired", help="Delete expired anonymous shares and files.")
    purge.set_defaults(handler=cmd_purge_expired)

    recompute = commands.add_parser("recompute-usage", help="Recompute disk usage from stored files.")
    recompute.add_argument("user", nargs="?", help="Username or id; all users when omitted.")
    recompute.set_defaults(handler=cmd_recompute_usage)

    validate = commands.add_parser("validate-storage", help="Verify every blob of a user.")
    validate.add_argument("user", help="Username or id.")
    validate.set_defaults(handler=cmd_validate_storage)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    app = create_app()
    with app.app_context():
        return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
