#!/usr/bin/env python3
"""
JYDoc accounts -- administrative command line.

Usage:
  python main.py init
  python main.py create-user alice --email alice@example.com --first Alice --last Smith
  python main.py create-user root --email root@example.com --first Root --last Admin --admin
  python main.py grant-role alice ROLE_MODERATOR
  python main.py purge-sessions

The password for create-user is prompted for unless --password is given.
Configuration comes from the same environment variables / .env file as the
API (see core/config.py); SECRET_KEY is required unless DEBUG=true.
"""

import argparse
import getpass
import logging
from typing import Optional

from auth.errors import AuthError
from auth.models import Registration
from auth.service import AuthenticationService
from auth.store import UserStore
from core.config import get_settings
from sessions.manager import SessionManager
from sessions.store import SessionStore


def _open_services() -> tuple[UserStore, SessionStore, AuthenticationService]:
    settings = get_settings()
    users = UserStore()
    session_store = SessionStore()
    users.seed_authorities(settings.bootstrap_authorities)
    service = AuthenticationService(users, SessionManager(session_store, users, settings), settings=settings)
    return users, session_store, service


def _cmd_init(users: UserStore, session_store: SessionStore, service: AuthenticationService, args) -> int:
    names = ", ".join(sorted(a.name for a in users.seed_authorities(get_settings().bootstrap_authorities)))
    print(f"  Stores ready. Authorities: {names}")
    print(f"  {users.count_identities()} user(s) registered.")
    return 0


def _cmd_create_user(users: UserStore, session_store: SessionStore, service: AuthenticationService, args) -> int:
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    identity = service.register(
        Registration(
            username=args.username,
            password=password,
            email=args.email,
            first_name=args.first,
            last_name=args.last,
        )
    )
    if args.admin:
        users.grant_authority(identity.id, get_settings().admin_authority_name)
        identity = users.get_by_id(identity.id)
    print(f"  Created {identity.username} (id={identity.id}) with {', '.join(sorted(identity.authority_names))}")
    return 0


def _cmd_grant_role(users: UserStore, session_store: SessionStore, service: AuthenticationService, args) -> int:
    identity = users.get_by_username(args.username)
    if identity is None:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    if users.grant_authority(identity.id, args.role):
        print(f"  Granted {args.role} to {identity.username}.")
    else:
        print(f"  {identity.username} already holds {args.role}.")
    return 0


def _cmd_purge_sessions(users: UserStore, session_store: SessionStore, service: AuthenticationService, args) -> int:
    removed = service.sessions.purge_expired()
    print(f"  Purged {removed} expired session(s).")
    return 0


_COMMANDS = {
    "init": _cmd_init,
    "create-user": _cmd_create_user,
    "grant-role": _cmd_grant_role,
    "purge-sessions": _cmd_purge_sessions,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jydoc-accounts",
        description="Manage JYDoc user accounts, roles and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init
  python main.py create-user root --email root@example.com --first Root --last Admin --admin
  python main.py grant-role alice ROLE_MODERATOR
  DEBUG=true python main.py purge-sessions
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init", help="Create the databases and seed the bootstrap authorities")

    create = sub.add_parser("create-user", help="Register a new account")
    create.add_argument("username")
    create.add_argument("--email", required=True)
    create.add_argument("--first", required=True, metavar="NAME", help="First name")
    create.add_argument("--last", required=True, metavar="NAME", help="Last name")
    create.add_argument("--password", default=None, help="Password (prompted for when omitted)")
    create.add_argument("--admin", action="store_true", help="Also grant the admin authority")

    grant = sub.add_parser("grant-role", help="Grant an authority to an existing user")
    grant.add_argument("username")
    grant.add_argument("role", metavar="ROLE", help="Authority name, e.g. ROLE_MODERATOR")

    sub.add_parser("purge-sessions", help="Delete expired sessions")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    users, session_store, service = _open_services()
    try:
        return _COMMANDS[args.command](users, session_store, service, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        for field, problem in getattr(exc, "errors", {}).items():
            print(f"      {field}: {problem}")
        return 1
    finally:
        session_store.close()
        users.close()


if __name__ == "__main__":
    raise SystemExit(main())
