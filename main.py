#!/usr/bin/env python3
"""
LedgerGate Identity -- operator command line.

Usage:
  python main.py generate-keys --out-dir ./keys
  python main.py seed-roles
  python main.py create-admin admin@example.com
  python main.py session-stats
  python main.py cleanup-sessions

Every command reads the same environment / .env configuration as the API
(DATABASE_URL, REDIS_URL, JWT_* ...). create-admin reads the password from
LEDGERGATE_ADMIN_PASSWORD if set, otherwise prompts for it.
"""

import argparse
import getpass
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Identity
from auth.passwords import hash_password
from auth.permissions import PERMISSIONS, SYSTEM_ROLES
from auth.sessions import SessionManager
from auth.store import IdentityStore
from cache.store import CacheStore
from core.config import generate_rsa_pem_pair, get_settings


def _open_store() -> IdentityStore:
    settings = get_settings()
    return IdentityStore(settings.database_url, timeout_seconds=settings.db_timeout_seconds)


def _open_sessions() -> SessionManager:
    settings = get_settings()
    cache = CacheStore.from_url(settings.redis_url, timeout=settings.cache_timeout_seconds)
    return SessionManager(cache, default_ttl_seconds=settings.session_ttl_seconds)


def cmd_generate_keys(out_dir: str) -> int:
    """Write jwt_private.pem / jwt_public.pem. Refuses to overwrite existing files."""
    directory = Path(out_dir)
    directory.mkdir(parents=True, exist_ok=True)
    private_path = directory / "jwt_private.pem"
    public_path = directory / "jwt_public.pem"
    for path in (private_path, public_path):
        if path.exists():
            print(f"  [!] '{path}' already exists. Remove it first.")
            return 1
    private_pem, public_pem = generate_rsa_pem_pair()
    private_path.write_text(private_pem, encoding="ascii")
    private_path.chmod(0o600)
    public_path.write_text(public_pem, encoding="ascii")
    print(f"  Wrote {private_path} and {public_path}.")
    print(f"  Set JWT_PRIVATE_KEY_FILE={private_path} and JWT_PUBLIC_KEY_FILE={public_path}.")
    return 0


def cmd_seed_roles(store: IdentityStore) -> int:
    store.ensure_system_roles(PERMISSIONS, SYSTEM_ROLES)
    for role in store.list_roles():
        codes = store.get_role_permission_codes(role.id)
        print(f"  {role.name:<16} {len(codes):>2} permission(s)")
    return 0


def cmd_create_admin(store: IdentityStore, email: str, password: Optional[str]) -> int:
    if not password:
        password = getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    store.ensure_system_roles(PERMISSIONS, SYSTEM_ROLES)
    role = store.get_role_by_name("ORG_ADMIN")
    try:
        identity_id = store.create_identity(
            Identity(email=email, password_hash=hash_password(password), role_id=role.id if role else None)
        )
    except IntegrityError:
        print(f"  [!] An identity with email '{email}' already exists.")
        return 1
    print(f"  Created ORG_ADMIN {email} ({identity_id}).")
    return 0


def cmd_session_stats(sessions: SessionManager) -> int:
    print(f"  Sessions:          {sessions.count_sessions()}")
    print(f"  Active identities: {sessions.count_active_identities()}")
    return 0


def cmd_cleanup_sessions(sessions: SessionManager) -> int:
    removed = sessions.cleanup_expired()
    print(f"  Removed {removed} expired session(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ledgergate",
        description="Operator tasks for LedgerGate Identity.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    keys = sub.add_parser("generate-keys", help="Generate an RS256 signing key pair")
    keys.add_argument("--out-dir", default=".", metavar="PATH", help="Directory for the PEM files (default: .)")

    sub.add_parser("seed-roles", help="Install the permission catalogue and system roles")

    admin = sub.add_parser("create-admin", help="Create an ORG_ADMIN identity")
    admin.add_argument("email", help="Email address of the new administrator")

    sub.add_parser("session-stats", help="Count live sessions and distinct signed-in identities")
    sub.add_parser("cleanup-sessions", help="Delete session records past their expiry")

    args = parser.parse_args(argv)

    if args.command == "generate-keys":
        return cmd_generate_keys(args.out_dir)

    if args.command in ("seed-roles", "create-admin"):
        store = _open_store()
        try:
            if args.command == "seed-roles":
                return cmd_seed_roles(store)
            return cmd_create_admin(store, args.email, get_settings().ledgergate_admin_password)
        finally:
            store.close()

    if args.command in ("session-stats", "cleanup-sessions"):
        sessions = _open_sessions()
        try:
            if args.command == "session-stats":
                return cmd_session_stats(sessions)
            return cmd_cleanup_sessions(sessions)
        finally:
            sessions.cache.close()

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
