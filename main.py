#!/usr/bin/env python3
"""
Gatehouse - server-side authentication service.
Password sign-in, OAuth2/OIDC federation and server-tracked sessions.
"""

import argparse
import getpass
import logging
import sys
from typing import List, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

logger = logging.getLogger("gatehouse")

#
# NOTE: Keep gatehouse imports lazy (inside functions) so `--help` works without the
# database driver or auth settings in place.
#


def _require_dsn() -> str:
    from gatehouse.store.config import build_postgres_dsn, load_store_config

    dsn = build_postgres_dsn(load_store_config())
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).", file=sys.stderr)
        raise SystemExit(2)
    return dsn


def migrate() -> int:
    from gatehouse.store.migrate import apply_migrations

    n, versions = apply_migrations(dsn=_require_dsn())
    if n:
        print(f"Applied {n} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


def sweep_sessions() -> int:
    from gatehouse.auth.config import load_auth_config
    from gatehouse.auth.session import SessionManager
    from gatehouse.store.postgres import PostgresAuthStore

    sessions = SessionManager(PostgresAuthStore(_require_dsn()), load_auth_config())
    n = sessions.delete_expired()
    print(f"Deleted {n} expired session(s).")
    return 0


def revoke_sessions(user_id: str) -> int:
    from gatehouse.auth.config import load_auth_config
    from gatehouse.auth.session import SessionManager
    from gatehouse.store.postgres import PostgresAuthStore

    sessions = SessionManager(PostgresAuthStore(_require_dsn()), load_auth_config())
    n = sessions.delete_all_for_user(user_id)
    print(f"Revoked {n} session(s) for user {user_id}.")
    return 0


def seed_user(
    email: str,
    password: Optional[str],
    *,
    display_name: Optional[str] = None,
    allow_providers: Optional[List[str]] = None,
) -> int:
    """
    Create or update a local account (invite-only, no self-registration).

    A fresh salt is generated on every call, so re-seeding rotates the password hash.
    """
    from gatehouse.auth.password import MAX_PASSWORD_LENGTH, generate_salt, hash_password
    from gatehouse.auth.providers import parse_provider
    from gatehouse.store.postgres import PostgresAuthStore

    normalized = (email or "").strip().lower()
    if "@" not in normalized:
        print("A valid --email is required.", file=sys.stderr)
        return 2

    pw = password if password is not None else getpass.getpass("Password: ")
    if len(pw) < 8 or len(pw) > MAX_PASSWORD_LENGTH:
        print(f"Password must be 8-{MAX_PASSWORD_LENGTH} characters.", file=sys.stderr)
        return 2

    providers = [parse_provider(p) for p in (allow_providers or [])]

    store = PostgresAuthStore(_require_dsn())
    salt = generate_salt()
    user_id = store.upsert_user(
        email=normalized,
        password_hash=hash_password(pw, salt),
        password_salt=salt,
        display_name=display_name,
    )
    for p in providers:
        store.allow_provider(user_id, p.value)

    print(f"Seeded user {normalized} (id={user_id})")
    if providers:
        print(f"Allowed OAuth: {', '.join(p.value for p in providers)}")
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Gatehouse authentication service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Apply database migrations
  python main.py --migrate

  # Create a local account allowed to sign in with Microsoft
  python main.py --seed-user admin@example.com --allow-provider microsoft

  # Run the HTTP server
  python main.py --serve --port 8080

  # Cron: remove expired sessions
  python main.py --sweep-sessions
        """,
    )

    parser.add_argument("--serve", action="store_true", help="Run the auth HTTP server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--migrate", action="store_true", help="Apply pending database migrations")
    parser.add_argument("--sweep-sessions", action="store_true", help="Delete expired sessions once and exit")
    parser.add_argument("--revoke-sessions", metavar="USER_ID", help="Delete all sessions for a user")
    parser.add_argument("--seed-user", metavar="EMAIL", help="Create or update a local account")
    parser.add_argument("--password", help="Password for --seed-user (prompted if omitted)")
    parser.add_argument("--display-name", help="Display name for --seed-user")
    parser.add_argument(
        "--allow-provider",
        action="append",
        default=[],
        metavar="PROVIDER",
        help="Allow an OAuth provider for --seed-user (repeatable: microsoft, oidc, discord)",
    )

    args = parser.parse_args()

    try:
        if args.serve:
            from gatehouse.api.app import run

            run(host=args.host, port=args.port)
            return 0

        if args.migrate:
            return migrate()

        if args.sweep_sessions:
            return sweep_sessions()

        if args.revoke_sessions:
            return revoke_sessions(args.revoke_sessions)

        if args.seed_user:
            return seed_user(
                args.seed_user,
                args.password,
                display_name=args.display_name,
                allow_providers=args.allow_provider,
            )

        parser.print_help()
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    raise SystemExit(main())
