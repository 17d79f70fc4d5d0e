#!/usr/bin/env python3
"""
AuthGate -- authentication backend maintenance CLI.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000
  python main.py serve --reload
  python main.py purge-otps

Environment variables (see core/config.py for the full list):
  VERIFICATION_SECRET_KEY, ACCESS_SECRET_KEY, REFRESH_SECRET_KEY
                Token signing keys (>= 32 chars each). Required unless DEBUG=true.
  DATABASE_URL  SQLAlchemy URL. Defaults to auth/authgate.db (SQLite).
  SMTP_HOST     Outbound mail relay for verification codes.
"""

import argparse
import sys

from auth.store import CredentialStore
from core.config import get_settings


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_purge_otps(args: argparse.Namespace) -> int:
    """One-shot run of the expired-challenge sweep the API performs periodically."""
    store = CredentialStore(args.database_url or get_settings().database_url)
    try:
        purged = store.purge_expired_challenges()
    finally:
        store.close()
    print(f"  Purged {purged} expired OTP challenge(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="AuthGate -- registration, OTP verification and session tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development only)")
    serve.set_defaults(func=_cmd_serve)

    purge = sub.add_parser("purge-otps", help="Delete expired OTP challenges and exit.")
    purge.add_argument("--database-url", default=None, help="Override DATABASE_URL for this run.")
    purge.set_defaults(func=_cmd_purge_otps)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
