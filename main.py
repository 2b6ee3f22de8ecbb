#!/usr/bin/env python3
"""
Sitegate - GitHub sign-in, server-side sessions and per-site realtime channels.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep sitegate imports lazy (inside functions) so `--migrate` does not import FastAPI.
#


def migrate() -> int:
    """Apply pending SQL migrations to the configured Postgres database."""
    from sitegate.store.config import load_store_config
    from sitegate.store.migrate import apply_migrations

    dsn = load_store_config().dsn
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2
    n, versions = apply_migrations(dsn=dsn)
    if n:
        print(f"Applied {n} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Sitegate authentication and realtime server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the server (in-memory stores unless POSTGRES_* is set)
  python main.py --serve --port 8080

  # Apply database migrations
  python main.py --migrate
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP/WebSocket server")
    parser.add_argument("--migrate", action="store_true", help="Apply pending Postgres migrations and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")

    args = parser.parse_args()

    try:
        if args.migrate:
            sys.exit(migrate())

        if args.serve:
            from sitegate.api.app import run as run_server

            run_server(host=args.host, port=args.port)
            return

        # No arguments provided
        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
