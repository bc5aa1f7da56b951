#!/usr/bin/env python3
"""
Secrets - share secrets anonymously.
Serve the web app, or apply database migrations.
"""

import argparse
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "info").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Secrets web app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve on $PORT (default 3000)
  python main.py serve

  # Serve on a specific port
  python main.py serve --port 8080

  # Create/upgrade the users table
  python main.py migrate
        """,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", help="Bind host (default: $HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, help="Listen port (default: $PORT or 3000)")

    sub.add_parser("migrate", help="Apply pending database migrations")

    args = parser.parse_args()

    from dataclasses import replace

    from secrets_app.config import load_app_config

    cfg = load_app_config()

    if args.command == "migrate":
        from secrets_app.store.migrate import main as migrate_main

        return migrate_main(cfg)

    # Default: serve
    if getattr(args, "host", None):
        cfg = replace(cfg, host=args.host)
    if getattr(args, "port", None):
        cfg = replace(cfg, port=args.port)

    from secrets_app.api.server import run

    run(cfg)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
