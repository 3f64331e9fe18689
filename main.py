#!/usr/bin/env python3
"""
Authorizer - OAuth 2.0 login broker with forward-auth session checks.
"""

import argparse
import sys


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run the OAuth login broker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve on the default port with Google configured from the environment
  GOOGLE_CLIENT_ID=... GOOGLE_CLIENT_SECRET=... \\
  AUTH_ALLOWED_REDIRECT_URLS=https://app.example.com/ python main.py

  # Custom bind address
  python main.py --host 127.0.0.1 --port 9000 --log-level debug
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL or info)")
    args = parser.parse_args()

    from authorizer.api.server import run

    try:
        run(host=args.host, port=args.port, log_level=args.log_level)
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
