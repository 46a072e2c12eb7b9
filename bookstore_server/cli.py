"""Command-line interface for the Bookstore Cart Server."""

import argparse
import asyncio
import sys

from .config import get_settings


def main():
    """Main CLI entry point."""
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Bookstore Cart Server - keep a bookstore cart in sync with the store's API"
    )
    parser.add_argument(
        "--mode",
        choices=["stdio", "http"],
        default="stdio",
        help="Server mode: stdio (for MCP clients) or http (REST API)",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"HTTP server host (only for http mode, default: {settings.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"HTTP server port (only for http mode, default: {settings.port})",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable hot reloading (HTTP mode only, watches for file changes)",
    )

    args = parser.parse_args()

    if args.mode == "stdio":
        from .server import main as server_main

        try:
            asyncio.run(server_main())
        except KeyboardInterrupt:
            print("\nShutting down...", file=sys.stderr)
            sys.exit(0)
    elif args.mode == "http":
        from .http_server import run_http_server

        print(f"Starting Bookstore HTTP Server on {args.host}:{args.port}", file=sys.stderr)
        print(f"API documentation available at http://{args.host}:{args.port}/docs", file=sys.stderr)
        run_http_server(host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
