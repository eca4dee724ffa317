"""Command-line interface for kvauth."""

from __future__ import annotations

import argparse
import sys

from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Parameters
    ----------
    argv : list[str], optional
        Arguments (defaults to ``sys.argv[1:]``).

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="kvauth",
        description="kvauth authorization server and configuration tools",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", help="Bind address (default from settings)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default from settings)")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes")

    # config command
    config_parser = subparsers.add_parser("config", help="Show or export configuration")
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration (default)",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        help="Write output to a file instead of stdout",
    )

    args = parser.parse_args(argv)

    if args.command == "serve":
        return handle_serve(args)
    if args.command == "config":
        return handle_config(args)

    parser.print_help()
    return 0


def handle_serve(args: argparse.Namespace) -> int:
    """Handle the serve command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    import uvicorn

    from .config import get_settings

    server = get_settings().server
    uvicorn.run(
        "kvauth.app:create_app",
        factory=True,
        host=args.host or server.host,
        port=args.port or server.port,
        reload=args.reload or server.reload,
    )
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import get_settings

    settings = get_settings()
    output = settings.to_env() if args.env else settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
