"""Command-line interface for Ferryman."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .config import DEFAULT_CONFIG, load_config_file, set_path
from .exceptions import ConfigException
from .proxy import ContentProxy


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ferryman",
        description="Ferryman - SSRF-protected content-fetching proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ferryman                                   # Start with defaults on 127.0.0.1:3001
  ferryman --config ferryman.json            # Start with config file
  ferryman --port 8080 --host 0.0.0.0        # Custom host/port
  ferryman --generate-config                 # Write the default config and exit

Environment:
  FERRYMAN_PORT / PORT, FERRYMAN_HOST, FERRYMAN_LOG_LEVEL,
  RATE_LIMIT_WINDOW_MS, RATE_LIMIT_MAX_REQUESTS override the configuration.
        """,
    )
    parser.add_argument("--config", "-c", type=Path, help="Path to configuration JSON file")
    parser.add_argument("--host", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", "-p", type=int, help="Port to bind to (default: 3001)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging level (default: INFO)",
    )
    parser.add_argument(
        "--generate-config",
        nargs="?",
        const=Path("ferryman.json"),
        type=Path,
        metavar="PATH",
        help="Write the default configuration to PATH (default: ferryman.json) and exit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def argument_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Collect the configuration set by command-line flags."""
    overrides: dict[str, Any] = {}
    if args.host is not None:
        set_path(overrides, "server.host", args.host)
    if args.port is not None:
        set_path(overrides, "server.port", args.port)
    if args.log_level is not None:
        set_path(overrides, "logging.level", args.log_level)
    return overrides


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    if args.generate_config is not None:
        with open(args.generate_config, "w") as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        print(f"Generated default configuration: {args.generate_config}")
        return 0

    try:
        config = load_config_file(args.config) if args.config else {}
        proxy = ContentProxy(config, use_env=True, overrides=argument_overrides(args))
    except ConfigException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    host, port = proxy.address
    print(f"Starting Ferryman on {host}:{port}")
    print("Press Ctrl+C to stop")
    sys.stdout.flush()
    try:
        proxy.start(blocking=True)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except OSError as e:
        print(f"Error binding to {host}:{port}: {e}", file=sys.stderr)
        if "Address already in use" in str(e):
            print(f"Port {port} is already in use. Try a different port with --port option.", file=sys.stderr)
        return 1
    finally:
        proxy.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
