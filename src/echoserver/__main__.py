"""
=============================================================================
ECHO SERVER CLI ENTRY POINT
=============================================================================

Command-line interface for the echo server and its interactive client.

=============================================================================
USAGE
=============================================================================

    # Demo: server on port 8080 plus one client session on this terminal
    python -m echoserver

    # Server only, until Ctrl+C / SIGTERM
    python -m echoserver serve --port 9000

    # Client against an existing server
    python -m echoserver client --host 127.0.0.1 --port 9000

    # Machine-readable logs
    python -m echoserver serve --log-format json --log-level DEBUG

=============================================================================
EXIT CODES
=============================================================================

    0   Normal exit
    1   Server could not bind / client could not connect
    2   Invalid arguments (argparse and config validation)

=============================================================================
"""

import sys
import argparse
import logging
from typing import Optional, Sequence

from . import __version__
from .client import InteractiveClient
from .config import DEMO_PORT, LOG_FORMATS, LOG_LEVELS, ServerConfig
from .logging_config import setup_logging
from .server import EchoServer


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser (separate from main() so tests can use it)."""
    parser = argparse.ArgumentParser(
        prog="echoserver",
        description="Multi-threaded TCP line echo server and interactive client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m echoserver                                # Demo on port 8080
  python -m echoserver serve --port 9000              # Server only
  python -m echoserver client --host 10.0.0.5 -p 9000 # Client only
        """
    )

    # ─────────────────────────────────────────────────────────────────────
    # OPTIONS SHARED BY ALL MODES
    # ─────────────────────────────────────────────────────────────────────

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--port", "-p",
        type=int,
        default=DEMO_PORT,
        help=f"Port to listen on / connect to (default: {DEMO_PORT})"
    )
    common.add_argument(
        "--log-level", "-l",
        choices=LOG_LEVELS,
        default="INFO",
        help="Logging level (default: INFO)"
    )
    common.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default="text",
        help="Log output format (default: text)"
    )

    # ─────────────────────────────────────────────────────────────────────
    # MODES
    # ─────────────────────────────────────────────────────────────────────

    subparsers = parser.add_subparsers(dest="command", metavar="{demo,serve,client}")

    subparsers.add_parser(
        "demo",
        parents=[common],
        help="Start a server and run one client session against it (default)"
    )

    serve = subparsers.add_parser(
        "serve",
        parents=[common],
        help="Run the server until SIGINT/SIGTERM"
    )
    serve.add_argument(
        "--host", "-H",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1, use 0.0.0.0 for containers)"
    )
    serve.add_argument(
        "--max-workers", "-w",
        type=int,
        default=256,
        help="Maximum concurrent sessions before new ones queue (default: 256)"
    )
    serve.add_argument(
        "--grace-period",
        type=float,
        default=5.0,
        help="Seconds to let sessions finish on shutdown (default: 5.0)"
    )

    client = subparsers.add_parser(
        "client",
        parents=[common],
        help="Connect to a running server"
    )
    client.add_argument(
        "--host", "-H",
        default="127.0.0.1",
        help="Server host (default: 127.0.0.1)"
    )

    # ─────────────────────────────────────────────────────────────────────
    # META ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"echoserver {__version__}"
    )

    # Bare `python -m echoserver` behaves like `demo`
    parser.set_defaults(
        command="demo",
        port=DEMO_PORT,
        log_level="INFO",
        log_format="text",
    )

    return parser


def run_demo(config: ServerConfig, stdin=None, stdout=None) -> int:
    """
    Start a server, run one interactive session against it, stop the server.

    The server is stopped on every path out, including Ctrl+C in the client.
    """
    setup_logging(config.log_level, config.log_format)

    server = EchoServer(config)
    try:
        server.serve_in_background()
    except OSError as e:
        print(f"Could not start server on port {config.port}: {e}", file=sys.stderr)
        return 1

    try:
        client = InteractiveClient("127.0.0.1", config.port, stdin=stdin, stdout=stdout)
        connected = client.run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
        connected = True
    finally:
        server.stop()

    return 0 if connected else 1


def run_serve(config: ServerConfig) -> int:
    """Run the server in the foreground until a signal stops it."""
    setup_logging(config.log_level, config.log_format)

    server = EchoServer(config)
    server.install_signal_handlers()
    try:
        server.start()
    except OSError as e:
        print(f"Could not start server on port {config.port}: {e}", file=sys.stderr)
        return 1
    finally:
        # No-op when a signal handler already stopped it
        server.stop()
    return 0


def run_client(host: str, port: int) -> int:
    client = InteractiveClient(host, port)
    try:
        return 0 if client.run() else 1
    except KeyboardInterrupt:
        return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "serve":
            config = ServerConfig(
                host=args.host,
                port=args.port,
                max_workers=args.max_workers,
                shutdown_grace_period=args.grace_period,
                log_level=args.log_level,
                log_format=args.log_format,
            )
            return run_serve(config)

        if args.command == "client":
            setup_logging(args.log_level, args.log_format)
            return run_client(args.host, args.port)

        return run_demo(ServerConfig(
            port=args.port,
            log_level=args.log_level,
            log_format=args.log_format,
        ))
    except ValueError as e:
        # Config validation: bad port, bad host, ...
        parser.error(str(e))


if __name__ == "__main__":
    sys.exit(main())
