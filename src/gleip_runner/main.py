"""
Gleip Runner CLI Entry Point

Connects this machine to the control plane and executes HTTP jobs and
browser sessions on its behalf until interrupted.

Usage:
    gleip-runner --token <TOKEN>
    python -m gleip_runner.main --token <TOKEN> --server ws://localhost:8080/ws/runner --verbose
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from gleip_runner import __version__
from gleip_runner.config import CAPTURE_MODES, RunnerConfig, configure_logging
from gleip_runner.control import ControlChannel
from gleip_runner.identity import RunnerIdentity
from gleip_runner.tui import get_console

logger = logging.getLogger("gleip_runner.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gleip-runner",
        description="Execute HTTP jobs and remote browser sessions for a Gleip control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    gleip-runner --token abc123
    gleip-runner --token abc123 --server ws://localhost:8080/ws/runner
    gleip-runner --token abc123 --capture traffic --headless --verbose
        """,
    )

    parser.add_argument(
        "--token", "-t",
        type=str,
        default=None,
        help="Runner authentication token (required)",
    )

    parser.add_argument(
        "--server", "-s",
        type=str,
        default=None,
        help="Control-plane WebSocket URL (default: RUNNER_SERVER or wss://app.gleip.io/ws/runner)",
    )

    parser.add_argument(
        "--headless",
        action="store_true",
        help="Force headless browser sessions",
    )

    parser.add_argument(
        "--capture",
        choices=CAPTURE_MODES,
        default=None,
        help="Browser capture mode (default: RUNNER_CAPTURE_MODE or frames)",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging with timestamps",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)


def resolve_config(args: argparse.Namespace) -> RunnerConfig:
    """Environment configuration with CLI overrides applied."""
    config = RunnerConfig.from_env()
    if args.server:
        config.server_url = args.server
    if args.capture:
        config.capture_mode = args.capture
    if args.headless:
        config.force_headless = True
    return config


async def run_runner(control: ControlChannel) -> int:
    """
    Run the control channel until the server closes it or a signal arrives.

    Returns:
        Process exit code
    """
    loop = asyncio.get_running_loop()
    shutdown: set[asyncio.Task] = set()

    def request_shutdown(signame: str) -> None:
        logger.info(f"Received {signame}, shutting down")
        task = loop.create_task(control.disconnect())
        shutdown.add(task)
        task.add_done_callback(shutdown.discard)

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, sig.name)
            installed.append(sig)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        try:
            await control.connect()
        except Exception as e:
            get_console().print_error(str(e) or type(e).__name__, error_type="ConnectionError")
            await control.disconnect()
            return 1

        try:
            await control.serve()
        finally:
            await control.disconnect()
            if shutdown:
                await asyncio.gather(*shutdown, return_exceptions=True)
        return 0
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.token:
        parser.print_usage(sys.stderr)
        print("Error: --token is required", file=sys.stderr)
        return 1

    config = resolve_config(args)
    configure_logging(level=logging.DEBUG if args.verbose else None, verbose=args.verbose)

    identity = RunnerIdentity.create(args.token)
    get_console().print_banner(
        runner_id=identity.runner_id,
        server_url=config.server_url,
        capture_mode=config.capture_mode,
        version=identity.version,
    )

    control = ControlChannel(identity, config)
    try:
        return asyncio.run(run_runner(control))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
