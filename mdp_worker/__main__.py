"""
Standalone entrypoint for running a build worker.

Usage:
    python -m mdp_worker [OPTIONS]
    mdp-worker [OPTIONS]  (after pip install)

Environment Variables:
    CONTROL_PLANE_URL: Control-plane base URL (default: http://localhost:8080)
    CONTROL_PLANE_TOKEN: Bearer token for the control plane (default: unset)
    BUILD_WORKER_NAME: Worker id used when claiming jobs (default: builder-local)
    BUILD_WORKER_INTERVAL: Seconds between claim attempts (default: 5)
    BUILD_WORKER_WORKSPACE: Checkout directory (default: ./worker-tmp)
    BUILD_WORKER_REGISTRY: Image name prefix (default: ghcr.io/<owner>)
    GITHUB_TOKEN: Token for cloning private repositories (default: unset)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from mdp_client.client import ControlPlaneClient

from .worker import BuildWorker

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="mdp build worker - claim build jobs and build images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  CONTROL_PLANE_URL        Control-plane base URL (default: http://localhost:8080)
  CONTROL_PLANE_TOKEN      Bearer token for the control plane
  BUILD_WORKER_NAME        Worker id used when claiming jobs (default: builder-local)
  BUILD_WORKER_INTERVAL    Seconds between claim attempts (default: 5)
  BUILD_WORKER_WORKSPACE   Checkout directory (default: ./worker-tmp)
  BUILD_WORKER_REGISTRY    Image name prefix (default: ghcr.io/<owner>)
  GITHUB_TOKEN             Token for cloning private repositories

Note: Command-line arguments override environment variables.
        """,
    )
    parser.add_argument("--control-plane", type=str, default=None)
    parser.add_argument("--token", type=str, default=None)
    parser.add_argument("--name", type=str, default=None, help="Worker id")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between claim attempts (default: BUILD_WORKER_INTERVAL env or 5)",
    )
    parser.add_argument("--workspace", type=str, default=None)
    parser.add_argument("--registry", type=str, default=None)
    parser.add_argument(
        "--push", action="store_true", help="Push built images to the registry"
    )
    parser.add_argument(
        "--keep-workspace",
        action="store_true",
        help="Keep job checkouts after building",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def get_setting(value: str | None, env_var: str, default: str = "") -> str:
    """Return the CLI value if given, else the environment variable, else default."""
    if value:
        return value
    return os.environ.get(env_var, default)


def get_interval(args: argparse.Namespace) -> float:
    """
    Get the claim interval from CLI args or environment.

    Falls back to 5 seconds for missing, invalid or non-positive values.
    """
    if args.interval is not None:
        if args.interval <= 0:
            logger.warning(f"Invalid interval={args.interval}, using default 5.0")
            return 5.0
        return args.interval

    try:
        interval = float(os.environ.get("BUILD_WORKER_INTERVAL", "5"))
        if interval <= 0:
            logger.warning(
                f"Invalid BUILD_WORKER_INTERVAL={interval}, using default 5.0"
            )
            return 5.0
        return interval
    except ValueError:
        logger.warning(
            f"Invalid BUILD_WORKER_INTERVAL={os.environ.get('BUILD_WORKER_INTERVAL')}, "
            "using default 5.0"
        )
        return 5.0


async def run_worker(args: argparse.Namespace) -> None:
    control_plane_url = get_setting(
        args.control_plane, "CONTROL_PLANE_URL", "http://localhost:8080"
    )
    name = get_setting(args.name, "BUILD_WORKER_NAME", "builder-local")
    workspace = get_setting(args.workspace, "BUILD_WORKER_WORKSPACE", "./worker-tmp")
    registry = get_setting(args.registry, "BUILD_WORKER_REGISTRY")
    interval = get_interval(args)

    logger.info("Starting mdp build worker")
    logger.info(f"  Control plane: {control_plane_url}")
    logger.info(f"  Worker name: {name}")
    logger.info(f"  Workspace: {workspace}")
    logger.info(f"  Registry: {registry or 'ghcr.io/<owner>'}")
    logger.info(f"  Interval: {interval}s")

    client = ControlPlaneClient(
        control_plane_url,
        token=get_setting(args.token, "CONTROL_PLANE_TOKEN") or None,
    )
    worker = BuildWorker(
        client,
        name=name,
        workspace=workspace,
        registry=registry,
        github_token=os.environ.get("GITHUB_TOKEN", ""),
        interval=interval,
        push=args.push,
        keep_workspace=args.keep_workspace,
    )

    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
        await shutdown_event.wait()
    finally:
        await worker.stop()


def main() -> int:
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_worker(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
