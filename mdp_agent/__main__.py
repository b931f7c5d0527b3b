"""
Standalone entrypoint for running the host reconciliation agent.

Usage:
    python -m mdp_agent [OPTIONS]
    mdp-agent [OPTIONS]  (after pip install)

Environment Variables:
    CONTROL_PLANE_URL: Control-plane base URL (default: http://localhost:8080)
    CONTROL_PLANE_TOKEN: Bearer token for the control plane (default: unset)
    TRAEFIK_DYNAMIC_PATH: Traefik dynamic config output (default: ./traefik.yml)
    AGENT_COMPOSE_DIR: Directory for materialized compose files (default: ./compose)
    AGENT_POLL_INTERVAL: Seconds between config passes (default: 15)
    AGENT_RECONCILE_INTERVAL: Seconds between reconcile passes (default: 20)
    AGENT_COMMAND_TIMEOUT: Seconds before a docker command is killed (default: none)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from mdp_client.client import ControlPlaneClient

from .reconciler import ReconciliationAgent
from .runtime import DockerRuntime

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="mdp agent - converge host containers toward desired state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  CONTROL_PLANE_URL          Control-plane base URL (default: http://localhost:8080)
  CONTROL_PLANE_TOKEN        Bearer token for the control plane
  TRAEFIK_DYNAMIC_PATH       Traefik dynamic config output (default: ./traefik.yml)
  AGENT_COMPOSE_DIR          Materialized compose files (default: ./compose)
  AGENT_POLL_INTERVAL        Seconds between config passes (default: 15)
  AGENT_RECONCILE_INTERVAL   Seconds between reconcile passes (default: 20)
  AGENT_COMMAND_TIMEOUT      Seconds before a docker command is killed

Note: Command-line arguments override environment variables.

Examples:
  # Run against a remote control plane
  mdp-agent --control-plane https://cp.example.com --token secret

  # Reconcile more often with debug logging
  mdp-agent --reconcile-interval 5 --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--control-plane",
        type=str,
        default=None,
        help="Control-plane URL (default: CONTROL_PLANE_URL env)",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=None,
        help="Control-plane bearer token (default: CONTROL_PLANE_TOKEN env)",
    )
    parser.add_argument(
        "--traefik-path",
        type=str,
        default=None,
        help="Traefik dynamic config path (default: TRAEFIK_DYNAMIC_PATH env)",
    )
    parser.add_argument(
        "--compose-dir",
        type=str,
        default=None,
        help="Compose directory (default: AGENT_COMPOSE_DIR env)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between config passes (default: AGENT_POLL_INTERVAL env or 15)",
    )
    parser.add_argument(
        "--reconcile-interval",
        type=float,
        default=None,
        help="Seconds between reconcile passes "
        "(default: AGENT_RECONCILE_INTERVAL env or 20)",
    )
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=None,
        help="Seconds before a docker command is killed "
        "(default: AGENT_COMMAND_TIMEOUT env or none)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_control_plane_url(args: argparse.Namespace) -> str:
    if args.control_plane:
        return args.control_plane
    return os.environ.get("CONTROL_PLANE_URL", "http://localhost:8080")


def get_token(args: argparse.Namespace) -> str | None:
    if args.token:
        return args.token
    return os.environ.get("CONTROL_PLANE_TOKEN") or None


def get_traefik_path(args: argparse.Namespace) -> str:
    if args.traefik_path:
        return args.traefik_path
    return os.environ.get("TRAEFIK_DYNAMIC_PATH", "./traefik.yml")


def get_compose_dir(args: argparse.Namespace) -> str:
    if args.compose_dir:
        return args.compose_dir
    return os.environ.get("AGENT_COMPOSE_DIR", "./compose")


def get_interval(value: float | None, env_var: str, default: float) -> float:
    """
    Get a positive interval from a CLI value or environment variable.

    Args:
        value: Value given on the command line, if any
        env_var: Environment variable consulted when value is None
        default: Fallback for missing or invalid values

    Returns:
        Interval in seconds
    """
    # Try CLI arg first
    if value is not None:
        if value <= 0:
            logger.warning(f"Invalid interval={value}, using default {default}")
            return default
        return value

    # Fall back to environment variable
    try:
        interval = float(os.environ.get(env_var, str(default)))
        if interval <= 0:
            logger.warning(f"Invalid {env_var}={interval}, using default {default}")
            return default
        return interval
    except ValueError:
        logger.warning(
            f"Invalid {env_var}={os.environ.get(env_var)}, using default {default}"
        )
        return default


def get_command_timeout(args: argparse.Namespace) -> float | None:
    """Get the per-command timeout; unset or non-positive means no timeout."""
    if args.command_timeout is not None:
        return args.command_timeout if args.command_timeout > 0 else None

    raw = os.environ.get("AGENT_COMMAND_TIMEOUT", "")
    if not raw:
        return None
    try:
        timeout = float(raw)
    except ValueError:
        logger.warning(f"Invalid AGENT_COMMAND_TIMEOUT={raw}, using no timeout")
        return None
    return timeout if timeout > 0 else None


async def run_agent(args: argparse.Namespace) -> None:
    """
    Initialize and run the agent until SIGINT or SIGTERM.

    Args:
        args: Parsed command-line arguments
    """
    control_plane_url = get_control_plane_url(args)
    traefik_path = get_traefik_path(args)
    compose_dir = get_compose_dir(args)
    poll_interval = get_interval(args.poll_interval, "AGENT_POLL_INTERVAL", 15.0)
    reconcile_interval = get_interval(
        args.reconcile_interval, "AGENT_RECONCILE_INTERVAL", 20.0
    )
    command_timeout = get_command_timeout(args)

    logger.info("Starting mdp agent")
    logger.info(f"  Control plane: {control_plane_url}")
    logger.info(f"  Traefik config: {traefik_path}")
    logger.info(f"  Compose dir: {compose_dir}")
    logger.info(f"  Poll interval: {poll_interval}s")
    logger.info(f"  Reconcile interval: {reconcile_interval}s")
    logger.info(f"  Command timeout: {command_timeout or 'none'}")

    agent = ReconciliationAgent(
        client=ControlPlaneClient(control_plane_url, token=get_token(args)),
        runtime=DockerRuntime(command_timeout=command_timeout),
        traefik_path=traefik_path,
        compose_dir=compose_dir,
        poll_interval=poll_interval,
        reconcile_interval=reconcile_interval,
    )

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await agent.start()
        await shutdown_event.wait()
    except Exception as e:
        logger.error(f"Agent error: {e}", exc_info=True)
        raise
    finally:
        await agent.stop()
        logger.info("Agent stopped cleanly")


def main() -> int:
    """
    Main entrypoint for the agent.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_agent(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
