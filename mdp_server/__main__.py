"""
Entrypoint for running the control-plane API server.

Usage:
    python -m mdp_server [OPTIONS]
    mdp-server [OPTIONS]  (after pip install)

Environment Variables:
    MDP_STATE_PATH: JSON snapshot path (default: ./data/state.json)
    MDP_API_TOKEN: Bearer token required on /v1 routes (default: unset)
    MDP_CERT_RESOLVER: Traefik certificate resolver (default: le)
    MDP_HOST: Bind address (default: 0.0.0.0)
    MDP_PORT: Bind port (default: 8080)
"""

import argparse
import logging
import os
import sys

import uvicorn

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="mdp control plane - desired-state API for agents and workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  MDP_STATE_PATH      JSON snapshot path (default: ./data/state.json)
  MDP_API_TOKEN       Bearer token required on /v1 routes
  MDP_CERT_RESOLVER   Traefik certificate resolver (default: le)
  MDP_HOST            Bind address (default: 0.0.0.0)
  MDP_PORT            Bind port (default: 8080)

Note: Command-line arguments override environment variables.
        """,
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Bind address (default: MDP_HOST env or 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Bind port (default: MDP_PORT env or 8080)",
    )
    parser.add_argument(
        "--state-path",
        type=str,
        default=None,
        help="JSON snapshot path (default: MDP_STATE_PATH env or ./data/state.json)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args()


def get_host(args: argparse.Namespace) -> str:
    if args.host:
        return args.host
    return os.environ.get("MDP_HOST", "0.0.0.0")


def get_port(args: argparse.Namespace) -> int:
    """
    Get the bind port from CLI args or environment.

    Falls back to 8080 when MDP_PORT is not a valid integer.
    """
    if args.port is not None:
        return args.port
    try:
        return int(os.environ.get("MDP_PORT", "8080"))
    except ValueError:
        logger.warning(
            f"Invalid MDP_PORT={os.environ.get('MDP_PORT')}, using default 8080"
        )
        return 8080


def main() -> int:
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # app.py reads the state path from the environment during startup
    if args.state_path:
        os.environ["MDP_STATE_PATH"] = args.state_path

    host, port = get_host(args), get_port(args)
    logger.info(f"Starting control plane on {host}:{port}")
    try:
        uvicorn.run(
            "mdp_server.app:app",
            host=host,
            port=port,
            log_level=args.log_level.lower(),
        )
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
