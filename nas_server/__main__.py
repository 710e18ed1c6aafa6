"""
Entrypoint for running the NAS controller server.

Usage:
    python -m nas_server [OPTIONS]
    nas-controller [OPTIONS]  (after pip install)

Environment Variables:
    NAS_DATA_DIR: Data directory (default: /data)
    NAS_HOST: Listen address (default: 0.0.0.0)
    NAS_PORT: Listen port (default: 13000)
    NAS_PORT_RANGE_START: First port handed to apps (default: 13001)
    NAS_PORT_RANGE_END: Last port handed to apps (default: 13999)
    NAS_BUILD_TIMEOUT: Seconds before a background build is abandoned (default: 1800)
"""

import argparse
import logging
import sys

import uvicorn

from . import app as app_module
from .config import Settings

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="NAS Controller - build and run Dockerized apps from git repositories",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  NAS_DATA_DIR            Data directory (default: /data)
  NAS_HOST                Listen address (default: 0.0.0.0)
  NAS_PORT                Listen port (default: 13000)
  NAS_PORT_RANGE_START    First port handed to apps (default: 13001)
  NAS_PORT_RANGE_END      Last port handed to apps (default: 13999)
  NAS_BUILD_TIMEOUT       Background build timeout in seconds (default: 1800)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  nas-controller

  # Keep data somewhere else and use a smaller port range
  nas-controller --data-dir ./data --port-range-start 14001 --port-range-end 14099

  # Enable debug logging
  nas-controller --log-level DEBUG
        """,
    )

    parser.add_argument("--data-dir", type=str, default=None, help="Data directory")
    parser.add_argument("--host", type=str, default=None, help="Listen address")
    parser.add_argument("--port", type=int, default=None, help="Listen port")
    parser.add_argument(
        "--port-range-start", type=int, default=None, help="First port handed to apps"
    )
    parser.add_argument("--port-range-end", type=int, default=None, help="Last port handed to apps")
    parser.add_argument(
        "--build-timeout",
        type=float,
        default=None,
        help="Seconds before a background build is abandoned",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """
    Merge command-line arguments over environment-derived settings.

    Args:
        args: Parsed command-line arguments

    Returns:
        Effective settings
    """
    settings = Settings.from_env()

    if args.data_dir:
        settings.data_dir = args.data_dir
    if args.host:
        settings.host = args.host
    if args.port is not None:
        settings.port = args.port
    if args.port_range_start is not None:
        settings.port_range_start = args.port_range_start
    if args.port_range_end is not None:
        settings.port_range_end = args.port_range_end
    if args.build_timeout is not None:
        if args.build_timeout <= 0:
            logger.warning(f"Invalid build timeout {args.build_timeout}, keeping {settings.build_timeout}")
        else:
            settings.build_timeout = args.build_timeout

    return settings


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the server.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = build_settings(args)
    if settings.port_range_start > settings.port_range_end:
        logger.error(
            f"Invalid port range {settings.port_range_start}-{settings.port_range_end}"
        )
        return 1

    app_module.settings = settings

    logger.info("Starting NAS Controller")
    logger.info(f"  Data directory: {settings.data_dir}")
    logger.info(f"  Listening on: {settings.host}:{settings.port}")
    logger.info(f"  App port range: {settings.port_range_start}-{settings.port_range_end}")
    logger.info(f"  Build timeout: {settings.build_timeout}s")

    try:
        uvicorn.run(
            app_module.app,
            host=settings.host,
            port=settings.port,
            log_level=args.log_level.lower(),
        )
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
