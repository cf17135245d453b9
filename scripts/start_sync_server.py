#!/usr/bin/env python3
"""Start Registry Server script.

This script starts the reference registry that refsync clients pull from
and push to.

Usage:
    python scripts/start_sync_server.py [--debug] [--port PORT] [--health-check]
"""

import argparse
import logging
import sys
from pathlib import Path

import requests

from refsync.config import Config
from refsync.sync_server import start_sync_server


def setup_logging(log_dir: Path, level: str = "INFO", debug: bool = False) -> None:
    """Setup logging configuration."""
    log_level = logging.DEBUG if debug else getattr(logging, level.upper())

    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_dir / "sync_server.log"),
        ],
    )


def health_check(host: str, port: int) -> int:
    health_url = f"http://{host}:{port}/health"
    try:
        response = requests.get(health_url, timeout=5)
    except requests.exceptions.ConnectionError:
        print(f"✗ Cannot connect to registry server at {health_url}")
        print("  Is the server running? Start it with: python scripts/start_sync_server.py")
        return 1

    if response.status_code != 200:
        print(f"✗ Registry server returned status {response.status_code}")
        return 1

    data = response.json()
    print("✓ Registry server is healthy")
    print(f"  Status: {data.get('status')}")
    print(f"  Service: {data.get('service')}")
    return 0


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="Start the refsync reference registry server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/start_sync_server.py
  python scripts/start_sync_server.py --debug
  python scripts/start_sync_server.py --port 9000
  python scripts/start_sync_server.py --health-check
        """,
    )
    parser.add_argument("--config", default="config/config.yaml", help="Config file path")
    parser.add_argument("--host", help="Server host (overrides config)")
    parser.add_argument("--port", type=int, help="Server port (overrides config)")
    parser.add_argument("--db", help="SQLite database path (overrides config)")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--health-check", action="store_true", help="Run health check and exit")

    args = parser.parse_args()

    config = Config(args.config)

    if args.host:
        config.set("server.host", args.host)
    if args.port:
        config.set("server.port", args.port)
    if args.db:
        config.set("server.db_path", args.db)

    host = config.server_host
    port = config.server_port

    if args.health_check:
        return health_check(host, port)

    setup_logging(config.log_dir, args.log_level, args.debug)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("refsync Registry Server")
    logger.info("=" * 60)
    logger.info(f"Host: {host}")
    logger.info(f"Port: {port}")
    logger.info(f"Database: {config.server_db_path}")
    logger.info(
        f"Push limit: {config.push_limit_per_day} per user and repo "
        f"every {config.push_window_hours}h"
    )
    logger.info(f"Health check: http://{host}:{port}/health")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)

    try:
        start_sync_server(config, debug=args.debug)
        return 0
    except KeyboardInterrupt:
        logger.info("Registry server stopped by user")
        return 0
    except Exception as e:
        logger.exception(f"Registry server error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
