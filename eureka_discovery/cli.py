"""Argument parsing, configuration loading, and client bootstrap."""

from __future__ import annotations

import argparse
import logging
import sys

from .config import load_config
from .discovery_client import DiscoveryClient
from .exceptions import ConfigError, DiscoveryError
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eureka-discovery",
        description="Register this host with a Eureka registry and keep the lease alive",
    )
    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Fetch the registry once, log the known applications and exit",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the configuration file and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load config (minimal logging until config is loaded)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging)

    if args.validate:
        logger.info("Configuration is valid")
        return 0

    try:
        client = DiscoveryClient(config.eureka)
        if args.once:
            logger.info("Fetching registry once (--once)")
            if not client.refresh_once():
                return 1
            for application in client.applications:
                logger.info(
                    "%s: %s", application.name, ", ".join(application.base_urls) or "no instances",
                    extra={"app": application.name},
                )
        else:
            client.run()
    except DiscoveryError as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0

    return 0
