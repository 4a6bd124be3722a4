#!/usr/bin/env python3
"""
UDP MQTT Gateway Entry Point

This module serves as the command-line entry point for the gateway.
It is responsible for:
1.  Parsing command-line arguments into `StartupOptions`.
2.  Loading and validating the configuration file.
3.  Instantiating and running the `GatewayApp`.
4.  Mapping startup failures to the process exit status. No other module
    terminates the process.

## Usage
    udpmqttgw [-h] [-v] [-c=FILE]

    Arguments:
        -h          show the help message and exit
        -v          increase output verbosity (repeatable)
        -c=FILE     path to config file (default: /etc/udpmqttgw.conf)

## Exit Codes
    0   help requested, or graceful shutdown via signal
    1   invalid configuration, UDP bind failure or MQTT connect failure
    2   invalid command-line arguments
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import List, Optional

from config.config import load_config, setup_logging, verbosity_to_level
from errors import BindError, ConfigError, MqttConnectionError
from gateway_app import GatewayApp

__version__ = "1.0.0"

DEFAULT_CONFIG_PATH = "/etc/udpmqttgw.conf"

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartupOptions:
    config_path: str = DEFAULT_CONFIG_PATH
    verbosity: int = 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="udpmqttgw",
        description="Forward UDP datagrams, unmodified, to an MQTT topic.",
    )
    parser.add_argument(
        "-v",
        dest="verbosity",
        action="count",
        default=0,
        help="increase output verbosity",
    )
    parser.add_argument(
        "-c",
        dest="config_path",
        metavar="FILE",
        default=DEFAULT_CONFIG_PATH,
        help=f"path to config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def parse_options(argv: Optional[List[str]] = None) -> StartupOptions:
    """
    Parse command-line arguments.

    `-h` exits with status 0, unknown arguments exit with status 2 after
    printing the usage to stderr (argparse behaviour).
    """
    args = build_parser().parse_args(argv)
    return StartupOptions(config_path=args.config_path, verbosity=args.verbosity)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the gateway service.

    Orchestrates the startup sequence:
    1.  Parses the command line.
    2.  Loads the configuration (nothing is opened if it is invalid).
    3.  Runs the `GatewayApp` on the asyncio event loop.

    Returns:
        int: The process exit status.
    """
    options = parse_options(argv)
    setup_logging(verbosity_to_level(options.verbosity))

    print(f"UDP MQTT Gateway, Version {__version__}")
    print(f"Using configuration file: {options.config_path}")

    try:
        config = load_config(options.config_path)
    except ConfigError as e:
        logger.error(f"{e}")
        print("Exiting, because of invalid configuration", file=sys.stderr)
        return EXIT_FAILURE

    config.setup_logging(options.verbosity)
    for line in config.describe():
        logger.info(line)

    app = GatewayApp(config)

    try:
        asyncio.run(app.start())
    except KeyboardInterrupt:
        print("\nReceived keyboard interrupt, shutting down...")
    except (BindError, MqttConnectionError) as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Unhandled error in gateway")
        print(f"Fatal error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
