#!/usr/bin/env python3

"""
Entry point script for the OIO trading system.
"""

import asyncio
import sys
import os

# Add the project root to the Python path if needed
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from oio_trader.core.config import Config
from oio_trader.core.exceptions import ConfigurationError, OIOTraderError
from oio_trader.core.logging_config import setup_logging
from oio_trader.main import TradingApp


async def start_trading() -> int:
    """Start the trading application."""
    try:
        config = Config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    log_config = config.get_logging_config()
    logger = setup_logging(
        log_level=log_config.get("level", "INFO"),
        log_dir=log_config.get("log_dir"),
        enable_file_logging=log_config.get("enable_file_logging", True),
    )
    logger.info("Starting OIO trading system...")

    if not config.validate_api_token():
        logger.error(
            "No valid API token found. Please set the PROJECTX_API_TOKEN environment variable "
            "or add it to your configuration."
        )
        return 2

    try:
        app = TradingApp(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    try:
        await app.run()
    except asyncio.CancelledError:
        logger.info("Trading system stopped.")
    except OIOTraderError as e:
        logger.error(f"Trading system stopped: {str(e)}")
        return 1

    return 0


if __name__ == "__main__":
    try:
        exit_code = asyncio.run(start_trading())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nTrading system terminated by user.")
        sys.exit(0)
