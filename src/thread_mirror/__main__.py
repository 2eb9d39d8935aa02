"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from .app import ThreadMirrorApp
from .config import load_settings
from .errors import ThreadMirrorError


def main() -> None:
    parser = argparse.ArgumentParser(description="Mirror Discord threads into channels")
    parser.add_argument("--env-file", default=".env", help="Path to a .env file to load")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (defaults to LOG_LEVEL or INFO)",
    )
    parser.add_argument("--debug", action="store_true", help="Shortcut for --log-level DEBUG")
    args = parser.parse_args()

    load_dotenv(args.env_file)

    level_name = "DEBUG" if args.debug else (args.log_level or os.getenv("LOG_LEVEL") or "INFO")
    log_level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger = logging.getLogger(__name__)
    if args.debug:
        logger.info("Debug mode enabled")

    try:
        settings = load_settings(os.environ)
    except ThreadMirrorError as exc:
        parser.error(str(exc))

    app = ThreadMirrorApp(settings)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    except ThreadMirrorError as exc:
        logger.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
