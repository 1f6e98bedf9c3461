#!/usr/bin/env python3
"""processbot entry point.

Run:
  python -m processbot                     # run the bot with INFO logging
  python -m processbot --log-level DEBUG
"""

import argparse
import asyncio
import sys

from processbot.runtime import main_async


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="processbot", add_help=True)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def main() -> None:
    """CLI dispatcher for the bot."""
    args = parse_args(sys.argv[1:])
    try:
        asyncio.run(main_async(args.log_level))
    except KeyboardInterrupt:
        print("\nBot stopped by user", file=sys.stderr)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        print(f"Bot error: {exc}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
