"""
Shared loguru setup for the command-line tools in this directory.

Both tools write their real output (SAM text or a report) to stdout, so all
logging goes to stderr.
"""

from __future__ import annotations

import argparse
import sys

from loguru import logger

# verbose - quiet -> loguru level, clamped at both ends
_LEVELS: dict[int, str] = {
    -3: "CRITICAL",
    -2: "ERROR",
    -1: "WARNING",
    0: "SUCCESS",
    1: "INFO",
    2: "DEBUG",
    3: "TRACE",
}


def level_for(verbose: int, quiet: int) -> str:
    """Map -v/-q counts onto a loguru level name, starting from SUCCESS."""
    delta = max(-3, min(3, verbose - quiet))
    return _LEVELS[delta]


def configure_logging(verbose: int, quiet: int) -> None:
    logger.remove()
    level_str = level_for(verbose, quiet)
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


def add_verbosity_args(p: argparse.ArgumentParser) -> None:
    """Attach the mutually exclusive -v/-vv/-vvv and -q/-qq/-qqq flags."""
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )
