"""Entry point for ``python -m dreams``.

Dispatches to CLI commands (dream, history, stats, health) or starts the
MCP server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import logging
import sys


def _configure_logging() -> None:
    # stdout carries the MCP transport, so logs go to stderr.
    from dreams.config import get_config

    logging.basicConfig(
        level=get_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    _configure_logging()
    args = sys.argv[1:]

    from dreams.cli import COMMANDS

    if args and args[0] in COMMANDS:
        from dreams.cli import dispatch
        dispatch(args)
        return

    from dreams.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
