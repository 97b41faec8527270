"""Logging setup for the command-line entry point.

Library modules only create module loggers; handlers are installed here,
once, by the CLI.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(name)s: %(message)s"


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route reprobuild log records to a rich handler on stderr.

    Args:
        level: Logging level name.
        console: Optional console to render to (defaults to stderr).
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("reprobuild")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


__all__ = ["LOG_FORMAT", "configure_logging"]
