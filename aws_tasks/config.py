"""Runtime config for task modules (simple dependency injection)."""

from __future__ import annotations
from typing import Callable, Optional
import logging

LOGGER: Optional[logging.Logger] = None
ECHO: Callable[[str], None] = print
COLOUR: bool = True


def setup(
    *,
    logger: Optional[logging.Logger] = None,
    echo: Optional[Callable[[str], None]] = None,
    colour: bool = True,
) -> None:
    """Provide shared dependencies to all task modules.

    Args:
        logger: Logger for operational messages (defaults to "aws_ops").
        echo: Sink for the human-readable reports (defaults to ``print``).
        colour: Whether reports may contain ANSI colour codes.
    """
    # pylint: disable=global-statement
    global LOGGER, ECHO, COLOUR
    LOGGER = logger or logging.getLogger("aws_ops")
    ECHO = echo or print
    COLOUR = colour
