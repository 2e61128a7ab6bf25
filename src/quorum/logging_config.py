"""Rich console logging and the progress callback channel."""

from __future__ import annotations

import logging
from collections.abc import Callable

from rich.console import Console
from rich.logging import RichHandler

ProgressCallback = Callable[[str, str], None]

console = Console(stderr=True)
progress_logger = logging.getLogger("quorum.progress")


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure the root logger with a Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def report_progress(callback: ProgressCallback | None, phase: str, message: str) -> None:
    progress_logger.info("[%s] %s", phase, message)
    if callback is None:
        return
    try:
        callback(phase, message)
    except Exception:
        progress_logger.exception("Progress callback failed for phase '%s'", phase)
