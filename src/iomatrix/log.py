# Copyright (c) Syntropy Systems
"""Logging setup: rich console handler plus a per-run log file."""
from __future__ import annotations

import logging
import platform
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from rich.logging import RichHandler

if TYPE_CHECKING:
    from rich.console import Console

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(
    output_dir: Path | None = None,
    verbose: bool = False,
    console: Console | None = None,
) -> Path | None:
    """Configure the ``iomatrix`` logger.

    Returns the path of the log file when an output directory is given.
    """
    root = logging.getLogger("iomatrix")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(console_handler)

    if output_dir is None:
        return None

    output_dir.mkdir(parents=True, exist_ok=True)
    log_path = output_dir / f"log-{datetime.now().strftime('%Y-%m-%d-%H%M%S-%f')}.log"
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    return log_path


def host_info() -> dict[str, str]:
    """Describe the host the run executes on."""
    uname = platform.uname()
    return {
        "system": uname.system,
        "node": uname.node,
        "release": uname.release,
        "version": uname.version,
        "machine": uname.machine,
    }


def log_host_info() -> dict[str, str]:
    """Log and return the host description."""
    info = host_info()
    logger.info("Uname: %s", " ".join(info.values()))
    return info


def flush_file_logs(directory: Path) -> list[Path]:
    """Flush the log files written under directory and return their paths."""
    root = logging.getLogger("iomatrix")
    paths: list[Path] = []
    for handler in root.handlers:
        if not isinstance(handler, logging.FileHandler):
            continue
        handler.flush()
        path = Path(handler.baseFilename)
        if path.parent.resolve() == directory.resolve():
            paths.append(path)
    return paths
