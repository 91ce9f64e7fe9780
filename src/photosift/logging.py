"""Logging configuration for photosift."""

from __future__ import annotations

import logging
import pathlib


_FILE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"


def configure_logging(
    verbose: bool = False,
    quiet: bool = False,
    log_file: pathlib.Path | None = None,
) -> None:
    """Configure the photosift root logger.

    Console output follows the verbosity flags. When *log_file* is given,
    everything down to DEBUG is additionally appended there with timestamps,
    which is where long watch sessions leave their trail.
    """
    if verbose:
        level = logging.DEBUG
        fmt = "%(levelname)s: %(message)s"
    elif quiet:
        level = logging.WARNING
        fmt = "%(levelname)s: %(message)s"
    else:
        level = logging.INFO
        fmt = "%(message)s"

    root_logger = logging.getLogger("photosift")
    for old in root_logger.handlers:
        old.close()
    root_logger.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(fmt))
    root_logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        root_logger.addHandler(file_handler)
        root_logger.setLevel(logging.DEBUG)
    else:
        root_logger.setLevel(level)
