"""Logging setup that keeps log lines from tearing the progress bars."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from tqdm import tqdm

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s:%(lineno)d | %(message)s"
LEVEL_ENV_VAR = "REENCODER_LOG_LEVEL"


class TqdmLoggingHandler(logging.StreamHandler):
    """Stream handler that writes through ``tqdm.write``.

    Bars drawn on the same stream are cleared before the line is printed
    and redrawn below it.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=self.stream)
            self.flush()
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)


def resolve_level(
    level: int | str | None = None, *, verbose: bool = False, debug: bool = False
) -> int:
    """Pick the root level.

    ``debug`` wins over ``verbose``, which wins over ``level``. Without any
    of them the REENCODER_LOG_LEVEL environment variable is used, then
    WARNING.
    """
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    if isinstance(level, int):
        return level
    for candidate in (level, os.getenv(LEVEL_ENV_VAR)):
        if not candidate:
            continue
        resolved = logging.getLevelName(candidate.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.WARNING


def configure_logging(
    level: int = logging.WARNING,
    log_file: str | os.PathLike[str] | None = None,
) -> None:
    """Replace the root handlers with a tqdm-aware stderr handler.

    When ``log_file`` is given, records are also appended to it.
    """
    handlers: list[logging.Handler] = [TqdmLoggingHandler()]
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a", encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


__all__ = ["TqdmLoggingHandler", "configure_logging", "resolve_level"]
