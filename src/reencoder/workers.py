"""Bounded dispatch, cooperative cancellation and the per-run context."""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from reencoder.config_utils import (
    DEFAULT_ENCODE_WORKERS,
    DEFAULT_EXTENSION,
    DEFAULT_SCAN_WORKERS,
)
from reencoder.tools import DEFAULT_FLAC_ARGS

T = TypeVar("T")

logger = logging.getLogger("reencoder.workers")


def normalize_root(path: str | os.PathLike[str]) -> Path:
    """Return ``path`` as an absolute path without resolving symlinks."""
    return Path(os.path.abspath(os.path.expanduser(path)))


def is_under(path: str, root: Path | None) -> bool:
    """Whether ``path`` lies under ``root``; everything does when there is no root."""
    return root is None or Path(path).is_relative_to(root)


class WorkCounter:
    """Counter shared by many worker threads."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


@dataclass
class RunContext:
    """Everything one invocation shares between the scan and reencode passes."""

    target_encoder: str
    root: Path | None = None
    flac_args: tuple[str, ...] = DEFAULT_FLAC_ARGS
    extension: str = DEFAULT_EXTENSION
    scan_workers: int = DEFAULT_SCAN_WORKERS
    encode_workers: int = DEFAULT_ENCODE_WORKERS
    cancel_event: threading.Event = field(default_factory=threading.Event)
    counter: WorkCounter = field(default_factory=WorkCounter)

    def __post_init__(self) -> None:
        if self.root is not None:
            self.root = normalize_root(self.root)
        self.flac_args = tuple(self.flac_args)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def in_scope(self, path: str) -> bool:
        return is_under(path, self.root)


@dataclass
class DispatchResult:
    dispatched: int = 0
    cancelled: bool = False


def run_bounded(
    items: Iterable[T],
    func: Callable[[T], None],
    max_workers: int,
    cancel_event: threading.Event,
    *,
    name: str = "worker",
) -> DispatchResult:
    """Run ``func`` over ``items`` with at most ``max_workers`` in flight.

    ``items`` is consumed lazily, one item per free slot. Cancellation and
    earlier failures are checked only before a dispatch; units already
    running always finish. The first unit error is re-raised once every
    in-flight unit is done.
    """
    if max_workers < 1:
        raise ValueError("max_workers must be at least 1")

    slots = threading.BoundedSemaphore(max_workers)
    failed = threading.Event()
    errors: list[Exception] = []
    errors_lock = threading.Lock()
    result = DispatchResult()

    def _run(item: T) -> None:
        try:
            func(item)
        except Exception as exc:
            with errors_lock:
                errors.append(exc)
            failed.set()
        finally:
            slots.release()

    iterator: Iterator[T] = iter(items)
    with ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix=name
    ) as executor:
        try:
            while not failed.is_set():
                if cancel_event.is_set():
                    result.cancelled = True
                    break
                try:
                    item = next(iterator)
                except StopIteration:
                    break
                slots.acquire()
                if cancel_event.is_set():
                    slots.release()
                    result.cancelled = True
                    break
                if failed.is_set():
                    slots.release()
                    break
                executor.submit(_run, item)
                result.dispatched += 1
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    if errors:
        if len(errors) > 1:
            logger.debug("%d additional %s error(s) suppressed", len(errors) - 1, name)
        raise errors[0]
    return result


@contextmanager
def install_interrupt_handler(
    cancel_event: threading.Event,
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[None]:
    """Turn the first interrupt into a cancellation request.

    A second interrupt raises ``KeyboardInterrupt`` so the user can still
    force the process to stop. Previous handlers are restored on exit.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        try:
            signal_name = signal.Signals(signum).name
        except ValueError:
            signal_name = str(signum)
        if cancel_event.is_set():
            logger.warning("Received %s again; aborting", signal_name)
            raise KeyboardInterrupt
        logger.warning(
            "Received %s; letting in-flight work finish before stopping",
            signal_name,
        )
        cancel_event.set()

    previous = {sig: signal.signal(sig, _handler) for sig in signals}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
