"""Scan pass: walk a directory tree and bring the ledger up to date."""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from reencoder.decision import classify, lookup_existing
from reencoder.fingerprint import calculate_sha256
from reencoder.ledger import Ledger
from reencoder.schema import Classification, Observation
from reencoder.tools import probe_encoder_version
from reencoder.workers import RunContext, run_bounded

logger = logging.getLogger("reencoder.scan")


@dataclass
class ScanSummary:
    counts: Counter = field(default_factory=Counter)
    cancelled: bool = False

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def to_process(self) -> int:
        return (
            self.counts[Classification.NEW]
            + self.counts[Classification.NEEDS_REENCODE]
        )


def _raise_walk_error(error: OSError) -> None:
    raise error


def iter_tracked_files(root: Path, extension: str) -> Iterator[str]:
    """Yield regular files under ``root`` whose name ends with ``extension``.

    Symlinks and special files are skipped. Any error while walking the
    tree is raised to the caller.
    """
    extension = extension.lower()
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        for name in filenames:
            if not name.lower().endswith(extension):
                continue
            path = os.path.join(dirpath, name)
            if stat.S_ISREG(os.lstat(path).st_mode):
                yield path


def observe_file(path: str) -> Observation:
    """Fingerprint ``path`` and read the encoder that last wrote it."""
    return Observation(
        absolute_path=os.path.abspath(path),
        fingerprint=calculate_sha256(path),
        encoder_identity=probe_encoder_version(path),
    )


def index_files(context: RunContext, ledger: Ledger) -> ScanSummary:
    """Classify every tracked file under ``context.root`` and record the result.

    All ledger writes are committed together at the end of the pass, also
    when the pass was cancelled. If any file cannot be fingerprinted or
    probed, or the walk itself fails, nothing is committed and the error is
    raised.
    """
    root = context.root
    if root is None:
        raise ValueError("Indexing requires a root directory")
    if not root.is_dir():
        raise NotADirectoryError(f"Invalid root directory: {root}")

    logger.info("Indexing %s files under %s", context.extension, root)
    start_time = time.time()
    summary = ScanSummary()
    summary_lock = threading.Lock()
    batch = ledger.batch()
    progress = tqdm(
        desc="Indexing",
        unit="files",
        dynamic_ncols=True,
        disable=None,
    )

    def _index_one(path: str) -> None:
        observation = observe_file(path)
        existing = lookup_existing(ledger, observation.fingerprint)
        decision = classify(observation, existing, context.target_encoder)
        batch.upsert(observation.fingerprint, decision.record)

        with summary_lock:
            summary.counts[decision.classification] += 1
            if decision.counts_as_work:
                to_process = context.counter.increment()
                progress.set_postfix(to_process=to_process, refresh=False)
            progress.update(1)

    try:
        result = run_bounded(
            iter_tracked_files(root, context.extension),
            _index_one,
            context.scan_workers,
            context.cancel_event,
            name="scan",
        )
        summary.cancelled = result.cancelled
        batch.commit()
    except BaseException:
        batch.discard()
        logger.error("Indexing of %s aborted; no changes were saved", root)
        raise
    finally:
        progress.close()

    elapsed = time.time() - start_time
    if summary.cancelled:
        logger.warning(
            "Indexing stopped early after %d file(s); completed work was saved",
            summary.total,
        )
    logger.info(
        "Indexed %d file(s) in %.2f seconds: %d new, %d need reencoding, "
        "%d moved, %d up to date",
        summary.total,
        elapsed,
        summary.counts[Classification.NEW],
        summary.counts[Classification.NEEDS_REENCODE],
        summary.counts[Classification.MOVED],
        summary.counts[Classification.UP_TO_DATE],
    )
    return summary
