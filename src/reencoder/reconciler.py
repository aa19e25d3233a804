"""Reencode pass: act on pending ledger records and drop stale ones."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from tqdm import tqdm

from reencoder.fingerprint import calculate_sha256
from reencoder.ledger import Ledger, LedgerBatch
from reencoder.schema import Record
from reencoder.tools import EncodeError, EncodeInterruptedError, reencode_file
from reencoder.workers import RunContext, is_under, run_bounded

logger = logging.getLogger("reencoder.reencode")


@dataclass
class ReconcileSummary:
    encoded: int = 0
    failed: int = 0
    removed: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class EncodeJob:
    key: str
    record: Record


def count_pending(ledger: Ledger, root: Path | None = None) -> int:
    """Count pending records, optionally only those under ``root``."""
    return sum(
        1
        for _key, record in ledger.iterate_all()
        if record.pending and is_under(record.absolute_path, root)
    )


def clean_ledger(ledger: Ledger, cancel_event: threading.Event) -> int:
    """Delete every record whose file no longer exists, across all roots."""
    batch = ledger.batch()
    removed = 0
    cancelled = False
    try:
        for key, record in ledger.iterate_all():
            if cancel_event.is_set():
                cancelled = True
                break
            if not os.path.exists(record.absolute_path):
                logger.info("Removing stale record for %s", record.absolute_path)
                batch.delete(key)
                removed += 1
        batch.commit()
    except BaseException:
        batch.discard()
        raise
    if removed:
        ledger.compact()
    if cancelled:
        logger.warning("Cleaning stopped early; %d stale record(s) removed", removed)
    else:
        logger.info("Removed %d stale record(s) from the ledger", removed)
    return removed


def reencode_files(
    context: RunContext, ledger: Ledger, total: int | None = None
) -> ReconcileSummary:
    """Reencode every pending file under ``context.root`` and re-key its record.

    ``total`` sizes the progress bar; by default it is the scan pass's work
    counter, or the number of pending records when no scan ran first.
    Failed encodes are logged and stay pending for the next run.
    """
    if total is None:
        total = context.counter.value or count_pending(ledger, context.root)

    logger.info(
        "Reencoding pending files under %s with flac %s",
        context.root or "all roots",
        context.target_encoder,
    )
    start_time = time.time()
    summary = ReconcileSummary()
    summary_lock = threading.Lock()
    batch = ledger.batch()
    progress = tqdm(
        total=total,
        desc="Reencoding",
        unit="files",
        dynamic_ncols=True,
        disable=None,
    )

    def _encode_one(job: EncodeJob) -> None:
        path = job.record.absolute_path
        try:
            reencode_file(path, context.flac_args)
        except EncodeInterruptedError as exc:
            logger.warning("%s; it stays pending", exc)
            with summary_lock:
                summary.failed += 1
            return
        except EncodeError as exc:
            logger.error("Failed to reencode %s: %s", path, exc)
            with summary_lock:
                summary.failed += 1
            return

        try:
            new_key = calculate_sha256(path)
        except OSError as exc:
            logger.error("Reencoded %s but could not fingerprint it: %s", path, exc)
            with summary_lock:
                summary.failed += 1
            return
        batch.replace(
            job.key,
            new_key,
            Record(
                absolute_path=path,
                encoder_identity=context.target_encoder,
                pending=False,
            ),
        )
        logger.debug("Reencoded %s (%s -> %s)", path, job.key, new_key)
        with summary_lock:
            summary.encoded += 1
            progress.update(1)

    try:
        result = run_bounded(
            _pending_jobs(context, ledger, batch, summary, summary_lock, progress),
            _encode_one,
            context.encode_workers,
            context.cancel_event,
            name="encode",
        )
        summary.cancelled = result.cancelled
        batch.commit()
    except BaseException:
        batch.discard()
        logger.error("Reencoding aborted; no ledger changes were saved")
        raise
    finally:
        progress.close()

    elapsed = time.time() - start_time
    if summary.cancelled:
        logger.warning(
            "Reencoding stopped early; remaining files stay pending for the next run"
        )
    logger.info(
        "Reencoded %d file(s) in %.2f seconds (%d failed, %d stale record(s) removed)",
        summary.encoded,
        elapsed,
        summary.failed,
        summary.removed,
    )
    return summary


def _pending_jobs(
    context: RunContext,
    ledger: Ledger,
    batch: LedgerBatch,
    summary: ReconcileSummary,
    summary_lock: threading.Lock,
    progress: tqdm,
) -> Iterator[EncodeJob]:
    """Yield pending in-scope records, deleting records of vanished files.

    Each path is dispatched at most once. A second pending record for the
    same path is stale: only one key can match the bytes on disk.
    """
    dispatched: set[str] = set()
    for key, record in ledger.iterate_all():
        path = record.absolute_path
        if not context.in_scope(path):
            continue
        if not os.path.exists(path):
            logger.info("Removing stale record for %s", path)
            batch.delete(key)
        elif record.pending and path in dispatched:
            logger.info("Removing duplicate pending record %s for %s", key, path)
            # The encode of the kept record may land on this very key.
            batch.delete_unless_staged(key)
        else:
            if record.pending:
                dispatched.add(path)
                yield EncodeJob(key=key, record=record)
            continue

        with summary_lock:
            summary.removed += 1
            if record.pending and progress.total:
                progress.total -= 1
                progress.refresh()
