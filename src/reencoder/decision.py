"""Decide what a freshly observed file needs, given what the ledger knows."""

from __future__ import annotations

import logging

from reencoder.ledger import Ledger, RecordNotFoundError
from reencoder.schema import (
    WORK_CLASSIFICATIONS,
    Classification,
    Decision,
    Observation,
    Record,
)

logger = logging.getLogger("reencoder.decision")


def lookup_existing(ledger: Ledger, fingerprint: str) -> Record | None:
    """Return the stored record for ``fingerprint``; a missing key is ``None``."""
    try:
        return ledger.get(fingerprint)
    except RecordNotFoundError:
        return None


def _classify(
    observed: Observation, existing: Record | None, target_encoder: str
) -> Classification:
    if existing is None:
        return Classification.NEW
    # An unfinished attempt is retried even if the encoder already matches.
    if existing.pending:
        return Classification.NEEDS_REENCODE
    if existing.encoder_identity != target_encoder:
        return Classification.NEEDS_REENCODE
    if existing.absolute_path != observed.absolute_path:
        return Classification.MOVED
    return Classification.UP_TO_DATE


def classify(
    observed: Observation, existing: Record | None, target_encoder: str
) -> Decision:
    """Classify ``observed`` and build the record that should be stored.

    The stored record always reflects the latest observation (path and
    embedded encoder); only the pending flag depends on the outcome.
    """
    classification = _classify(observed, existing, target_encoder)
    record = Record(
        absolute_path=observed.absolute_path,
        encoder_identity=observed.encoder_identity,
        pending=classification in WORK_CLASSIFICATIONS,
    )
    logger.debug(
        "%s classified as %s", observed.absolute_path, classification.value
    )
    return Decision(classification=classification, record=record)
