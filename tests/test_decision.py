import pytest

from reencoder.decision import classify, lookup_existing
from reencoder.ledger import SqliteLedger
from reencoder.schema import Classification, Observation, Record

TARGET = "1.4.3"


def _observed(path="/music/a.flac", encoder="1.3.2"):
    return Observation(absolute_path=path, fingerprint="h1", encoder_identity=encoder)


def test_unknown_content_is_new_and_pending():
    decision = classify(_observed(), None, TARGET)

    assert decision.classification is Classification.NEW
    assert decision.record == Record(
        absolute_path="/music/a.flac", encoder_identity="1.3.2", pending=True
    )


def test_new_content_is_pending_even_when_encoder_matches():
    decision = classify(_observed(encoder=TARGET), None, TARGET)

    assert decision.classification is Classification.NEW
    assert decision.record.pending is True


def test_pending_record_is_retried_even_with_matching_encoder():
    existing = Record(absolute_path="/music/a.flac", encoder_identity=TARGET, pending=True)

    decision = classify(_observed(encoder=TARGET), existing, TARGET)

    assert decision.classification is Classification.NEEDS_REENCODE
    assert decision.record.pending is True


def test_outdated_encoder_needs_reencode():
    existing = Record(absolute_path="/music/a.flac", encoder_identity="1.3.2")

    decision = classify(_observed(), existing, TARGET)

    assert decision.classification is Classification.NEEDS_REENCODE
    assert decision.record.pending is True


def test_outdated_encoder_wins_over_moved_path():
    existing = Record(absolute_path="/old/a.flac", encoder_identity="1.3.2")

    decision = classify(_observed(path="/new/a.flac"), existing, TARGET)

    assert decision.classification is Classification.NEEDS_REENCODE
    assert decision.record.absolute_path == "/new/a.flac"


def test_moved_file_keeps_done_state_with_new_path():
    existing = Record(absolute_path="/old/a.flac", encoder_identity=TARGET)

    decision = classify(_observed(path="/new/a.flac", encoder=TARGET), existing, TARGET)

    assert decision.classification is Classification.MOVED
    assert decision.record == Record(
        absolute_path="/new/a.flac", encoder_identity=TARGET, pending=False
    )
    assert decision.counts_as_work is False


def test_up_to_date_file():
    existing = Record(absolute_path="/music/a.flac", encoder_identity=TARGET)

    decision = classify(_observed(encoder=TARGET), existing, TARGET)

    assert decision.classification is Classification.UP_TO_DATE
    assert decision.record == existing


@pytest.fixture
def ledger(tmp_path):
    with SqliteLedger(tmp_path / "ledger.sqlite3") as opened:
        yield opened


def test_lookup_existing_missing_key_is_none(ledger):
    assert lookup_existing(ledger, "missing") is None


def test_lookup_existing_returns_record(ledger):
    record = Record(absolute_path="/music/a.flac", encoder_identity=TARGET)
    ledger.upsert("h1", record)

    assert lookup_existing(ledger, "h1") == record
