import threading
from unittest.mock import patch

import pytest

from conftest import TARGET_ENCODER, fake_probe, fake_reencode, write_track
from reencoder.fingerprint import calculate_sha256
from reencoder.ledger import RecordNotFoundError
from reencoder.reconciler import clean_ledger, count_pending, reencode_files
from reencoder.scanner import index_files
from reencoder.schema import Record
from reencoder.tools import EncodeError, EncodeInterruptedError
from reencoder.workers import RunContext


def _context(root=None, **kwargs):
    return RunContext(target_encoder=TARGET_ENCODER, root=root, **kwargs)


def _pending_record(path, encoder="1.3.2"):
    return Record(absolute_path=str(path), encoder_identity=encoder, pending=True)


def test_reencode_rekeys_record_under_new_fingerprint(library, ledger):
    track = write_track(library / "a.flac", "1.3.2")
    old_key = calculate_sha256(track)
    ledger.upsert(old_key, _pending_record(track))

    with patch("reencoder.reconciler.reencode_file", side_effect=fake_reencode):
        summary = reencode_files(_context(library), ledger)

    new_key = calculate_sha256(track)
    assert new_key != old_key
    assert summary.encoded == 1
    with pytest.raises(RecordNotFoundError):
        ledger.get(old_key)
    assert ledger.get(new_key) == Record(
        absolute_path=str(track), encoder_identity=TARGET_ENCODER, pending=False
    )


def test_unchanged_bytes_keep_the_same_key(library, ledger):
    track = write_track(library / "a.flac", "1.3.2")
    key = calculate_sha256(track)
    ledger.upsert(key, _pending_record(track))

    with patch("reencoder.reconciler.reencode_file"):
        reencode_files(_context(library), ledger)

    assert len(ledger) == 1
    assert ledger.get(key).pending is False


def test_records_of_vanished_files_are_removed(library, ledger):
    ledger.upsert("gone", _pending_record(library / "gone.flac"))
    ledger.upsert("done", Record(absolute_path=str(library / "also-gone.flac")))

    with patch("reencoder.reconciler.reencode_file") as mock_encode:
        summary = reencode_files(_context(library), ledger)

    mock_encode.assert_not_called()
    assert summary.removed == 2
    assert len(ledger) == 0


def test_failed_encode_stays_pending(library, ledger):
    track = write_track(library / "a.flac", "1.3.2")
    key = calculate_sha256(track)
    ledger.upsert(key, _pending_record(track))

    with patch(
        "reencoder.reconciler.reencode_file",
        side_effect=EncodeError(str(track), "flac exited with code 1"),
    ):
        summary = reencode_files(_context(library), ledger)

    assert summary.failed == 1
    assert summary.encoded == 0
    assert ledger.get(key) == _pending_record(track)


def test_interrupted_encode_stays_pending(library, ledger):
    track = write_track(library / "a.flac", "1.3.2")
    key = calculate_sha256(track)
    ledger.upsert(key, _pending_record(track))

    with patch(
        "reencoder.reconciler.reencode_file",
        side_effect=EncodeInterruptedError(str(track), "flac interrupted by signal 2"),
    ):
        summary = reencode_files(_context(library), ledger)

    assert summary.failed == 1
    assert ledger.get(key).pending is True


def test_records_outside_root_are_untouched(library, ledger, tmp_path):
    outside = write_track(tmp_path / "other" / "z.flac", "1.3.2")
    outside_key = calculate_sha256(outside)
    ledger.upsert(outside_key, _pending_record(outside))
    ledger.upsert("vanished", _pending_record(tmp_path / "other" / "gone.flac"))

    with patch("reencoder.reconciler.reencode_file") as mock_encode:
        summary = reencode_files(_context(library), ledger)

    mock_encode.assert_not_called()
    assert summary.removed == 0
    assert ledger.get(outside_key) == _pending_record(outside)
    assert ledger.get("vanished").pending is True


def test_cancelled_reencode_keeps_remaining_work_pending(library, ledger):
    for index in range(4):
        track = write_track(library / f"{index}.flac", "1.3.2", body=str(index).encode())
        ledger.upsert(calculate_sha256(track), _pending_record(track))
    context = _context(library, encode_workers=1)
    calls = []
    lock = threading.Lock()

    def encode(path, flac_args=None):
        with lock:
            calls.append(path)
        fake_reencode(path)
        context.cancel_event.set()

    with patch("reencoder.reconciler.reencode_file", side_effect=encode):
        summary = reencode_files(context, ledger)

    assert summary.cancelled is True
    assert summary.encoded == len(calls) == 1
    assert count_pending(ledger) == 3


def test_scan_then_reencode_end_to_end(library, ledger):
    track = write_track(library / "a.flac", "1.3.2")
    first_key = calculate_sha256(track)
    context = _context(library)

    with patch("reencoder.scanner.probe_encoder_version", side_effect=fake_probe):
        index_files(context, ledger)
    assert ledger.get(first_key) == _pending_record(track)

    with patch("reencoder.reconciler.reencode_file", side_effect=fake_reencode):
        reencode_files(context, ledger)

    second_key = calculate_sha256(track)
    assert [key for key, _record in ledger.iterate_all()] == [second_key]
    assert ledger.get(second_key) == Record(
        absolute_path=str(track), encoder_identity=TARGET_ENCODER, pending=False
    )

    rescan = _context(library)
    with patch("reencoder.scanner.probe_encoder_version", side_effect=fake_probe):
        summary = index_files(rescan, ledger)
    assert summary.to_process == 0
    assert rescan.counter.value == 0


def test_count_pending_respects_root(library, ledger, tmp_path):
    ledger.upsert("a", _pending_record(library / "a.flac"))
    ledger.upsert("b", _pending_record(tmp_path / "other" / "b.flac"))
    ledger.upsert("c", Record(absolute_path=str(library / "c.flac")))

    assert count_pending(ledger) == 2
    assert count_pending(ledger, library) == 1


def test_clean_ledger_removes_every_missing_file(library, ledger, tmp_path):
    present = write_track(library / "a.flac", "1.3.2")
    ledger.upsert("present", Record(absolute_path=str(present)))
    ledger.upsert("gone", Record(absolute_path=str(library / "gone.flac")))
    ledger.upsert("elsewhere", _pending_record(tmp_path / "else" / "x.flac"))

    removed = clean_ledger(ledger, threading.Event())

    assert removed == 2
    assert [key for key, _record in ledger.iterate_all()] == ["present"]


def test_retagged_file_is_encoded_once(library, ledger):
    track = write_track(library / "a.flac", "1.3.2")
    with patch("reencoder.scanner.probe_encoder_version", side_effect=fake_probe):
        index_files(_context(library), ledger)
    write_track(track, "1.3.2", body=b"audio with new tags")
    with patch("reencoder.scanner.probe_encoder_version", side_effect=fake_probe):
        index_files(_context(library), ledger)
    assert count_pending(ledger) == 2

    calls = []
    lock = threading.Lock()

    def encode(path, flac_args=None):
        with lock:
            calls.append(path)
        fake_reencode(path)

    with patch("reencoder.reconciler.reencode_file", side_effect=encode):
        summary = reencode_files(_context(library, encode_workers=4), ledger)

    assert calls == [str(track)]
    assert summary.encoded == 1
    assert summary.removed == 1
    assert dict(ledger.iterate_all()) == {
        calculate_sha256(track): Record(
            absolute_path=str(track), encoder_identity=TARGET_ENCODER
        )
    }


def test_duplicate_record_matching_encoded_bytes_survives(library, ledger):
    track = write_track(library / "a.flac", TARGET_ENCODER)
    current_key = calculate_sha256(track)
    ledger.upsert("0-stale", _pending_record(track))
    ledger.upsert(current_key, _pending_record(track, encoder=TARGET_ENCODER))

    with patch("reencoder.reconciler.reencode_file") as mock_encode:
        reencode_files(_context(library), ledger)

    mock_encode.assert_called_once()
    assert dict(ledger.iterate_all()) == {
        current_key: Record(absolute_path=str(track), encoder_identity=TARGET_ENCODER)
    }


def test_fingerprint_failure_after_encode_keeps_other_results(library, ledger):
    tracks = []
    for index in range(3):
        track = write_track(library / f"{index}.flac", "1.3.2", body=str(index).encode())
        ledger.upsert(calculate_sha256(track), _pending_record(track))
        tracks.append(track)
    unreadable = str(tracks[2])

    def fingerprint(path):
        if str(path) == unreadable:
            raise OSError("file vanished")
        return calculate_sha256(path)

    with patch(
        "reencoder.reconciler.reencode_file", side_effect=fake_reencode
    ), patch("reencoder.reconciler.calculate_sha256", side_effect=fingerprint):
        summary = reencode_files(_context(library, encode_workers=1), ledger)

    assert summary.encoded == 2
    assert summary.failed == 1
    pending = [record for _key, record in ledger.iterate_all() if record.pending]
    assert [record.absolute_path for record in pending] == [unreadable]


def test_clean_ledger_compacts_after_removing(library, ledger):
    ledger.upsert("gone", Record(absolute_path=str(library / "gone.flac")))

    with patch.object(ledger, "compact", wraps=ledger.compact) as mock_compact:
        assert clean_ledger(ledger, threading.Event()) == 1

    mock_compact.assert_called_once_with()


def test_clean_ledger_skips_compaction_when_nothing_removed(library, ledger):
    track = write_track(library / "a.flac", TARGET_ENCODER)
    ledger.upsert("present", Record(absolute_path=str(track)))

    with patch.object(ledger, "compact") as mock_compact:
        assert clean_ledger(ledger, threading.Event()) == 0

    mock_compact.assert_not_called()
