import pytest

from reencoder.ledger import SqliteLedger

TARGET_ENCODER = "1.4.3"


def write_track(path, encoder, body=b"audio"):
    """Write a fake FLAC file whose first line names the encoder that made it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encoder.encode() + b"\n" + body)
    return path


def fake_probe(path):
    with open(path, "rb") as handle:
        return handle.readline().decode().strip()


def fake_reencode(path, flac_args=None):
    """Rewrite the file the way a newer encoder would, changing its content."""
    with open(path, "rb") as handle:
        handle.readline()
        body = handle.read()
    with open(path, "wb") as handle:
        handle.write(TARGET_ENCODER.encode() + b"\n" + body)


@pytest.fixture
def ledger(tmp_path):
    with SqliteLedger(tmp_path / "state" / "ledger.sqlite3") as opened:
        yield opened


@pytest.fixture
def library(tmp_path):
    root = tmp_path / "library"
    root.mkdir()
    return root
