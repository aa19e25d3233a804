"""Content fingerprints used as ledger keys."""

from __future__ import annotations

import hashlib
import os
from typing import BinaryIO

CHUNK_SIZE = 1024 * 1024


def hash_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    """Return the SHA256 hex digest of everything left in ``stream``."""
    sha256_hash = hashlib.sha256()
    for byte_block in iter(lambda: stream.read(chunk_size), b""):
        sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


def calculate_sha256(file_path: str | os.PathLike[str]) -> str:
    """Calculate the SHA256 hash of a file."""
    with open(file_path, "rb") as f:
        return hash_stream(f)
