"""Checksum verification for downloaded artifacts.

``IntegrityVerifier.verify`` only reads the file; calling it twice on an
unmodified file yields the same answer.
"""

from __future__ import annotations

import hashlib
import logging
import string
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

LARGE_CHUNK_SIZE = 8 * 1024 * 1024

# Bare hex digests are mapped to an algorithm by their length.
_ALGORITHM_BY_LENGTH = {
    32: "md5",
    40: "sha1",
    64: "sha256",
    128: "sha512",
}
SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")


class VerifyResult(str, Enum):
    VALID = "valid"
    MISMATCH = "mismatch"


def parse_checksum(expected: str, default_algorithm: str = "sha256") -> tuple[str, str]:
    """Split ``"sha256:ab12..."`` or bare hex into ``(algorithm, hexdigest)``."""
    value = expected.strip().lower()
    if ":" in value:
        algorithm, _, digest = value.partition(":")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
        return algorithm, digest
    return _ALGORITHM_BY_LENGTH.get(len(value), default_algorithm), value


def compute_file_checksum(
    path: str | Path,
    algorithm: str = "sha256",
    chunk_size: int = LARGE_CHUNK_SIZE,
) -> str:
    """Hex digest of a file, read in chunks."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def format_checksum(algorithm: str, digest: str) -> str:
    return f"{algorithm}:{digest}"


class IntegrityVerifier:
    """Compares a file's digest with the manifest checksum."""

    def __init__(self, default_algorithm: str = "sha256", chunk_size: int = LARGE_CHUNK_SIZE):
        self.default_algorithm = default_algorithm
        self.chunk_size = chunk_size

    def verify(self, path: str | Path, expected_checksum: str) -> VerifyResult:
        """Return VALID if ``path`` hashes to ``expected_checksum``.

        A missing file, an unreadable file or a digest that is not hex all
        count as MISMATCH.
        """
        algorithm, expected = parse_checksum(expected_checksum, self.default_algorithm)
        if not expected or any(c not in string.hexdigits for c in expected):
            logger.warning(f"Checksum {expected_checksum!r} is not a hex digest")
            return VerifyResult.MISMATCH
        try:
            actual = compute_file_checksum(path, algorithm, self.chunk_size)
        except FileNotFoundError:
            logger.warning(f"Cannot verify missing file {path}")
            return VerifyResult.MISMATCH
        except OSError as e:
            logger.warning(f"Cannot read {path} for verification: {e}")
            return VerifyResult.MISMATCH

        if actual == expected:
            return VerifyResult.VALID
        logger.warning(f"{algorithm} mismatch for {path}: expected {expected}, got {actual}")
        return VerifyResult.MISMATCH
