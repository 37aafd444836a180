"""Tests for checksum verification."""

import hashlib

import pytest

from prestage.integrity import (
    IntegrityVerifier,
    VerifyResult,
    compute_file_checksum,
    parse_checksum,
)


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "img-1"
    path.write_bytes(b"abc" * 1000)
    return path


class TestParseChecksum:
    def test_prefixed(self):
        assert parse_checksum("SHA1:ABCDEF") == ("sha1", "abcdef")

    @pytest.mark.parametrize("length,algorithm", [(32, "md5"), (40, "sha1"), (64, "sha256"), (128, "sha512")])
    def test_bare_hex_by_length(self, length, algorithm):
        assert parse_checksum("a" * length)[0] == algorithm

    def test_unknown_length_uses_default(self):
        assert parse_checksum("abc123", default_algorithm="sha512") == ("sha512", "abc123")

    def test_unsupported_prefix(self):
        with pytest.raises(ValueError):
            parse_checksum("crc32:deadbeef")


class TestIntegrityVerifier:
    def test_valid(self, image):
        digest = hashlib.sha256(image.read_bytes()).hexdigest()
        assert IntegrityVerifier().verify(image, f"sha256:{digest}") == VerifyResult.VALID

    def test_bare_md5_and_uppercase(self, image):
        digest = hashlib.md5(image.read_bytes()).hexdigest().upper()
        assert IntegrityVerifier().verify(image, digest) == VerifyResult.VALID

    def test_mismatch(self, image):
        assert IntegrityVerifier().verify(image, "sha256:" + "0" * 64) == VerifyResult.MISMATCH

    def test_repeatable(self, image):
        """verify does not modify the file, so the answer never changes."""
        verifier = IntegrityVerifier(chunk_size=128)
        digest = compute_file_checksum(image, "sha1")
        first = verifier.verify(image, digest)
        second = verifier.verify(image, digest)
        assert first == second == VerifyResult.VALID
        assert image.read_bytes() == b"abc" * 1000

    def test_missing_file_is_mismatch(self, tmp_path):
        assert IntegrityVerifier().verify(tmp_path / "missing", "a" * 64) == VerifyResult.MISMATCH

    def test_non_hex_digest_is_mismatch(self, image):
        assert IntegrityVerifier().verify(image, "sha256:not-a-digest") == VerifyResult.MISMATCH
