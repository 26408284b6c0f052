"""
Unit tests for CryptoManager and owner resolution

Tests cover:
- Passphrase key derivation
- Signing and verification
- Discovery record parsing and formatting
- Owner resolution
"""

from datetime import datetime, timezone

import base58
import pytest

from core.crypto_manager import (
    BoardRecord,
    CryptoError,
    CryptoManager,
    format_timestamp,
    is_valid_public_key,
    resolve_owner,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def crypto_manager():
    """Fixture providing a CryptoManager instance"""
    return CryptoManager()


@pytest.fixture
def keypair(crypto_manager):
    """Fixture providing a derived keypair"""
    return crypto_manager.derive_keypair("correct horse", "example.com")


@pytest.fixture
def other_keypair(crypto_manager):
    return crypto_manager.derive_keypair("battery staple", "example.com")


class TestKeyDerivation:
    """Tests for passphrase key derivation"""

    def test_compressed_public_key(self, keypair):
        """Derived public keys are 33-byte compressed points"""
        assert len(keypair.public_key) == 33
        assert is_valid_public_key(keypair.public_key)

    def test_deterministic(self, crypto_manager, keypair):
        """The same passphrase and domain give the same key"""
        again = crypto_manager.derive_keypair("correct horse", "example.com")

        assert again.public_key == keypair.public_key

    def test_scoped_by_domain(self, crypto_manager, keypair):
        """The same passphrase gives a different key per domain"""
        elsewhere = crypto_manager.derive_keypair("correct horse", "example.org")

        assert elsewhere.public_key != keypair.public_key

    def test_empty_passphrase(self, crypto_manager):
        """Empty passphrases are refused"""
        with pytest.raises(CryptoError):
            crypto_manager.derive_keypair("", "example.com")

    def test_identity_has_no_ownership(self, crypto_manager, keypair):
        """derive_identity leaves ownership undecided"""
        identity = crypto_manager.derive_identity("correct horse", "example.com")

        assert identity.public_key == keypair.public_key
        assert identity.is_owner is False
        assert len(identity.key_id) == 16


class TestSignatures:
    """Tests for signing and verification"""

    def test_sign_and_verify(self, crypto_manager, keypair):
        """Signatures verify against the signer's key"""
        signature = keypair.sign(b"digest")

        assert crypto_manager.verify_signature(b"digest", signature, keypair.public_key)

    def test_tampered_data(self, crypto_manager, keypair):
        """Signatures do not verify for other data"""
        signature = keypair.sign(b"digest")

        assert not crypto_manager.verify_signature(b"other", signature, keypair.public_key)

    def test_wrong_key(self, crypto_manager, keypair, other_keypair):
        """Signatures do not verify against another key"""
        signature = keypair.sign(b"digest")

        assert not crypto_manager.verify_signature(b"digest", signature, other_keypair.public_key)


class TestBoardRecord:
    """Tests for the bt=v1 discovery record"""

    def test_format(self, keypair):
        """Records render as `bt=v1 <base58 key> <ISO time>`"""
        record = BoardRecord.create(keypair.public_key, NOW)
        b58 = base58.b58encode(keypair.public_key).decode("ascii")

        assert record.format() == f"bt=v1 {b58} 2024-05-01T12:00:00.000Z"

    def test_parse_formatted(self, keypair):
        """Formatted records parse back to the same key and time"""
        parsed = BoardRecord.parse(BoardRecord.create(keypair.public_key, NOW).format())

        assert parsed.public_key == keypair.public_key
        assert parsed.created_at == NOW

    def test_parse_tolerates_spaces(self, keypair):
        """Whitespace around `=` is allowed"""
        b58 = base58.b58encode(keypair.public_key).decode("ascii")
        parsed = BoardRecord.parse(f"bt = v1  {b58} 2024-05-01T12:00:00.000Z")

        assert parsed is not None
        assert parsed.public_key == keypair.public_key

    def test_parse_joins_split_records(self, keypair):
        """TXT records split into several strings are joined"""
        text = BoardRecord.create(keypair.public_key, NOW).format()
        parts = [text[:20].encode(), text[20:]]

        assert BoardRecord.parse(parts).public_key == keypair.public_key

    @pytest.mark.parametrize("text", [
        "v=spf1 -all",
        "bt=v2 abc 2024-05-01T12:00:00.000Z",
        "bt=v1 0OIl 2024-05-01T12:00:00.000Z",
        "bt=v1 3mJr7AoUXx2Wqd 2024-05-01T12:00:00.000Z",
        "bt=v1",
    ])
    def test_parse_invalid(self, text):
        """Other records, bad base58 and non-key payloads are rejected"""
        assert BoardRecord.parse(text) is None

    def test_format_timestamp_naive_is_utc(self):
        """Naive times are treated as UTC"""
        assert format_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05.000Z"


class TestOwnerResolution:
    """Tests for resolve_owner"""

    def test_no_record_makes_self_owner(self, keypair):
        """Without a record the local key owns the board from now on"""
        resolution = resolve_owner([], keypair.public_key, NOW)

        assert resolution.needs_record
        assert resolution.is_owner
        assert resolution.owner.public_key == keypair.public_key
        assert resolution.epoch == NOW
        assert BoardRecord.parse(resolution.record.format()).public_key == keypair.public_key

    def test_record_for_self(self, keypair):
        """A record naming the local key makes it the owner"""
        record = BoardRecord.create(keypair.public_key, NOW).format()
        resolution = resolve_owner([record], keypair.public_key, datetime.now(timezone.utc))

        assert not resolution.needs_record
        assert resolution.is_owner
        assert resolution.epoch == NOW

    def test_record_for_other(self, keypair, other_keypair):
        """A record naming another key makes the local identity a guest"""
        record = BoardRecord.create(other_keypair.public_key, NOW).format()
        resolution = resolve_owner(["v=spf1 -all", record], keypair.public_key)

        assert not resolution.is_owner
        assert resolution.owner.public_key == other_keypair.public_key
        assert resolution.owner.is_owner
        assert resolution.self_identity.public_key == keypair.public_key

    def test_first_valid_record_wins(self, keypair, other_keypair):
        """Later records are ignored once one parses"""
        first = BoardRecord.create(other_keypair.public_key, NOW).format()
        second = BoardRecord.create(keypair.public_key, NOW).format()

        assert resolve_owner([first, second], keypair.public_key).owner.public_key == other_keypair.public_key
