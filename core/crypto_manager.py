"""
Cryptography Manager for the ledger-backed board

Handles:
- Deriving the local secp256k1 keypair from a passphrase
- Signing transaction digests
- Parsing and formatting the `bt=v1` discovery record
- Resolving which identity owns the board
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

import base58
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt


logger = logging.getLogger(__name__)


# Order of the secp256k1 group
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAEDCE6AF48A03BBFD25E8CD0364141

RECORD_VERSION = "v1"
RECORD_PATTERN = re.compile(r"^bt\s*=\s*v1\s+(\w+)\s+([\w\-:\.]+)$")


@dataclass(frozen=True)
class Identity:
    """
    A public identity taking part in a board.

    Attributes:
        public_key: SEC-encoded public key (33 or 65 bytes)
        is_owner: Whether this identity owns the board
    """
    public_key: bytes
    is_owner: bool

    @property
    def key_id(self) -> str:
        """Short printable identifier."""
        return hashlib.sha256(self.public_key).hexdigest()[:16]


@dataclass(frozen=True)
class KeyPair:
    """Local signing key and its compressed public key."""
    private_key: ec.EllipticCurvePrivateKey
    public_key: bytes

    def sign(self, digest_input: bytes) -> bytes:
        """DER-encoded ECDSA/SHA-256 signature."""
        return self.private_key.sign(digest_input, ec.ECDSA(hashes.SHA256()))


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


def is_valid_public_key(key: bytes) -> bool:
    """
    Check the shape of a SEC public key.

    Accepts uncompressed keys (65 bytes, leading 0x04) and compressed keys
    (33 bytes, leading 0x02 or 0x03).
    """
    if len(key) == 65:
        return key[0] == 0x04
    if len(key) == 33:
        return key[0] in (0x02, 0x03)
    return False


def _parse_timestamp(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a `Z` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class BoardRecord:
    """
    Discovery record published in a domain's TXT records.

    Grammar: `bt=v1 <base58 public key> <ISO-8601 timestamp>`
    """
    version: str
    public_key_base58: str
    created_at: datetime

    @property
    def public_key(self) -> bytes:
        return base58.b58decode(self.public_key_base58)

    @classmethod
    def create(cls, public_key: bytes, created_at: Optional[datetime] = None) -> "BoardRecord":
        """Build a record for a public key."""
        return cls(
            version=RECORD_VERSION,
            public_key_base58=base58.b58encode(public_key).decode("ascii"),
            created_at=created_at or datetime.now(timezone.utc)
        )

    @classmethod
    def parse(cls, record: Union[str, bytes, Iterable]) -> Optional["BoardRecord"]:
        """
        Parse one TXT record.

        A TXT record may arrive split into several strings; they are joined
        first.

        Returns:
            BoardRecord, or None if the text does not match the grammar, the
            key is not valid base58, or the key is not a SEC public key
        """
        if isinstance(record, bytes):
            record = record.decode("utf-8", errors="replace")
        elif not isinstance(record, str):
            record = "".join(
                part.decode("utf-8", errors="replace") if isinstance(part, bytes) else part
                for part in record
            )

        match = RECORD_PATTERN.match(record.strip())
        if match is None:
            return None

        try:
            key = base58.b58decode(match.group(1))
        except ValueError:
            return None
        if not is_valid_public_key(key):
            return None

        try:
            created_at = _parse_timestamp(match.group(2))
        except ValueError:
            return None

        return cls(version=RECORD_VERSION, public_key_base58=match.group(1), created_at=created_at)

    def format(self) -> str:
        """Render the record text."""
        return f"bt={self.version} {self.public_key_base58} {format_timestamp(self.created_at)}"


@dataclass(frozen=True)
class OwnerResolution:
    """
    Result of resolving a board's owner.

    Attributes:
        self_identity: Local identity
        owner: Owner identity (equal to self_identity when no record exists)
        epoch: Earliest time relevant to the board
        record: Parsed record, or the record that should be published
        needs_record: Whether the domain lacks a valid record
    """
    self_identity: Identity
    owner: Identity
    epoch: datetime
    record: BoardRecord
    needs_record: bool

    @property
    def is_owner(self) -> bool:
        return self.self_identity.is_owner


def resolve_owner(
    records: Iterable,
    self_key: bytes,
    now: Optional[datetime] = None
) -> OwnerResolution:
    """
    Decide who owns a board from its TXT records.

    The first record that parses wins. With no valid record the local
    identity becomes the owner and the scan epoch is `now`.

    Args:
        records: TXT records of the board's domain
        self_key: Local public key
        now: Current time

    Returns:
        OwnerResolution
    """
    now = now or datetime.now(timezone.utc)

    for raw in records:
        record = BoardRecord.parse(raw)
        if record is None:
            continue
        owner_key = record.public_key
        is_owner = owner_key == self_key
        return OwnerResolution(
            self_identity=Identity(public_key=self_key, is_owner=is_owner),
            owner=Identity(public_key=owner_key, is_owner=True),
            epoch=record.created_at,
            record=record,
            needs_record=False
        )

    identity = Identity(public_key=self_key, is_owner=True)
    return OwnerResolution(
        self_identity=identity,
        owner=identity,
        epoch=now,
        record=BoardRecord.create(self_key, now),
        needs_record=True
    )


class CryptoManager:
    """
    Manages key derivation for the board.
    """

    # scrypt cost parameters
    SCRYPT_N = 2**14
    SCRYPT_R = 8
    SCRYPT_P = 1

    def derive_keypair(self, passphrase: str, scope: str) -> KeyPair:
        """
        Derive a deterministic secp256k1 keypair.

        The same passphrase yields different keys for different boards.

        Args:
            passphrase: Secret passphrase
            scope: Board domain used as the KDF salt

        Returns:
            KeyPair with a compressed public key

        Raises:
            CryptoError: If derivation fails
        """
        if not passphrase:
            raise CryptoError("Passphrase cannot be empty")

        try:
            kdf = Scrypt(
                salt=scope.encode("utf-8"),
                length=32,
                n=self.SCRYPT_N,
                r=self.SCRYPT_R,
                p=self.SCRYPT_P
            )
            seed = kdf.derive(passphrase.encode("utf-8"))
            secret = int.from_bytes(seed, "big") % (SECP256K1_ORDER - 1) + 1

            private_key = ec.derive_private_key(secret, ec.SECP256K1())
            public_key = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.X962,
                format=serialization.PublicFormat.CompressedPoint
            )
        except Exception as e:
            raise CryptoError(f"Failed to derive keypair: {e}")

        logger.debug(f"Derived key {hashlib.sha256(public_key).hexdigest()[:16]} for {scope}")
        return KeyPair(private_key=private_key, public_key=public_key)

    def derive_identity(self, passphrase: str, scope: str) -> Identity:
        """Public identity for a passphrase; ownership is not yet known."""
        return Identity(public_key=self.derive_keypair(passphrase, scope).public_key, is_owner=False)

    def verify_signature(self, data: bytes, signature: bytes, public_key: bytes) -> bool:
        """
        Verify an ECDSA/SHA-256 signature.

        Returns:
            True if the signature is valid, False otherwise
        """
        try:
            key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
            key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
            return True
        except Exception as e:
            logger.debug(f"Signature verification failed: {e}")
            return False
