"""
Message Codec for the ledger-backed board

Serializes a post payload into a sequence of fake bare-multisig output
scripts and reassembles it from scanned outputs.

Layout of one chunk script:

    OP_1 <tagged key 1> ... <tagged key k> <owner key> OP_(k+1) OP_CHECKMULTISIG

Each tagged key is a 64-byte subchunk of the length-prefixed message, padded
with zeroes to 32 or 64 bytes and prefixed with 0x02 or 0x04 so that it looks
like a compressed or uncompressed public key.
"""

import json
import logging
import struct
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core.error_handler import MalformedMessageError


logger = logging.getLogger(__name__)


LENGTH_PREFIX_SIZE = 4
CHUNK_SIZE = 128
SUBCHUNK_SIZE = 64

SHORT_KEY_TAG = 0x02
LONG_KEY_TAG = 0x04

OP_1 = 0x51
OP_16 = 0x60
OP_CHECKSIG = 0xAC
OP_CHECKMULTISIG = 0xAE

# Compression level used for post bodies
COMPRESSION_LEVEL = 9


@dataclass
class EncodedMessage:
    """
    Output scripts carrying one message.

    Attributes:
        byte_size: Sum of all script lengths
        outputs: Ordered chunk scripts (never empty)
    """
    byte_size: int
    outputs: List[bytes] = field(default_factory=list)

    @property
    def chunk_count(self) -> int:
        return len(self.outputs)


def _push(data: bytes) -> bytes:
    """Direct push of a key-sized blob (lengths below OP_PUSHDATA1)."""
    if not 0 < len(data) < 0x4C:
        raise ValueError(f"Cannot push {len(data)} bytes directly")
    return bytes([len(data)]) + data


def _is_key_shaped(blob: bytes) -> bool:
    if len(blob) == 33:
        return blob[0] in (0x02, 0x03)
    if len(blob) == 65:
        return blob[0] == 0x04
    return False


def build_multisig_script(keys: List[bytes], required: int = 1) -> bytes:
    """
    Build a bare multisig script.

    Args:
        keys: Public keys (33 or 65 bytes each), at most 16
        required: Number of required signatures

    Returns:
        Raw script bytes
    """
    if not 1 <= len(keys) <= 16:
        raise ValueError(f"Multisig needs 1-16 keys, got {len(keys)}")
    if not 1 <= required <= len(keys):
        raise ValueError(f"Invalid required signature count {required}")

    script = bytearray()
    script.append(OP_1 + required - 1)
    for key in keys:
        script.extend(_push(key))
    script.append(OP_1 + len(keys) - 1)
    script.append(OP_CHECKMULTISIG)
    return bytes(script)


def pay_to_pubkey_script(public_key: bytes) -> bytes:
    """Build a `<pubkey> OP_CHECKSIG` script."""
    return _push(public_key) + bytes([OP_CHECKSIG])


def parse_multisig(script: bytes) -> Optional[List[bytes]]:
    """
    Parse a bare multisig script.

    Args:
        script: Raw output script

    Returns:
        List of pushed keys in script order, or None if the script is not
        shaped like `OP_m <keys...> OP_n OP_CHECKMULTISIG`
    """
    if len(script) < 3:
        return None
    if not OP_1 <= script[0] <= OP_16:
        return None
    if script[-1] != OP_CHECKMULTISIG or not OP_1 <= script[-2] <= OP_16:
        return None

    required = script[0] - OP_1 + 1
    total = script[-2] - OP_1 + 1

    keys = []
    pos = 1
    end = len(script) - 2
    while pos < end:
        size = script[pos]
        pos += 1
        blob = script[pos:pos + size]
        if size not in (33, 65) or len(blob) != size or not _is_key_shaped(blob):
            return None
        keys.append(blob)
        pos += size

    if pos != end or len(keys) != total or required > total:
        return None
    return keys


def encode_message(body: bytes, owner_key: bytes) -> EncodedMessage:
    """
    Encode a compressed body into chunk scripts.

    Steps:
    1. Prefix the body with its 4-byte big-endian length
    2. Split into 128-byte chunks
    3. Split each chunk into 64-byte subchunks and tag them as keys
    4. Build one OP_1-of-(k+1) script per chunk with the owner key last

    Args:
        body: Compressed payload bytes (may be empty)
        owner_key: Board owner's public key

    Returns:
        EncodedMessage with at least one output
    """
    framed = struct.pack(">I", len(body)) + body

    outputs = []
    for offset in range(0, len(framed), CHUNK_SIZE):
        chunk = framed[offset:offset + CHUNK_SIZE]

        keys = []
        for sub_offset in range(0, len(chunk), SUBCHUNK_SIZE):
            subchunk = chunk[sub_offset:sub_offset + SUBCHUNK_SIZE]
            if len(subchunk) < 32:
                keys.append(bytes([SHORT_KEY_TAG]) + subchunk.ljust(32, b"\x00"))
            else:
                keys.append(bytes([LONG_KEY_TAG]) + subchunk.ljust(64, b"\x00"))

        outputs.append(build_multisig_script(keys + [owner_key], required=1))

    byte_size = sum(len(script) for script in outputs)
    logger.debug(f"Encoded {len(body)} bytes into {len(outputs)} chunk scripts ({byte_size} bytes)")
    return EncodedMessage(byte_size=byte_size, outputs=outputs)


def decode_message(scripts: Iterable[bytes], owner_key: bytes) -> Optional[bytes]:
    """
    Reassemble a compressed body from output scripts.

    Scripts that are not multisig or whose last key is not the owner key are
    ignored.

    Args:
        scripts: Output scripts in transaction order
        owner_key: Board owner's public key

    Returns:
        Compressed body, or None if no output carries a message

    Raises:
        MalformedMessageError: If the declared length exceeds the data
    """
    data = bytearray()
    matched = 0
    for script in scripts:
        keys = parse_multisig(script)
        if not keys or keys[-1] != owner_key:
            continue
        matched += 1
        for key in keys[:-1]:
            data.extend(key[1:])

    if matched == 0:
        return None

    if len(data) < LENGTH_PREFIX_SIZE:
        raise MalformedMessageError("Message is shorter than its length prefix")

    (length,) = struct.unpack(">I", bytes(data[:LENGTH_PREFIX_SIZE]))
    body = bytes(data[LENGTH_PREFIX_SIZE:LENGTH_PREFIX_SIZE + length])
    if len(body) != length:
        raise MalformedMessageError(
            f"Truncated message: declared {length} bytes, found {len(body)}"
        )
    return body


def pack_payload(payload: Dict[str, Any]) -> bytes:
    """Serialize a payload to JSON and deflate it."""
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return zlib.compress(raw, COMPRESSION_LEVEL)


def unpack_payload(body: bytes) -> Dict[str, Any]:
    """
    Inflate and parse a payload.

    Raises:
        MalformedMessageError: If the body cannot be inflated or parsed
    """
    try:
        payload = json.loads(zlib.decompress(body).decode("utf-8"))
    except (zlib.error, UnicodeDecodeError, ValueError) as e:
        raise MalformedMessageError(f"Cannot read message body: {e}")

    if not isinstance(payload, dict):
        raise MalformedMessageError("Message body is not an object")
    return payload
