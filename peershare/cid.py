"""Content identifiers for shared files: base58, multihash and CIDv1 (raw)."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {char: index for index, char in enumerate(BASE58_ALPHABET)}

SHA2_256 = 0x12
SHA2_256_LENGTH = 32
RAW_CODEC = 0x55
CID_VERSION = 1


def base58_encode(data: bytes) -> str:
    """Encode bytes with the Bitcoin base58 alphabet."""
    data = bytes(data)
    number = int.from_bytes(data, "big")
    chars = []
    while number:
        number, remainder = divmod(number, 58)
        chars.append(BASE58_ALPHABET[remainder])
    leading = len(data) - len(data.lstrip(b"\0"))
    return "1" * leading + "".join(reversed(chars))


def base58_decode(text: str) -> bytes:
    """Decode a base58 string; raise ValueError on characters outside the alphabet."""
    number = 0
    for char in text:
        try:
            number = number * 58 + _BASE58_INDEX[char]
        except KeyError:
            raise ValueError(f"invalid base58 character {char!r}") from None
    leading = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\0" * leading + body


def _encode_uvarint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_uvarint(data: bytes, offset: int) -> tuple[int, int]:
    value = 0
    shift = 0
    for position in range(offset, min(len(data), offset + 9)):
        byte = data[position]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, position + 1
        shift += 7
    raise ValueError("invalid varint")


def _check_multihash(data: bytes) -> bytes:
    """Return ``data`` if it is a well-formed multihash, else raise ValueError."""
    if len(data) < 2:
        raise ValueError("multihash too short")
    _code, offset = _decode_uvarint(data, 0)
    length, offset = _decode_uvarint(data, offset)
    if len(data) - offset != length:
        raise ValueError("multihash length does not match digest")
    return data


def sha256_multihash(data: bytes) -> bytes:
    """Return the sha2-256 multihash of ``data``."""
    return bytes([SHA2_256, SHA2_256_LENGTH]) + hashlib.sha256(data).digest()


@dataclass(frozen=True)
class Cid:
    """A content identifier: version, content codec and multihash."""

    version: int
    codec: int
    multihash: bytes

    def to_bytes(self) -> bytes:
        return _encode_uvarint(self.version) + _encode_uvarint(self.codec) + self.multihash

    def __str__(self) -> str:
        encoded = base64.b32encode(self.to_bytes()).decode("ascii").lower().rstrip("=")
        return "b" + encoded


def hash_to_cid(value: str) -> Cid:
    """Make a raw CIDv1 from a base58 multihash, or from the sha2-256 of the text."""
    try:
        multihash = _check_multihash(base58_decode(value))
    except ValueError:
        multihash = sha256_multihash(value.encode("utf-8"))
    return Cid(version=CID_VERSION, codec=RAW_CODEC, multihash=multihash)