"""AES-256 file encryption in CFB mode with the IV stored at the start of the file."""

from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import BinaryIO, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

KEY_SIZE = 32
BLOCK_SIZE = 16
_COPY_CHUNK = 64 * 1024

PathLike = Union[str, Path]


class EncryptionError(Exception):
    """Raised when a file cannot be encrypted or decrypted."""


def generate_key() -> bytes:
    """Return a new random 32-byte encryption key."""
    return secrets.token_bytes(KEY_SIZE)


def _open(path: PathLike, mode: str, what: str) -> BinaryIO:
    try:
        return open(path, mode)
    except OSError as exc:
        raise EncryptionError(f"failed to {what}: {exc}") from exc


class Encryption:
    """Encrypts and decrypts files with a fixed AES-256 key."""

    def __init__(self, key: bytes) -> None:
        key = bytes(key)
        if len(key) != KEY_SIZE:
            raise EncryptionError("key must be 32 bytes")
        self._key = key

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CFB(iv))

    def encrypt_file(self, input_path: PathLike, output_path: PathLike) -> int:
        """Encrypt ``input_path`` into ``output_path``; return the plaintext size."""
        logger.info("Encrypting file from %s to %s", input_path, output_path)
        with _open(input_path, "rb", "open input file") as src, _open(
            output_path, "wb", "create output file"
        ) as dst:
            iv = secrets.token_bytes(BLOCK_SIZE)
            try:
                dst.write(iv)
            except OSError as exc:
                raise EncryptionError(f"failed to write IV: {exc}") from exc
            encryptor = self._cipher(iv).encryptor()
            written = 0
            try:
                for chunk in iter(lambda: src.read(_COPY_CHUNK), b""):
                    dst.write(encryptor.update(chunk))
                    written += len(chunk)
                dst.write(encryptor.finalize())
            except OSError as exc:
                raise EncryptionError(f"failed to encrypt file: {exc}") from exc
        logger.info("Successfully encrypted %d bytes", written)
        return written

    def decrypt_file(self, input_path: PathLike, output_path: PathLike) -> int:
        """Decrypt ``input_path`` into ``output_path``; return the plaintext size."""
        logger.info("Decrypting file from %s to %s", input_path, output_path)
        with _open(input_path, "rb", "open input file") as src, _open(
            output_path, "wb", "create output file"
        ) as dst:
            try:
                iv = src.read(BLOCK_SIZE)
            except OSError as exc:
                raise EncryptionError(f"failed to read IV: {exc}") from exc
            if len(iv) != BLOCK_SIZE:
                raise EncryptionError("failed to read IV: unexpected end of file")
            decryptor = self._cipher(iv).decryptor()
            written = 0
            try:
                for chunk in iter(lambda: src.read(_COPY_CHUNK), b""):
                    plain = decryptor.update(chunk)
                    dst.write(plain)
                    written += len(plain)
                tail = decryptor.finalize()
                dst.write(tail)
                written += len(tail)
            except OSError as exc:
                raise EncryptionError(f"failed to decrypt file: {exc}") from exc
        logger.info("Successfully decrypted %d bytes", written)
        return written