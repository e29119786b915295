"""Sharing, downloading and listing the encrypted files of a node."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .encryption import Encryption, EncryptionError
from .node import Node, NodeError
from .protocol import ENCRYPTED_SUFFIX

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_HASH_CHUNK = 64 * 1024
_SIZE_UNITS = "KMGTPE"


class FileServiceError(Exception):
    """Raised when a file cannot be shared, downloaded or listed."""


@dataclass(frozen=True)
class FileInfo:
    """A file held in the share directory: its hash and a readable size."""

    hash: str
    size: str


def format_size(size: int) -> str:
    """Format a byte count with binary units, e.g. ``1.5 KB``."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {_SIZE_UNITS[exp]}B"


def calculate_file_hash(file_path: PathLike) -> str:
    """Return the hex SHA-256 digest of a file's contents."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as source:
        for chunk in iter(lambda: source.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


class FileService:
    """Encrypts files into the share directory, announces them and fetches them."""

    publish_delay = 5.0
    retry_delay = 2.0
    publish_attempts = 5
    find_attempts = 3

    def __init__(self, node: Node, encryption: Encryption, share_dir: PathLike) -> None:
        self.node = node
        self.encryption = encryption
        self.share_dir = Path(share_dir)
        try:
            self.share_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileServiceError(f"failed to create share directory: {exc}") from exc

    def _encrypted_path(self, file_hash: str) -> Path:
        return self.share_dir / (file_hash + ENCRYPTED_SUFFIX)

    def share_file(self, file_path: PathLike) -> str:
        """Encrypt a file into the share directory, announce it and return its hash."""
        path = Path(file_path)
        logger.info("Sharing file from: %s", path)
        if not path.exists():
            raise FileServiceError(f"file does not exist: {path}")

        try:
            file_hash = calculate_file_hash(path)
        except OSError as exc:
            raise FileServiceError(f"failed to calculate hash: {exc}") from exc

        encrypted = self._encrypted_path(file_hash)
        if encrypted.exists():
            logger.info("Using existing encrypted file: %s", encrypted)
        else:
            try:
                self.encryption.encrypt_file(path, encrypted)
            except EncryptionError as exc:
                encrypted.unlink(missing_ok=True)
                raise FileServiceError(f"failed to encrypt file: {exc}") from exc
            logger.info("Successfully encrypted %d bytes", encrypted.stat().st_size)

        logger.info("Waiting for DHT initialization...")
        time.sleep(self.publish_delay)
        self._publish(file_hash)
        return file_hash

    def _publish(self, file_hash: str) -> None:
        error: Optional[NodeError] = None
        for attempt in range(1, self.publish_attempts + 1):
            peer_count = len(self.node.peers())
            logger.info("Connected peers: %d", peer_count)
            if not peer_count:
                logger.info("No peers connected, waiting...")
                time.sleep(self.retry_delay)
                continue
            logger.info("Publishing attempt %d/%d...", attempt, self.publish_attempts)
            try:
                self.node.publish_file_info(file_hash)
            except NodeError as exc:
                error = exc
                logger.info("Failed to publish on attempt %d: %s", attempt, exc)
                time.sleep(self.retry_delay)
                continue
            logger.info("Successfully published file on attempt %d", attempt)
            return
        if error is not None:
            raise FileServiceError(
                f"failed to share file: failed to publish file: {error}"
            ) from error

    def download_file(self, file_hash: str, output_path: PathLike) -> None:
        """Decrypt the file with ``file_hash`` into ``output_path``, fetching it if needed."""
        logger.info("Downloading file with hash: %s", file_hash)
        local = self._encrypted_path(file_hash)
        if local.exists():
            logger.info("File found locally at %s, decrypting...", local)
            try:
                self.encryption.decrypt_file(local, output_path)
            except EncryptionError as exc:
                raise FileServiceError(f"failed to decrypt local file: {exc}") from exc
            return

        last_error: Optional[Exception] = None
        for peer_id in self._find_providers(file_hash):
            try:
                self._fetch(peer_id, file_hash, output_path)
            except (NodeError, EncryptionError, OSError) as exc:
                logger.info("Download from %s failed: %s", peer_id, exc)
                last_error = exc
                continue
            logger.info("Successfully downloaded and decrypted file to: %s", output_path)
            return
        raise FileServiceError(f"failed to download file from any provider: {last_error}")

    def _find_providers(self, file_hash: str) -> list[str]:
        error: Optional[NodeError] = None
        for attempt in range(1, self.find_attempts + 1):
            try:
                providers = self.node.find_file_providers(file_hash)
            except NodeError as exc:
                error = exc
            else:
                if providers:
                    return providers
            logger.info("Failed to find providers on attempt %d: %s", attempt, error)
            time.sleep(self.retry_delay)
        raise FileServiceError(f"failed to find file providers: {error}")

    def _fetch(self, peer_id: str, file_hash: str, output_path: PathLike) -> None:
        fd, temp_name = tempfile.mkstemp(
            prefix="download-", suffix=ENCRYPTED_SUFFIX, dir=self.share_dir
        )
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            with self.node.request_file(peer_id, file_hash) as stream, open(temp_path, "wb") as out:
                shutil.copyfileobj(stream, out)
            self.encryption.decrypt_file(temp_path, output_path)
        finally:
            temp_path.unlink(missing_ok=True)

    def list_files(self) -> list[FileInfo]:
        """List the files in the share directory, skipping directories and .tmp files."""
        try:
            with os.scandir(self.share_dir) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            raise FileServiceError(f"failed to read share directory: {exc}") from exc

        infos = []
        for entry in entries:
            if entry.is_dir() or entry.name.endswith(".tmp"):
                continue
            try:
                size = entry.stat().st_size
            except OSError:
                continue
            infos.append(
                FileInfo(hash=entry.name.removesuffix(ENCRYPTED_SUFFIX), size=format_size(size))
            )
        return infos