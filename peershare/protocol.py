"""Wire format and handlers for the file request protocol.

Every control message is one line of compact JSON; after a successful
file response the raw bytes of the encrypted file follow on the stream.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Union

logger = logging.getLogger(__name__)

PROTOCOL_ID = "/p2p-file-sharing/1.0.0"
FILE_REQUEST_TYPE = "file-request"
FILE_RESPONSE_TYPE = "file-response"
CHUNK_SIZE = 1024 * 1024
ENCRYPTED_SUFFIX = ".encrypted"


class ProtocolError(Exception):
    """Raised for malformed messages or a failed exchange."""


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _load_object(text: Union[str, bytes], what: str) -> dict:
    try:
        value = json.loads(text)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"invalid {what}: {exc}") from exc
    if not isinstance(value, dict):
        raise ProtocolError(f"invalid {what}: expected a JSON object")
    return value


def _field(data: dict, name: str, kind: type, default: Any) -> Any:
    value = data.get(name)
    if value is None:
        return default
    if kind is int and (isinstance(value, bool) or not isinstance(value, int)):
        raise ProtocolError(f"field {name!r} must be an integer")
    if kind is str and not isinstance(value, str):
        raise ProtocolError(f"field {name!r} must be a string")
    return value


def _write_line(writer: BinaryIO, text: str) -> None:
    writer.write(text.encode("utf-8") + b"\n")
    writer.flush()


def _read_line(reader: BinaryIO, what: str) -> bytes:
    line = reader.readline()
    if not line.strip():
        raise ProtocolError(f"failed to read {what}: stream ended")
    return line


@dataclass
class Message:
    """An envelope holding a message type and a raw JSON payload."""

    type: str
    payload: str = "null"

    def to_json(self) -> str:
        try:
            payload = json.loads(self.payload)
        except ValueError as exc:
            raise ProtocolError(f"invalid payload: {exc}") from exc
        return '{"type":' + _dumps(self.type) + ',"payload":' + _dumps(payload) + "}"

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "Message":
        data = _load_object(text, "message")
        return cls(
            type=_field(data, "type", str, ""),
            payload=_dumps(data.get("payload")),
        )


@dataclass
class FileRequest:
    """A request for the encrypted file with the given hash."""

    hash: str

    def to_json(self) -> str:
        return _dumps({"hash": self.hash})

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "FileRequest":
        if text in ("null", b"null"):
            return cls(hash="")
        data = _load_object(text, "file request")
        return cls(hash=_field(data, "hash", str, ""))


@dataclass
class FileResponse:
    """The reply to a file request; ``error`` is empty on success."""

    hash: str
    size: int = 0
    chunks: int = 0
    error: str = ""

    def to_json(self) -> str:
        data: dict = {"hash": self.hash, "size": self.size, "chunks": self.chunks}
        if self.error:
            data["error"] = self.error
        return _dumps(data)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "FileResponse":
        data = _load_object(text, "file response")
        return cls(
            hash=_field(data, "hash", str, ""),
            size=_field(data, "size", int, 0),
            chunks=_field(data, "chunks", int, 0),
            error=_field(data, "error", str, ""),
        )


def handle_stream(share_dir: Union[str, Path], reader: BinaryIO, writer: BinaryIO) -> int:
    """Serve one incoming request; return the number of file bytes sent."""
    message = Message.from_json(_read_line(reader, "message"))
    if message.type == FILE_REQUEST_TYPE:
        return handle_file_request(share_dir, message, writer)
    raise ProtocolError(f"Unknown message type: {message.type}")


def handle_file_request(share_dir: Union[str, Path], message: Message, writer: BinaryIO) -> int:
    """Answer a file request, then stream the file; return the bytes sent.

    A missing file is reported to the peer in the response and 0 is returned.
    """
    request = FileRequest.from_json(message.payload)
    file_path = Path(share_dir) / (request.hash + ENCRYPTED_SUFFIX)

    try:
        source = open(file_path, "rb")
    except OSError as exc:
        _write_line(writer, FileResponse(hash=request.hash, error=f"File not found: {exc}").to_json())
        return 0

    with source:
        size = os.fstat(source.fileno()).st_size
        response = FileResponse(hash=request.hash, size=size, chunks=size // CHUNK_SIZE + 1)
        _write_line(writer, response.to_json())

        sent = 0
        for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
            writer.write(chunk)
            writer.flush()
            sent += len(chunk)
    logger.info("Sent %d bytes for %s", sent, request.hash)
    return sent


def send_file_request(reader: BinaryIO, writer: BinaryIO, file_hash: str) -> FileResponse:
    """Ask a peer for a file and read its response.

    On success the file bytes can then be read from ``reader``.
    """
    message = Message(type=FILE_REQUEST_TYPE, payload=FileRequest(hash=file_hash).to_json())
    try:
        _write_line(writer, message.to_json())
    except OSError as exc:
        raise ProtocolError(f"failed to send request: {exc}") from exc

    response = FileResponse.from_json(_read_line(reader, "response"))
    if response.error:
        raise ProtocolError(f"peer error: {response.error}")
    return response