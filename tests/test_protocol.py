import io
import json

import pytest

from peershare.protocol import (
    CHUNK_SIZE,
    FILE_REQUEST_TYPE,
    FileRequest,
    FileResponse,
    Message,
    ProtocolError,
    handle_file_request,
    handle_stream,
    send_file_request,
)

HASH = "ab" * 32


def _split_response(raw: bytes):
    line, _, body = raw.partition(b"\n")
    return FileResponse.from_json(line), body


def test_file_response_omits_empty_error():
    assert FileResponse(hash="abc").to_json() == '{"hash":"abc","size":0,"chunks":0}'


def test_file_response_includes_error():
    data = json.loads(FileResponse(hash="abc", error="boom").to_json())
    assert data["error"] == "boom"
    assert data["hash"] == "abc"


def test_file_response_round_trip():
    resp = FileResponse(hash=HASH, size=10, chunks=1, error="x")
    assert FileResponse.from_json(resp.to_json()) == resp


def test_file_request_round_trip():
    req = FileRequest(hash=HASH)
    assert FileRequest.from_json(req.to_json()) == req
    assert json.loads(req.to_json()) == {"hash": HASH}


def test_message_round_trip_with_payload():
    msg = Message(type=FILE_REQUEST_TYPE, payload=FileRequest(hash=HASH).to_json())
    decoded = Message.from_json(msg.to_json())
    assert decoded.type == FILE_REQUEST_TYPE
    assert FileRequest.from_json(decoded.payload).hash == HASH


def test_message_compacts_payload():
    msg = Message(type=FILE_REQUEST_TYPE, payload='{\n  "hash": "h"\n}')
    assert json.loads(msg.to_json()) == {"type": FILE_REQUEST_TYPE, "payload": {"hash": "h"}}
    assert "\n" not in msg.to_json()


def test_message_invalid_payload():
    with pytest.raises(ProtocolError):
        Message(type="x", payload="{not json").to_json()


@pytest.mark.parametrize("text", ["not json", "[1,2]", '"str"'])
def test_invalid_json_rejected(text):
    with pytest.raises(ProtocolError):
        Message.from_json(text)
    with pytest.raises(ProtocolError):
        FileResponse.from_json(text)


def test_wrong_field_type_rejected():
    with pytest.raises(ProtocolError):
        FileResponse.from_json('{"hash":"a","size":"big"}')


def test_handle_file_request_sends_file(tmp_path):
    data = b"encrypted bytes" * 10
    (tmp_path / f"{HASH}.encrypted").write_bytes(data)
    out = io.BytesIO()
    msg = Message(type=FILE_REQUEST_TYPE, payload=FileRequest(hash=HASH).to_json())

    assert handle_file_request(tmp_path, msg, out) == len(data)
    resp, body = _split_response(out.getvalue())
    assert resp == FileResponse(hash=HASH, size=len(data), chunks=1)
    assert body == data


def test_handle_file_request_chunk_count(tmp_path):
    data = b"z" * (CHUNK_SIZE + 5)
    (tmp_path / f"{HASH}.encrypted").write_bytes(data)
    out = io.BytesIO()
    msg = Message(type=FILE_REQUEST_TYPE, payload=FileRequest(hash=HASH).to_json())
    handle_file_request(tmp_path, msg, out)
    resp, body = _split_response(out.getvalue())
    assert resp.chunks == 2
    assert body == data


def test_handle_file_request_missing_file(tmp_path):
    out = io.BytesIO()
    msg = Message(type=FILE_REQUEST_TYPE, payload=FileRequest(hash=HASH).to_json())
    assert handle_file_request(tmp_path, msg, out) == 0
    resp, body = _split_response(out.getvalue())
    assert resp.hash == HASH
    assert resp.error.startswith("File not found:")
    assert body == b""


def test_handle_stream_unknown_type(tmp_path):
    reader = io.BytesIO(Message(type="ping", payload="{}").to_json().encode() + b"\n")
    with pytest.raises(ProtocolError, match="Unknown message type: ping"):
        handle_stream(tmp_path, reader, io.BytesIO())


def test_handle_stream_bad_message(tmp_path):
    with pytest.raises(ProtocolError):
        handle_stream(tmp_path, io.BytesIO(b"garbage\n"), io.BytesIO())


def test_request_and_serve_round_trip(tmp_path):
    data = bytes(range(256)) * 4
    (tmp_path / f"{HASH}.encrypted").write_bytes(data)

    request_buffer = io.BytesIO()
    with pytest.raises(ProtocolError):
        send_file_request(io.BytesIO(), request_buffer, HASH)
    request_buffer.seek(0)

    response_buffer = io.BytesIO()
    assert handle_stream(tmp_path, request_buffer, response_buffer) == len(data)
    response_buffer.seek(0)

    resp = send_file_request(response_buffer, io.BytesIO(), HASH)
    assert resp.size == len(data)
    assert response_buffer.read() == data


def test_send_file_request_peer_error(tmp_path):
    request_buffer = io.BytesIO()
    request_buffer.write(
        Message(type=FILE_REQUEST_TYPE, payload=FileRequest(hash=HASH).to_json()).to_json().encode()
        + b"\n"
    )
    request_buffer.seek(0)
    response_buffer = io.BytesIO()
    handle_stream(tmp_path, request_buffer, response_buffer)
    response_buffer.seek(0)
    with pytest.raises(ProtocolError, match="peer error: File not found"):
        send_file_request(response_buffer, io.BytesIO(), HASH)


def test_send_file_request_writes_request_line():
    sink = io.BytesIO()
    reader = io.BytesIO(FileResponse(hash=HASH, size=3, chunks=1).to_json().encode() + b"\n")
    send_file_request(reader, sink, HASH)
    line = sink.getvalue()
    assert line.endswith(b"\n")
    msg = Message.from_json(line)
    assert msg.type == FILE_REQUEST_TYPE
    assert FileRequest.from_json(msg.payload).hash == HASH