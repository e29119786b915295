"""Web front end for sharing and downloading files through a node."""

from __future__ import annotations

import argparse
import os
import tempfile
from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import quote

from flask import Flask, Response, redirect, render_template_string, request

from .cli import KEY_FILE_NAME, SHARE_DIR_NAME, setup_services
from .encryption import EncryptionError
from .file_service import FileService, FileServiceError
from .node import Node, NodeError

_INDEX_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>P2P File Sharing</title></head>
<body>
<h1>P2P File Sharing</h1>
<p>Node ID: {{ node_id }}</p>
<p>Connected peers: {{ peer_count }}</p>
{% if uploaded %}<p>File shared. Hash: {{ uploaded }}</p>{% endif %}
<h2>Share a file</h2>
<form action="/upload" method="post" enctype="multipart/form-data">
  <input type="file" name="file"> <button type="submit">Share</button>
</form>
<h2>Download a file</h2>
<form action="/download" method="post">
  <input type="text" name="hash" placeholder="File hash"> <button type="submit">Download</button>
</form>
<h2>Files</h2>
<table>
  <tr><th>Hash</th><th>Size</th></tr>
  {% for file in files %}
  <tr><td><a href="/download/{{ file.hash }}">{{ file.hash }}</a></td><td>{{ file.size }}</td></tr>
  {% endfor %}
</table>
</body>
</html>
"""


def _text(body: str, status: int) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def create_app(node: Node, file_service: FileService) -> Flask:
    """Build the web application around a node and its file service."""
    app = Flask(__name__)

    @app.get("/")
    def index():
        try:
            files = file_service.list_files()
        except FileServiceError as exc:
            return _text(f"Error getting file list: {exc}", 500)
        return render_template_string(
            _INDEX_PAGE,
            node_id=node.peer_id,
            peer_count=len(node.peers()),
            files=files,
            uploaded=request.args.get("uploaded", ""),
        )

    @app.post("/upload")
    def upload():
        uploaded = request.files.get("file")
        if uploaded is None:
            return _text("Error getting file: no file in request", 400)
        name = Path(uploaded.filename or "").name or "upload"
        temp_path = Path(tempfile.gettempdir()) / name
        try:
            uploaded.save(temp_path)
        except OSError as exc:
            return _text(f"Error saving file: {exc}", 500)
        try:
            file_hash = file_service.share_file(temp_path)
        except FileServiceError as exc:
            return _text(f"Error sharing file: {exc}", 500)
        finally:
            temp_path.unlink(missing_ok=True)
        return redirect(f"/?uploaded={quote(file_hash)}", 302)

    @app.post("/download")
    def download():
        file_hash = request.form.get("hash", "")
        if not file_hash:
            return _text("Hash is required", 400)
        return redirect(f"/download/{quote(file_hash)}", 302)

    @app.get("/download/<file_hash>")
    def download_file(file_hash: str):
        try:
            fd, temp_name = tempfile.mkstemp(prefix="download-")
        except OSError as exc:
            return _text(f"Error creating temp file: {exc}", 500)
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            file_service.download_file(file_hash, temp_path)
            data = temp_path.read_bytes()
        except (FileServiceError, OSError) as exc:
            return _text(f"Error downloading file: {exc}", 500)
        finally:
            temp_path.unlink(missing_ok=True)
        return Response(data, mimetype="application/octet-stream")

    return app


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="p2p-share-web", description="P2P file sharing web server")
    parser.add_argument("--host", default="0.0.0.0", help="Address for the web server")
    parser.add_argument("--port", type=int, default=8080, help="Port for the web server")
    parser.add_argument("--node-port", type=int, default=0, help="Port for the peer node")
    parser.add_argument("--bootstrap", action="append", metavar="ADDRESS",
                        help="Address of a peer to connect to at start (repeatable)")
    args = parser.parse_args(argv)

    try:
        home = Path.home()
    except (RuntimeError, KeyError) as exc:
        print(f"Error getting home directory: {exc}")
        return 1
    share_dir = home / SHARE_DIR_NAME
    key_file = share_dir / KEY_FILE_NAME

    try:
        node, _encryption, file_service = setup_services(share_dir, key_file)
    except (EncryptionError, FileServiceError) as exc:
        print(f"Error creating services: {exc}")
        return 1
    node.bootstrap_peers = list(args.bootstrap or [])
    node.port = args.node_port

    try:
        node.start()
    except NodeError as exc:
        node.stop()
        print(f"Error starting node: {exc}")
        return 1

    app = create_app(node, file_service)
    print(f"Web server starting on http://localhost:{args.port}")
    try:
        app.run(host=args.host, port=args.port)
    except OSError as exc:
        print(f"Error starting web server: {exc}")
        return 1
    finally:
        node.stop()
    return 0