"""Command-line interface: start a node, share a file or download one."""

from __future__ import annotations

import argparse
import os
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

from .encryption import Encryption, EncryptionError, generate_key
from .file_service import FileService, FileServiceError
from .node import Node, NodeError

SHARE_DIR_NAME = ".p2p-share"
KEY_FILE_NAME = "key"

PathLike = Union[str, Path]


def get_encryption_key(key_file: PathLike) -> bytes:
    """Read the key from ``key_file``, creating and saving a new one if it is missing."""
    path = Path(key_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise EncryptionError(f"failed to create key directory: {exc}") from exc

    try:
        return path.read_bytes()
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise EncryptionError(f"failed to read key: {exc}") from exc

    key = generate_key()
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as out:
            out.write(key)
    except OSError as exc:
        raise EncryptionError(f"failed to save key: {exc}") from exc
    return key


def setup_services(share_dir: PathLike, key_file: PathLike) -> tuple[Node, Encryption, FileService]:
    """Create the node, the encryption service and the file service."""
    node = Node(share_dir)
    try:
        key = get_encryption_key(key_file)
    except EncryptionError as exc:
        raise EncryptionError(f"failed to get encryption key: {exc}") from exc
    try:
        encryption = Encryption(key)
    except EncryptionError as exc:
        raise EncryptionError(f"failed to create encryption service: {exc}") from exc
    try:
        file_service = FileService(node, encryption, share_dir)
    except FileServiceError as exc:
        raise FileServiceError(f"failed to create file service: {exc}") from exc
    return node, encryption, file_service


@contextmanager
def _running(node: Node) -> Iterator[Node]:
    try:
        node.start()
    except NodeError as exc:
        node.stop()
        raise NodeError(f"failed to start node: {exc}") from exc
    try:
        yield node
    finally:
        node.stop()


def _wait_for_signal() -> None:
    stop = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        signal.signal(signal.SIGTERM, previous)


def _services(args: argparse.Namespace) -> tuple[Node, FileService]:
    node, _encryption, file_service = setup_services(args.share_dir, args.key_file)
    node.bootstrap_peers = list(args.bootstrap or [])
    node.host = args.host
    node.port = args.port
    return node, file_service


def _run_start(args: argparse.Namespace) -> None:
    node, _file_service = _services(args)
    print("Starting P2P node...")
    with _running(node):
        _wait_for_signal()


def _run_share(args: argparse.Namespace) -> None:
    node, file_service = _services(args)
    with _running(node):
        try:
            file_hash = file_service.share_file(args.file)
        except FileServiceError as exc:
            raise FileServiceError(f"failed to share file: {exc}") from exc
        print(f"File shared successfully!\nHash: {file_hash}")
        print("Node is running and sharing the file. Press Ctrl+C to stop.")
        _wait_for_signal()


def _run_download(args: argparse.Namespace) -> None:
    node, file_service = _services(args)
    with _running(node):
        try:
            file_service.download_file(args.hash, args.output)
        except FileServiceError as exc:
            raise FileServiceError(f"failed to download file: {exc}") from exc
    print("File downloaded successfully!")


def _parser(default_share: Path, default_key: Path) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="p2p-share", description="P2P File Sharing Application")
    parser.add_argument("--share-dir", default=str(default_share),
                        help="Directory for shared files")
    parser.add_argument("--key-file", default=str(default_key),
                        help="File containing encryption key")
    parser.add_argument("--bootstrap", action="append", metavar="ADDRESS",
                        help="Address of a peer to connect to at start (repeatable)")
    parser.add_argument("--host", default="0.0.0.0", help="Address to listen on")
    parser.add_argument("--port", type=int, default=0, help="Port to listen on")

    commands = parser.add_subparsers(dest="command", required=True)
    start = commands.add_parser("start", help="Start P2P node")
    start.set_defaults(run=_run_start)
    share = commands.add_parser("share", help="Share a file")
    share.add_argument("file")
    share.set_defaults(run=_run_share)
    download = commands.add_parser("download", help="Download a file")
    download.add_argument("hash")
    download.add_argument("output")
    download.set_defaults(run=_run_download)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        home = Path.home()
    except (RuntimeError, KeyError) as exc:
        print(f"Error getting home directory: {exc}")
        return 1

    default_share = home / SHARE_DIR_NAME
    default_key = default_share / KEY_FILE_NAME
    print(f"Home directory: {home}")
    print(f"Share directory: {default_share}")
    print(f"Key file: {default_key}")

    try:
        default_share.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Error creating share directory: {exc}")
        return 1

    probe = default_share / "test.txt"
    try:
        probe.write_bytes(b"test")
    except OSError as exc:
        print(f"Error testing write permissions: {exc}")
        return 1
    probe.unlink(missing_ok=True)

    args = _parser(default_share, default_key).parse_args(argv)
    try:
        args.run(args)
    except (NodeError, EncryptionError, FileServiceError, OSError) as exc:
        print(exc)
        return 1
    return 0