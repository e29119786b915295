"""A peer node: TCP listener, peer table, provider records and file requests."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import secrets
import socket
import socketserver
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Optional, Union

from .cid import base58_decode, base58_encode, hash_to_cid, sha256_multihash
from .protocol import (
    ENCRYPTED_SUFFIX,
    PROTOCOL_ID,
    ProtocolError,
    handle_stream,
    send_file_request,
)

logger = logging.getLogger(__name__)

EXCHANGE_PROTOCOL_ID = "/p2p-share/exchange-addrs/1.0.0"
DHT_PROTOCOL_ID = "/p2p-share/dht/1.0.0"
EXCHANGE_INTERVAL = 30.0
CONNECT_TIMEOUT = 10.0
BOOTSTRAP_ATTEMPTS = 3
MIN_BOOTSTRAP_PEERS = 3

_VALUED = {"ip4", "ip6", "dns", "dns4", "dns6", "dnsaddr", "tcp", "udp", "p2p"}
_FLAGS = {"ws", "wss", "quic", "quic-v1", "tls", "http", "https"}


class NodeError(Exception):
    """Raised when the node cannot connect, publish or find content."""


@dataclass(frozen=True)
class PeerAddress:
    """A parsed multiaddress such as /ip4/1.2.3.4/tcp/4001/p2p/<id>."""

    components: tuple[tuple[str, Optional[str]], ...]

    @classmethod
    def parse(cls, text: str) -> "PeerAddress":
        if not text.startswith("/"):
            raise NodeError(f"invalid address {text!r}: must begin with '/'")
        parts = text.strip("/").split("/")
        components: list[tuple[str, Optional[str]]] = []
        items = iter(parts)
        for name in items:
            if name in _FLAGS:
                components.append((name, None))
                continue
            if name not in _VALUED:
                raise NodeError(f"invalid address {text!r}: unknown protocol {name!r}")
            value = next(items, None)
            if not value:
                raise NodeError(f"invalid address {text!r}: {name} needs a value")
            cls._validate(name, value, text)
            components.append((name, value))
        return cls(tuple(components))

    @staticmethod
    def _validate(name: str, value: str, text: str) -> None:
        try:
            if name == "ip4":
                ipaddress.IPv4Address(value)
            elif name == "ip6":
                ipaddress.IPv6Address(value)
            elif name in ("tcp", "udp"):
                if not value.isdigit() or int(value) > 65535:
                    raise ValueError(f"bad port {value!r}")
            elif name == "p2p":
                if not base58_decode(value):
                    raise ValueError("empty peer id")
        except ValueError as exc:
            raise NodeError(f"invalid address {text!r}: {exc}") from exc

    def _value(self, *names: str) -> Optional[str]:
        return next((value for key, value in self.components if key in names), None)

    @property
    def host(self) -> Optional[str]:
        return self._value("ip4", "ip6", "dns", "dns4", "dns6")

    @property
    def port(self) -> Optional[int]:
        value = self._value("tcp")
        return int(value) if value is not None else None

    @property
    def peer_id(self) -> Optional[str]:
        values = [value for key, value in self.components if key == "p2p"]
        return values[-1] if values else None

    @property
    def transport(self) -> "PeerAddress":
        """The address without its /p2p part."""
        return PeerAddress(tuple(c for c in self.components if c[0] != "p2p"))

    def with_peer(self, peer_id: str) -> "PeerAddress":
        return PeerAddress(self.transport.components + (("p2p", peer_id),))

    def __str__(self) -> str:
        return "".join(f"/{key}" + (f"/{value}" if value is not None else "")
                       for key, value in self.components)


@dataclass
class AddressExchangeRequest:
    """Asks a peer for its listen addresses."""

    peer_id: str

    def to_json(self) -> str:
        return json.dumps({"peer_id": self.peer_id}, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "AddressExchangeRequest":
        data = _load_object(text)
        return cls(peer_id=str(data.get("peer_id") or ""))


@dataclass
class AddressExchangeResponse:
    """A peer's answer with its listen addresses."""

    status: str
    addresses: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps({"status": self.status, "addresses": self.addresses},
                          separators=(",", ":"))

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "AddressExchangeResponse":
        data = _load_object(text)
        addresses = data.get("addresses") or []
        if not isinstance(addresses, list) or not all(isinstance(a, str) for a in addresses):
            raise NodeError("invalid address exchange response: bad addresses")
        return cls(status=str(data.get("status") or ""), addresses=addresses)


def _load_object(text: Union[str, bytes]) -> dict:
    try:
        value = json.loads(text)
    except (ValueError, UnicodeDecodeError) as exc:
        raise NodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise NodeError("invalid JSON: expected an object")
    return value


def _new_peer_id() -> str:
    return base58_encode(sha256_multihash(secrets.token_bytes(32)))


class _Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True
    node: "Node"


class _Handler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        protocol = self.rfile.readline().decode("utf-8", "replace").strip()
        try:
            self.server.node._serve(protocol, self.rfile, self.wfile)  # type: ignore[attr-defined]
        except (NodeError, ProtocolError, OSError, ValueError) as exc:
            logger.warning("Error handling %s stream: %s", protocol, exc)


class Node:
    """A peer that serves files from ``share_dir`` and tracks provider records."""

    retry_delay = 5.0

    def __init__(
        self,
        share_dir: Union[str, Path],
        bootstrap_peers: Optional[Iterable[str]] = None,
        host: str = "0.0.0.0",
        port: int = 0,
    ) -> None:
        self.share_dir = Path(share_dir)
        self.bootstrap_peers = list(bootstrap_peers or [])
        self.host = host
        self.port = port
        self.peer_id = _new_peer_id()
        self._lock = threading.Lock()
        self._peers: dict[str, list[str]] = {}
        self._providers: dict[str, dict[str, list[str]]] = {}
        self._stopped = threading.Event()
        self._server: Optional[_Server] = None
        self._threads: list[threading.Thread] = []

    # lifecycle

    def start(self) -> None:
        """Listen for peers, then connect to the bootstrap peers."""
        if self._stopped.is_set():
            raise NodeError("node is already stopped")
        if self._server is not None:
            raise NodeError("node is already started")
        try:
            server = _Server((self.host, self.port), _Handler)
        except OSError as exc:
            raise NodeError(f"failed to listen on {self.host}:{self.port}: {exc}") from exc
        server.node = self
        self._server = server
        self._spawn(server.serve_forever)
        self._spawn(self._address_exchange_loop)
        self._bootstrap()
        logger.info("Node started with ID: %s", self.peer_id)
        for address in self.addresses():
            logger.info("Listening on: %s/p2p/%s", address, self.peer_id)

    def _spawn(self, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _bootstrap(self) -> None:
        if not self.bootstrap_peers:
            return
        wanted = min(MIN_BOOTSTRAP_PEERS, len(self.bootstrap_peers))
        connected = 0
        for attempt in range(BOOTSTRAP_ATTEMPTS):
            if attempt:
                logger.info("Retry connecting to bootstrap nodes (attempt %d/%d)",
                            attempt + 1, BOOTSTRAP_ATTEMPTS)
            connected = 0
            for address in self.bootstrap_peers:
                try:
                    peer_id = self.connect(address)
                except NodeError as exc:
                    logger.info("Failed to connect to bootstrap node %s: %s", address, exc)
                    continue
                logger.info("Connected to bootstrap node: %s", peer_id)
                connected += 1
            if connected >= wanted:
                return
            time.sleep(self.retry_delay)
        if connected == 0:
            raise NodeError(
                f"bootstrap timeout, no peers connected after {BOOTSTRAP_ATTEMPTS} attempts"
            )

    def stop(self) -> None:
        """Stop listening and end background work."""
        self._stopped.set()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads.clear()

    def __enter__(self) -> "Node":
        try:
            self.start()
        except BaseException:
            self.stop()
            raise
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    def _check_running(self) -> None:
        if self._stopped.is_set():
            raise NodeError("node is stopped")

    # peer table

    def peers(self) -> list[str]:
        with self._lock:
            return list(self._peers)

    def routing_table_size(self) -> int:
        with self._lock:
            return len(self._peers)

    def addresses(self) -> list[str]:
        """This node's listen addresses, without the /p2p part."""
        if self._server is None or self._stopped.is_set():
            return []
        host, port = self._server.server_address[:2]
        if host in ("0.0.0.0", ""):
            host = "127.0.0.1"
        elif host == "::":
            host = "::1"
        kind = "ip6" if ":" in host else "ip4"
        return [f"/{kind}/{host}/tcp/{port}"]

    def _remember(self, peer_id: str, addresses: Iterable[str]) -> None:
        if peer_id == self.peer_id:
            return
        with self._lock:
            known = self._peers.setdefault(peer_id, [])
            for address in addresses:
                if address not in known:
                    known.append(address)

    def _addresses_of(self, peer_id: str) -> list[str]:
        if peer_id == self.peer_id:
            return self.addresses()
        with self._lock:
            return list(self._peers.get(peer_id, []))

    # client side

    def _open(self, address: PeerAddress, protocol: str) -> socket.socket:
        if address.host is None or address.port is None:
            raise NodeError(f"cannot dial address {address}")
        try:
            sock = socket.create_connection((address.host, address.port), timeout=CONNECT_TIMEOUT)
            sock.sendall(protocol.encode("utf-8") + b"\n")
        except OSError as exc:
            raise NodeError(f"failed to connect to peer: {exc}") from exc
        return sock

    def _exchange(self, address: PeerAddress, protocol: str, payload: str) -> str:
        with self._open(address, protocol) as sock:
            try:
                sock.sendall(payload.encode("utf-8") + b"\n")
                with sock.makefile("rb") as reader:
                    line = reader.readline()
            except OSError as exc:
                raise NodeError(f"failed to talk to peer: {exc}") from exc
        if not line.strip():
            raise NodeError("peer closed the stream")
        return line.decode("utf-8")

    def _dht_call(self, address: PeerAddress, request: dict) -> dict:
        reply = _load_object(self._exchange(address, DHT_PROTOCOL_ID, json.dumps(request)))
        if reply.get("error"):
            raise NodeError(f"peer error: {reply['error']}")
        return reply

    def _dial_peer(self, peer_id: str, call: Callable[[PeerAddress], Any]) -> Any:
        last: Optional[Exception] = None
        for text in self._addresses_of(peer_id):
            try:
                return call(PeerAddress.parse(text).with_peer(peer_id))
            except NodeError as exc:
                last = exc
        raise NodeError(f"failed to reach peer {peer_id}: {last or 'no known addresses'}")

    def _hello(self, address: PeerAddress) -> str:
        reply = self._dht_call(
            address, {"op": "hello", "peer_id": self.peer_id, "addresses": self.addresses()}
        )
        if reply.get("peer_id") != address.peer_id:
            raise NodeError("failed to connect to peer: peer id mismatch")
        self._remember(address.peer_id, [str(address.transport), *reply.get("addresses", [])])
        return address.peer_id

    def connect(self, address: Union[str, PeerAddress]) -> str:
        """Connect to a peer by its full address; return its peer id."""
        self._check_running()
        parsed = PeerAddress.parse(address) if isinstance(address, str) else address
        if parsed.peer_id is None:
            raise NodeError(f"invalid peer address: {parsed} has no /p2p part")
        return self._hello(parsed)

    # content routing

    def local_file_path(self, file_hash: str) -> Path:
        return self.share_dir / (file_hash + ENCRYPTED_SUFFIX)

    def has_local_file(self, file_hash: str) -> bool:
        return self.local_file_path(file_hash).is_file()

    def publish_file_info(self, file_hash: str) -> int:
        """Announce this node as a provider; return how many peers took the record."""
        self._check_running()
        cid = str(hash_to_cid(file_hash))
        logger.info("Publishing file with CID: %s", cid)
        with self._lock:
            self._providers.setdefault(cid, {})[self.peer_id] = self.addresses()
        peers = self.peers()
        if not peers:
            raise NodeError("failed to connect to minimum required peers (1)")
        request = {"op": "add_provider", "cid": cid, "peer_id": self.peer_id,
                   "addresses": self.addresses()}
        accepted = 0
        for peer_id in peers:
            try:
                self._dial_peer(peer_id, lambda address: self._dht_call(address, request))
                accepted += 1
            except NodeError as exc:
                logger.info("Publish to %s failed: %s", peer_id, exc)
        if not accepted:
            raise NodeError("failed to publish provider record")
        return accepted

    def _find_peer(self, peer_id: str) -> list[str]:
        for known in self.peers():
            if known == peer_id:
                continue
            try:
                reply = self._dial_peer(
                    known, lambda a: self._dht_call(a, {"op": "find_peer", "peer_id": peer_id})
                )
            except NodeError:
                continue
            if reply.get("addresses"):
                return list(reply["addresses"])
        return []

    def find_file_providers(self, file_hash: str) -> list[str]:
        """Return the ids of reachable peers that provide the file."""
        self._check_running()
        cid = str(hash_to_cid(file_hash))
        logger.info("Looking for providers of file with CID: %s", cid)
        if self.has_local_file(file_hash):
            return [self.peer_id]
        peers = self.peers()
        if not peers:
            raise NodeError("no peers connected")

        found: dict[str, list[str]] = {}
        with self._lock:
            for peer_id, addrs in self._providers.get(cid, {}).items():
                found.setdefault(peer_id, list(addrs))
        for peer_id in peers:
            try:
                reply = self._dial_peer(
                    peer_id, lambda a: self._dht_call(a, {"op": "get_providers", "cid": cid})
                )
            except NodeError as exc:
                logger.info("Provider query to %s failed: %s", peer_id, exc)
                continue
            for entry in reply.get("providers", []):
                found.setdefault(entry["peer_id"], []).extend(entry.get("addresses", []))

        reachable = []
        for peer_id, addrs in found.items():
            if peer_id == self.peer_id:
                continue
            if not addrs:
                addrs = self._find_peer(peer_id)
            self._remember(peer_id, addrs)
            try:
                self._dial_peer(peer_id, self._hello)
            except NodeError as exc:
                logger.info("Provider %s is not reachable: %s", peer_id, exc)
                continue
            reachable.append(peer_id)
        if not reachable:
            raise NodeError("no providers found")
        return reachable

    def request_file(self, peer_id: str, file_hash: str) -> BinaryIO:
        """Ask a peer for the encrypted file; return a stream of its bytes."""
        self._check_running()
        if not self._addresses_of(peer_id):
            self._remember(peer_id, self._find_peer(peer_id))

        def call(address: PeerAddress) -> BinaryIO:
            sock = self._open(address, PROTOCOL_ID)
            reader = sock.makefile("rb")
            try:
                with sock.makefile("wb") as writer:
                    send_file_request(reader, writer, file_hash)
            except (ProtocolError, OSError) as exc:
                reader.close()
                sock.close()
                raise NodeError(str(exc)) from exc
            sock.close()
            return reader

        return self._dial_peer(peer_id, call)

    def exchange_addresses_with_peers(self) -> dict[str, list[str]]:
        """Ask every peer for its addresses; return full addresses by peer id."""
        results: dict[str, list[str]] = {}
        request = AddressExchangeRequest(peer_id=self.peer_id).to_json()
        for peer_id in self.peers():
            try:
                line = self._dial_peer(
                    peer_id, lambda a: self._exchange(a, EXCHANGE_PROTOCOL_ID, request)
                )
                response = AddressExchangeResponse.from_json(line)
            except NodeError as exc:
                logger.info("Address exchange with %s failed: %s", peer_id, exc)
                continue
            if response.status != "ok" or not response.addresses:
                continue
            valid = []
            for text in response.addresses:
                try:
                    valid.append(PeerAddress.parse(text))
                except NodeError:
                    logger.info("Invalid address from peer: %s", text)
            self._remember(peer_id, [str(a.transport) for a in valid])
            results[peer_id] = [str(a.with_peer(peer_id)) for a in valid]
        return results

    def _address_exchange_loop(self) -> None:
        while not self._stopped.wait(EXCHANGE_INTERVAL):
            self.exchange_addresses_with_peers()

    # server side

    def _serve(self, protocol: str, reader: BinaryIO, writer: BinaryIO) -> None:
        if protocol == PROTOCOL_ID:
            handle_stream(self.share_dir, reader, writer)
        elif protocol == EXCHANGE_PROTOCOL_ID:
            AddressExchangeRequest.from_json(reader.readline())
            response = AddressExchangeResponse(status="ok", addresses=self.addresses())
            writer.write(response.to_json().encode("utf-8") + b"\n")
        elif protocol == DHT_PROTOCOL_ID:
            reply = self._dht_reply(_load_object(reader.readline()))
            writer.write(json.dumps(reply).encode("utf-8") + b"\n")
        else:
            raise NodeError(f"unknown protocol {protocol!r}")
        writer.flush()

    def _dht_reply(self, request: dict) -> dict:
        op = request.get("op")
        if op == "hello":
            self._remember(str(request.get("peer_id")), request.get("addresses") or [])
            return {"peer_id": self.peer_id, "addresses": self.addresses()}
        if op == "add_provider":
            peer_id = str(request.get("peer_id"))
            addrs = list(request.get("addresses") or [])
            with self._lock:
                self._providers.setdefault(str(request.get("cid")), {})[peer_id] = addrs
            self._remember(peer_id, addrs)
            return {"ok": True}
        if op == "get_providers":
            with self._lock:
                records = dict(self._providers.get(str(request.get("cid")), {}))
            return {"providers": [{"peer_id": p, "addresses": a} for p, a in records.items()]}
        if op == "find_peer":
            return {"addresses": self._addresses_of(str(request.get("peer_id")))}
        return {"error": f"unknown operation {op!r}"}