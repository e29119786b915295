import socket

import pytest

from peershare.node import (
    AddressExchangeRequest,
    AddressExchangeResponse,
    Node,
    NodeError,
    PeerAddress,
)

FULL = "/ip4/104.131.131.82/tcp/4001/p2p/QmaCpDMGvV2BGHeYERUEnRQAwe3N8SzbUtfsmvsqQLuvuJ"


def _full_address(node):
    return node.addresses()[0] + "/p2p/" + node.peer_id


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_peer_address_round_trip():
    address = PeerAddress.parse(FULL)
    assert str(address) == FULL
    assert address.host == "104.131.131.82"
    assert address.port == 4001
    assert address.peer_id == "QmaCpDMGvV2BGHeYERUEnRQAwe3N8SzbUtfsmvsqQLuvuJ"
    assert str(address.transport) == "/ip4/104.131.131.82/tcp/4001"


def test_peer_address_without_port():
    text = "/dnsaddr/bootstrap.libp2p.io/p2p/QmNnooDu7bfjPFoTZYxMNLWUQJyrVwtbZg5gBMjTezGAJN"
    address = PeerAddress.parse(text)
    assert address.port is None
    assert str(address) == text


@pytest.mark.parametrize(
    "text", ["/ip4/999.1.1.1/tcp/1", "ip4/1.2.3.4/tcp/1", "/bogus/1", "/ip4/1.2.3.4/tcp/99999", "/tcp"]
)
def test_peer_address_rejects_invalid(text):
    with pytest.raises(NodeError):
        PeerAddress.parse(text)


def test_address_exchange_messages():
    assert AddressExchangeRequest(peer_id="abc").to_json() == '{"peer_id":"abc"}'
    assert AddressExchangeRequest.from_json('{"peer_id":"abc"}').peer_id == "abc"
    response = AddressExchangeResponse(status="ok", addresses=["/ip4/127.0.0.1/tcp/1"])
    assert AddressExchangeResponse.from_json(response.to_json()) == response
    with pytest.raises(NodeError):
        AddressExchangeResponse.from_json("[1]")


def test_connect_requires_peer_id(tmp_path):
    node = Node(tmp_path)
    with pytest.raises(NodeError):
        node.connect("/ip4/127.0.0.1/tcp/4001")


def test_local_file_is_its_own_provider(tmp_path):
    (tmp_path / "abc.encrypted").write_bytes(b"x")
    with Node(tmp_path, host="127.0.0.1") as node:
        assert node.has_local_file("abc")
        assert not node.has_local_file("def")
        assert node.local_file_path("abc") == tmp_path / "abc.encrypted"
        assert node.find_file_providers("abc") == [node.peer_id]


def test_publish_without_peers_fails(tmp_path):
    with Node(tmp_path, host="127.0.0.1") as node:
        with pytest.raises(NodeError):
            node.publish_file_info("abc")
        with pytest.raises(NodeError):
            node.find_file_providers("abc")


def test_stopped_node_refuses_work(tmp_path):
    node = Node(tmp_path, host="127.0.0.1")
    node.start()
    node.stop()
    with pytest.raises(NodeError):
        node.publish_file_info("abc")
    with pytest.raises(NodeError):
        node.start()


def test_unreachable_bootstrap_fails(tmp_path):
    node = Node(tmp_path, [f"/ip4/127.0.0.1/tcp/{_free_port()}/p2p/" + "Qm" + "a" * 44],
                host="127.0.0.1")
    node.retry_delay = 0
    with pytest.raises(NodeError):
        node.start()
    node.stop()


def test_two_nodes_share_a_file(tmp_path):
    dir_a, dir_b = tmp_path / "a", tmp_path / "b"
    dir_a.mkdir()
    dir_b.mkdir()
    payload = b"encrypted bytes" * 1000
    (dir_a / "f00d.encrypted").write_bytes(payload)
    with Node(dir_a, host="127.0.0.1") as a:
        with Node(dir_b, [_full_address(a)], host="127.0.0.1") as b:
            assert b.peers() == [a.peer_id]
            assert a.peers() == [b.peer_id]
            assert a.routing_table_size() == 1
            assert a.publish_file_info("f00d") == 1
            assert b.find_file_providers("f00d") == [a.peer_id]
            with b.request_file(a.peer_id, "f00d") as stream:
                assert stream.read() == payload
            with pytest.raises(NodeError):
                b.request_file(a.peer_id, "missing")
            exchanged = b.exchange_addresses_with_peers()
            assert exchanged == {a.peer_id: [_full_address(a)]}