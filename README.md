# peershare

Share files between peers. Each file you share is encrypted with AES-256
in CFB mode, using a 32-byte key kept on your machine. The encrypted copy
is stored in your share directory as `<sha256>.encrypted`, and your node
announces it to the peers it knows. Other peers fetch the file by its
SHA-256 hash and decrypt it with the same key.

## Installation

```
pip install .
```

## Command line

Every run of `peershare` creates the share directory `~/.p2p-share` if it
is missing, and checks that it can write there. If the key file
`~/.p2p-share/key` does not exist, it is created with a freshly generated
key and mode 0600.

Start a node and keep it running until Ctrl+C or SIGTERM:

```
peershare start
```

Share a file. The command prints the file's hash, then keeps the node
running until you press Ctrl+C:

```
peershare share path/to/report.pdf
```

Download a file by its hash. If the encrypted file is already in your
share directory, it is decrypted straight from there. Otherwise the
node asks its peers for providers and downloads the file from one of
them:

```
peershare download <hash> path/to/output.pdf
```

Global options go before the command:

| Option | Default | Meaning |
| --- | --- | --- |
| `--share-dir` | `~/.p2p-share` | Directory for shared files |
| `--key-file` | `~/.p2p-share/key` | File holding the encryption key |
| `--bootstrap ADDRESS` | none | Peer to connect to at start; may be repeated |
| `--host` | `0.0.0.0` | Address the node listens on |
| `--port` | `0` (any free port) | Port the node listens on |

For example:

```
peershare --share-dir /srv/share --key-file /srv/share/key --port 4001 start
peershare --port 4002 --bootstrap /ip4/192.0.2.10/tcp/4001/p2p/<peer-id> download <hash> out.bin
```

A bootstrap address is a multiaddress that ends in the peer's id:
`/ip4/<address>/tcp/<port>/p2p/<peer-id>`. If bootstrap peers are given,
the node needs to reach at least three of them, or all of them if fewer
are given. It makes three attempts. If it reaches none, it does not
start.

## Web interface

```
peershare-web
```

This uses `~/.p2p-share` and its key file, starts a node and serves a
page at `http://localhost:8080`. The page shows:

- the node's id;
- the number of connected peers;
- the files in the share directory, with their sizes.

From the page you can upload a file to share it, or enter a hash to
download a file. Options: `--host` and `--port` for the web server,
`--node-port` for the peer node, and `--bootstrap ADDRESS` (repeatable).

## Library use

```python
from peershare.encryption import Encryption, generate_key
from peershare.node import Node
from peershare.file_service import FileService, format_size

key = generate_key()
encryption = Encryption(key)

with Node("/tmp/share", [], "127.0.0.1", 0) as node:
    print(node.peer_id, node.addresses())
    service = FileService(node, encryption, "/tmp/share")
    for info in service.list_files():
        print(info.hash, info.size)

print(format_size(1536))  # "1.5 KB"
```

Modules:

- `peershare.encryption`: `Encryption.encrypt_file` and
  `Encryption.decrypt_file`. Each encrypted file starts with a random
  16-byte IV.
- `peershare.node`: `Node` listens for peers over TCP and keeps a table
  of known peers and provider records. Its methods are `connect`,
  `publish_file_info`, `find_file_providers`, `request_file` and
  `exchange_addresses_with_peers`. It parses addresses with
  `PeerAddress`.
- `peershare.protocol`: the line-delimited JSON messages used for file
  requests (`Message`, `FileRequest`, `FileResponse`).
- `peershare.cid`: `hash_to_cid`, plus base58 helpers.
- `peershare.file_service`: `FileService.share_file`, `download_file` and
  `list_files`, and `calculate_file_hash`.

Each component raises its own exception on failure:

| Component | Exception |
| --- | --- |
| Encryption | `EncryptionError` |
| Network node | `NodeError` |
| Wire protocol | `ProtocolError` |
| File service | `FileServiceError` |

## What it does not do

- There is no public network and no built-in list of bootstrap peers. A
  node only knows the peers you give it with `--bootstrap`, the peers
  that connect to it, and the peers these two kinds of peer tell it
  about. Provider records are held in memory and are lost when the node
  stops.
- There is no NAT traversal or relaying. Peers must reach each other
  directly over TCP.
- A node's id is random and new on every start. The command-line tool
  reports the node's id and listen address only through Python's
  `logging` at INFO level, which it does not enable. The web page shows
  the id.
- A node listening on `0.0.0.0` advertises `127.0.0.1`. Give `--host`
  an address that other machines can reach if they are to connect back.
- All peers must share the same key file to decrypt each other's files.
- If no peer is connected, `share` keeps the encrypted file locally
  without announcing it.