"""Peer-to-peer file sharing with AES-encrypted storage, a TCP peer node, a CLI and a web front end."""

__version__ = "0.1.0"
__all__ = ["cid", "cli", "encryption", "file_service", "node", "protocol", "web"]