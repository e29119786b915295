import pytest

from peershare.cli import get_encryption_key, main, setup_services
from peershare.encryption import Encryption, EncryptionError
from peershare.file_service import calculate_file_hash


@pytest.fixture
def home(tmp_path, monkeypatch):
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    monkeypatch.setenv("USERPROFILE", str(home_dir))
    return home_dir


def test_get_encryption_key_creates_and_reuses(tmp_path):
    key_file = tmp_path / "nested" / "key"
    key = get_encryption_key(key_file)
    assert len(key) == 32
    assert key_file.read_bytes() == key
    assert get_encryption_key(key_file) == key


def test_get_encryption_key_reads_existing(tmp_path):
    key_file = tmp_path / "key"
    key_file.write_bytes(b"k" * 32)
    assert get_encryption_key(key_file) == b"k" * 32


def test_setup_services_uses_share_dir(tmp_path):
    share = tmp_path / "share"
    node, encryption, file_service = setup_services(share, share / "key")
    assert node.share_dir == share
    assert file_service.share_dir == share
    assert share.is_dir()
    assert [info.hash for info in file_service.list_files()] == ["key"]


def test_setup_services_rejects_bad_key(tmp_path):
    key_file = tmp_path / "key"
    key_file.write_bytes(b"short")
    with pytest.raises(EncryptionError, match="key must be 32 bytes"):
        setup_services(tmp_path / "share", key_file)


def test_main_download_local_file(home, tmp_path, capsys):
    share = tmp_path / "share"
    share.mkdir()
    key_file = share / "key"
    key = get_encryption_key(key_file)
    source = tmp_path / "source.txt"
    source.write_bytes(b"cli download")
    file_hash = calculate_file_hash(source)
    Encryption(key).encrypt_file(source, share / f"{file_hash}.encrypted")

    output = tmp_path / "out.txt"
    code = main(["--share-dir", str(share), "--key-file", str(key_file),
                 "download", file_hash, str(output)])
    assert code == 0
    assert output.read_bytes() == b"cli download"
    assert "File downloaded successfully!" in capsys.readouterr().out


def test_main_reports_bad_key(home, tmp_path, capsys):
    key_file = tmp_path / "key"
    key_file.write_bytes(b"short")
    code = main(["--share-dir", str(tmp_path / "share"), "--key-file", str(key_file),
                 "download", "abc", str(tmp_path / "out")])
    assert code == 1
    assert "key must be 32 bytes" in capsys.readouterr().out


def test_main_prepares_default_share_dir(home, tmp_path, capsys):
    key_file = tmp_path / "key"
    key_file.write_bytes(b"short")
    code = main(["--key-file", str(key_file), "download", "abc", str(tmp_path / "out")])
    default_share = home / ".p2p-share"
    assert code == 1
    assert default_share.is_dir()
    assert not (default_share / "test.txt").exists()
    out = capsys.readouterr().out
    assert f"Share directory: {default_share}" in out


def test_main_requires_arguments(home):
    with pytest.raises(SystemExit) as info:
        main(["share"])
    assert info.value.code == 2