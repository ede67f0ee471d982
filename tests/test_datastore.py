import os
from pathlib import Path

import pytest

from vmbootstrap.datastore import (
    GovcError,
    delete_from_datastore,
    hash_file_path,
    needs_upload,
    save_uploaded_hash,
    split_remote_path,
    upload_with_govc,
)

HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"

RECORDING_GOVC = """#!/bin/sh
printf '%s\\n' "$@" > "$RECORD"
printf '%s\\n' "$GOVC_URL" "$GOVC_USERNAME" "$GOVC_INSECURE" >> "$RECORD"
exit 0
"""


def _write_fake(bin_dir: Path, name: str, content: str) -> None:
    path = bin_dir / name
    path.write_text(content)
    path.chmod(0o755)


@pytest.fixture
def fake_bin(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))
    record = tmp_path / "record.txt"
    monkeypatch.setenv("RECORD", str(record))
    return bin_dir, record


def test_hash_file_suffix():
    assert hash_file_path("/tmp/example.iso") == "/tmp/example.iso.uploaded.sha256"


def test_needs_upload_no_hash_file(tmp_path):
    p = tmp_path / "a.iso"
    p.write_bytes(b"data")
    assert needs_upload(p) is True


def test_needs_upload_match_and_change(tmp_path):
    p = tmp_path / "a.iso"
    p.write_bytes(b"data")
    save_uploaded_hash(p)
    assert needs_upload(p) is False
    p.write_bytes(b"changed")
    assert needs_upload(p) is True


def test_needs_upload_missing_file(tmp_path):
    assert needs_upload(tmp_path / "missing.iso") is True


def test_save_uploaded_hash_content(tmp_path):
    p = tmp_path / "file.txt"
    p.write_bytes(b"hello")
    save_uploaded_hash(p)
    assert Path(hash_file_path(p)).read_text() == HELLO_SHA256


def test_save_uploaded_hash_missing_file(tmp_path):
    p = tmp_path / "missing.iso"
    save_uploaded_hash(p)
    assert not Path(hash_file_path(p)).exists()


@pytest.mark.parametrize(
    "remote, expected",
    [
        ("ISO/ubuntu/file.iso", ("ISO/ubuntu", "file.iso")),
        ("file.iso", ("", "file.iso")),
        ("ISO/test.iso", ("ISO", "test.iso")),
    ],
)
def test_split_remote_path(remote, expected):
    assert split_remote_path(remote) == expected


def test_upload_with_govc_success(fake_bin):
    bin_dir, record = fake_bin
    _write_fake(bin_dir, "govc", RECORDING_GOVC)
    result = upload_with_govc("ds", "local.iso", "remote.iso", "vc", "user", "pass", True)
    assert result is None
    assert record.read_text().splitlines() == [
        "datastore.upload", "-ds", "ds", "local.iso", "remote.iso",
        "https://vc/sdk", "user", "true",
    ]


def test_upload_with_govc_failure(fake_bin):
    bin_dir, _ = fake_bin
    _write_fake(bin_dir, "govc", "#!/bin/sh\necho fail 1>&2\nexit 1\n")
    with pytest.raises(GovcError, match="govc upload failed") as info:
        upload_with_govc("ds", "local.iso", "remote.iso", "vc", "user", "pass", True)
    assert "fail" in str(info.value).split("Output:")[1]


def test_upload_with_govc_missing(tmp_path, monkeypatch):
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    with pytest.raises(GovcError, match="govc not found"):
        upload_with_govc("ds", "local.iso", "remote.iso", "vc", "user", "pass", False)


def test_delete_from_datastore_success(fake_bin):
    bin_dir, record = fake_bin
    _write_fake(bin_dir, "govc", RECORDING_GOVC)
    result = delete_from_datastore("ds", "path.iso", "vc", "user", "pass", False)
    assert result is None
    assert record.read_text().splitlines() == [
        "datastore.rm", "-ds", "ds", "path.iso", "https://vc/sdk", "user", "false",
    ]


def test_delete_from_datastore_failure(fake_bin):
    bin_dir, _ = fake_bin
    _write_fake(bin_dir, "govc", "#!/bin/sh\necho fail 1>&2\nexit 1\n")
    with pytest.raises(GovcError, match="govc datastore.rm failed"):
        delete_from_datastore("ds", "path.iso", "vc", "user", "pass", True)


def test_delete_from_datastore_not_found_is_ignored(fake_bin):
    bin_dir, record = fake_bin
    _write_fake(
        bin_dir,
        "govc",
        "#!/bin/sh\nprintf '%s\\n' \"$@\" > \"$RECORD\"\n"
        "echo \"govc: File [ds] path.iso was not found\" 1>&2\nexit 1\n",
    )
    result = delete_from_datastore("ds", "path.iso", "vc", "user", "pass", True)
    assert result is None
    assert record.read_text().splitlines() == ["datastore.rm", "-ds", "ds", "path.iso"]


def test_delete_from_datastore_missing_govc(tmp_path, monkeypatch):
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    with pytest.raises(GovcError, match="cannot delete from datastore"):
        delete_from_datastore("ds", "path.iso", "vc", "user", "pass", True)