"""Datastore file transfer through govc and upload change tracking."""

from __future__ import annotations

import shutil
import subprocess
import time
from pathlib import Path

from vmbootstrap.devices import govc_command
from vmbootstrap.download import compute_sha256

UPLOAD_PROGRESS_INTERVAL = 5.0
_HASH_SUFFIX = ".uploaded.sha256"


class GovcError(Exception):
    """Raised when a govc invocation fails or govc is unavailable."""


def hash_file_path(local_path: str | Path) -> str:
    """Return where the hash of the last uploaded version of a file is kept."""
    return str(local_path) + _HASH_SUFFIX


def needs_upload(local_path: str | Path) -> bool:
    """Return True unless the file is unchanged since its last recorded upload."""
    try:
        current = compute_sha256(local_path)
    except OSError:
        return True
    try:
        saved = Path(hash_file_path(local_path)).read_text(encoding="utf-8")
    except OSError:
        return True
    return saved != current


def save_uploaded_hash(local_path: str | Path) -> None:
    """Record the file's current hash; failures are ignored."""
    try:
        digest = compute_sha256(local_path)
        Path(hash_file_path(local_path)).write_text(digest, encoding="utf-8")
    except OSError:
        pass


def split_remote_path(remote_path: str) -> tuple[str, str]:
    """Split "ISO/ubuntu/file.iso" into ("ISO/ubuntu", "file.iso")."""
    directory, _, filename = remote_path.rpartition("/")
    return directory, filename


def _start_govc(
    vcenter_host: str, vcenter_user: str, vcenter_pass: str, insecure: bool, *args: str
) -> subprocess.Popen[bytes]:
    argv, env = govc_command(vcenter_host, vcenter_user, vcenter_pass, insecure, *args)
    try:
        return subprocess.Popen(
            argv, env=env, stdout=subprocess.PIPE, stderr=subprocess.STDOUT
        )
    except OSError as exc:
        raise GovcError(f"failed to start govc: {exc}") from exc


def upload_with_govc(
    datastore_name: str,
    local_path: str | Path,
    remote_path: str,
    vcenter_host: str,
    vcenter_user: str,
    vcenter_pass: str,
    insecure: bool,
) -> None:
    """Upload a file with govc datastore.upload, printing elapsed time."""
    if shutil.which("govc") is None:
        raise GovcError("govc not found in PATH")

    proc = _start_govc(
        vcenter_host, vcenter_user, vcenter_pass, insecure,
        "datastore.upload", "-ds", datastore_name, str(local_path), remote_path,
    )
    start = time.monotonic()
    try:
        while True:
            try:
                output, _ = proc.communicate(timeout=UPLOAD_PROGRESS_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                elapsed = int(time.monotonic() - start)
                print(
                    f"\r   Uploading... elapsed: {elapsed // 60}m {elapsed % 60}s",
                    end="",
                    flush=True,
                )
    except BaseException:
        proc.kill()
        proc.wait()
        raise
    print()

    if proc.returncode != 0:
        text = output.decode("utf-8", "replace")
        raise GovcError(
            f"govc upload failed: exit status {proc.returncode}\nOutput: {text}"
        )


def delete_from_datastore(
    datastore_name: str,
    remote_path: str,
    vcenter_host: str,
    vcenter_user: str,
    vcenter_pass: str,
    insecure: bool,
) -> None:
    """Delete a datastore file with govc; a file that is already gone is fine."""
    if shutil.which("govc") is None:
        raise GovcError("govc not found - cannot delete from datastore")

    proc = _start_govc(
        vcenter_host, vcenter_user, vcenter_pass, insecure,
        "datastore.rm", "-ds", datastore_name, remote_path,
    )
    output, _ = proc.communicate()
    if proc.returncode != 0:
        message = output.decode("utf-8", "replace").strip()
        if "was not found" in message:
            return
        raise GovcError(
            f"govc datastore.rm failed: exit status {proc.returncode}\nOutput: {message}"
        )