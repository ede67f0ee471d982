"""Rebuild an Ubuntu installer ISO so that it boots straight into autoinstall."""

from __future__ import annotations

import json
import os
import shutil
import stat
import subprocess
import time
from dataclasses import asdict, dataclass
from pathlib import Path

ISO_MODIFIER_VERSION = "2026-02-24-20.04-append-v2"

DEFAULT_GRUB_TIMEOUT_SECONDS = 5
DEFAULT_MODIFIED_SUFFIX = "-autoinstall"
DEFAULT_VOLUME_ID = "Ubuntu-Server"
EXTRACT_DIR_NAME = "ubuntu-iso-extract"
EXTRACT_PROGRESS_INTERVAL = 10.0

GRUB_CONFIG_FILES = (
    "boot/grub/grub.cfg",
    "boot/grub/loopback.cfg",
    "isolinux/txt.cfg",
)

_BIOS_BOOT_CANDIDATES = (
    ("boot/grub/i386-pc/eltorito.img", "boot.catalog"),
    ("isolinux/isolinux.bin", "isolinux/boot.cat"),
)

_UEFI_BOOT_CANDIDATES = (
    "boot/grub/efi.img",
    "EFI/ubuntu/grubx64.efi",
    "EFI/boot/bootx64.efi",
)

_AUTOINSTALL = "autoinstall ds=nocloud"

import re  # noqa: E402

_WS = r"[\t\n\f\r ]"
_TIMEOUT_RE = re.compile(rf"(^|{_WS})(timeout|set timeout)({_WS}*=?{_WS}*)(\d+)", re.M)
_DEFAULT_RE = re.compile(r"set default=\d+")
_KERNEL_RE = re.compile(rf"(^{_WS}*(?:linux|linuxefi){_WS}+[^\t\n\f\r ]+)(.*)$", re.M)
_APPEND_RE = re.compile(rf"^({_WS}*append{_WS}+)(.*)$", re.M)


class IsoToolError(Exception):
    """Raised when extracting, patching or repacking an ISO fails."""


@dataclass(frozen=True)
class IsoMeta:
    """Records which source ISO a modified ISO was built from."""

    version: str = ""
    source_path: str = ""
    source_size: int = 0
    source_mod_time: int = 0


def read_iso_meta(path: str | Path) -> IsoMeta:
    """Load metadata written by write_iso_meta."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"ISO metadata in {path} is not an object")
    return IsoMeta(
        version=str(data.get("version", "")),
        source_path=str(data.get("source_path", "")),
        source_size=int(data.get("source_size", 0)),
        source_mod_time=int(data.get("source_mod_time", 0)),
    )


def write_iso_meta(path: str | Path, meta: IsoMeta) -> None:
    """Store metadata next to a modified ISO."""
    Path(path).write_text(json.dumps(asdict(meta), separators=(",", ":")), encoding="utf-8")


def _insert_autoinstall(params: str, leading: str, trailing: str) -> str:
    if "---" in params:
        return params.replace("---", f"{_AUTOINSTALL} ---", 1)
    return f"{leading}{_AUTOINSTALL}{trailing}{params}"


def modify_grub_text(text: str, timeout_seconds: int = DEFAULT_GRUB_TIMEOUT_SECONDS) -> str:
    """Shorten the timeout, select entry 0 and add autoinstall to kernel lines."""
    modified = _TIMEOUT_RE.sub(rf"\g<1>\g<2>\g<3>{timeout_seconds}", text)

    if "set default=" in modified:
        modified = _DEFAULT_RE.sub("set default=0", modified)
    else:
        modified = "set default=0\n" + modified

    def kernel(match: re.Match[str]) -> str:
        if "autoinstall" in match.group(0):
            return match.group(0)
        return match.group(1) + _insert_autoinstall(match.group(2), " ", "")

    modified = _KERNEL_RE.sub(kernel, modified)

    def append(match: re.Match[str]) -> str:
        if "autoinstall" in match.group(0):
            return match.group(0)
        return match.group(1) + _insert_autoinstall(match.group(2), "", " ")

    return _APPEND_RE.sub(append, modified)


def modify_grub_file(path: str | Path) -> bool:
    """Patch one boot config file in place; return whether it changed."""
    path = Path(path)
    try:
        original = path.read_bytes().decode("utf-8", "surrogateescape")
    except OSError as exc:
        raise IsoToolError(f"failed to read file: {exc}") from exc

    modified = modify_grub_text(original)
    if modified == original:
        return False
    try:
        path.write_bytes(modified.encode("utf-8", "surrogateescape"))
    except OSError as exc:
        raise IsoToolError(f"failed to write file: {exc}") from exc
    return True


def modify_grub_configs(extract_dir: str | Path) -> list[str]:
    """Patch every known boot config present; return the ones handled."""
    extract_dir = Path(extract_dir)
    handled = []
    for rel_path in GRUB_CONFIG_FILES:
        full_path = extract_dir / rel_path
        if not full_path.exists():
            continue
        try:
            modify_grub_file(full_path)
        except IsoToolError as exc:
            print(f"   ⚠️  Warning: Failed to modify {rel_path}: {exc}")
            continue
        handled.append(rel_path)
        print(f"   ✅ Modified: {rel_path}")

    if not handled:
        raise IsoToolError("no GRUB config files found or modified")
    return handled


def make_writable(directory: str | Path) -> None:
    """Add the owner write bit to a tree; entries that refuse chmod are skipped."""
    pending = [Path(directory)]
    while pending:
        path = pending.pop()
        info = os.lstat(path)
        if not stat.S_ISLNK(info.st_mode):
            try:
                os.chmod(path, stat.S_IMODE(info.st_mode) | stat.S_IWUSR)
            except OSError:
                pass
        if stat.S_ISDIR(info.st_mode):
            pending.extend(sorted(path.iterdir(), reverse=True))


def cleanup_extract_dir(directory: str | Path) -> None:
    """Remove an extraction directory, including read-only files in it."""
    directory = Path(directory)
    if not directory.exists():
        return
    try:
        make_writable(directory)
    except OSError:
        pass
    shutil.rmtree(directory)


def extract_iso(iso_path: str | Path, extract_dir: str | Path) -> None:
    """Extract an ISO with xorriso, printing elapsed time while it runs."""
    cmd = [
        "xorriso",
        "-osirrox", "on",
        "-indev", str(iso_path),
        "-extract", "/", str(extract_dir),
    ]
    try:
        proc = subprocess.Popen(cmd)
    except OSError as exc:
        raise IsoToolError(f"failed to start xorriso: {exc}") from exc

    start = time.monotonic()
    try:
        while True:
            try:
                code = proc.wait(timeout=EXTRACT_PROGRESS_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                elapsed = int(time.monotonic() - start)
                print(f"\r   Extracting... {elapsed}s elapsed", end="", flush=True)
    except BaseException:
        proc.kill()
        proc.wait()
        raise

    if code != 0:
        raise IsoToolError(f"xorriso extract failed: exit status {code}")
    elapsed = int(time.monotonic() - start)
    print(f"\r   Extraction complete (took {elapsed} seconds)")


def repack_iso(
    extract_dir: str | Path,
    output_path: str | Path,
    volume_id: str = DEFAULT_VOLUME_ID,
) -> list[str]:
    """Build a bootable ISO with genisoimage; return the arguments used."""
    extract_dir = Path(extract_dir)
    bios = next(
        ((path, catalog) for path, catalog in _BIOS_BOOT_CANDIDATES
         if (extract_dir / path).exists()),
        None,
    )
    if bios is None:
        raise IsoToolError("BIOS boot image not found")
    bios_path, bios_catalog = bios

    uefi_path = next((c for c in _UEFI_BOOT_CANDIDATES if (extract_dir / c).exists()), None)
    if uefi_path is not None:
        print(f"   Found EFI boot: {uefi_path}")

    args = [
        "-r",
        "-V", volume_id,
        "-J", "-joliet-long",
        "-o", str(output_path),
        "-b", bios_path,
        "-c", bios_catalog,
        "-no-emul-boot",
        "-boot-load-size", "4",
        "-boot-info-table",
    ]
    if uefi_path is not None:
        args += ["-eltorito-alt-boot", "-e", uefi_path, "-no-emul-boot"]
    else:
        print("   ⚠️  EFI boot not found - creating BIOS-only ISO")
    args.append(str(extract_dir))

    try:
        result = subprocess.run(
            ["genisoimage", *args], stdout=subprocess.PIPE, stderr=subprocess.STDOUT
        )
    except OSError as exc:
        raise IsoToolError(f"genisoimage failed: {exc}") from exc
    if result.returncode != 0:
        output = result.stdout.decode("utf-8", "replace")
        raise IsoToolError(
            f"genisoimage failed: exit status {result.returncode}\nOutput: {output}"
        )
    return args


def _mod_time(info: os.stat_result) -> int:
    return info.st_mtime_ns // 1_000_000_000


def modify_ubuntu_iso(
    original_iso_path: str | Path,
    modified_suffix: str = DEFAULT_MODIFIED_SUFFIX,
    volume_id: str = DEFAULT_VOLUME_ID,
) -> tuple[Path, bool]:
    """Return the autoinstall ISO path and whether it was built now (not cached)."""
    original = Path(original_iso_path)
    directory = original.parent
    modified_path = directory / original.name.replace(".iso", modified_suffix + ".iso", 1)
    meta_path = Path(str(modified_path) + ".meta.json")

    try:
        src_info = original.stat()
    except OSError as exc:
        raise IsoToolError(f"stat source ISO: {exc}") from exc

    if modified_path.exists():
        try:
            meta = read_iso_meta(meta_path)
        except (OSError, ValueError):
            meta = None
        if (
            meta is not None
            and meta.version == ISO_MODIFIER_VERSION
            and meta.source_size == src_info.st_size
            and meta.source_mod_time == _mod_time(src_info)
        ):
            print(f"✅ Modified Ubuntu ISO already exists: {modified_path}")
            return modified_path, False
        modified_path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)

    print("⚙️  Modifying Ubuntu ISO for autoinstall...")
    extract_dir = directory / EXTRACT_DIR_NAME
    try:
        cleanup_extract_dir(extract_dir)
    except OSError as exc:
        raise IsoToolError(f"failed to clean extract dir: {exc}") from exc
    try:
        extract_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise IsoToolError(f"failed to create extract dir: {exc}") from exc

    try:
        print("   Extracting ISO (this may take 1-2 minutes)...")
        try:
            extract_iso(original, extract_dir)
        except IsoToolError as exc:
            raise IsoToolError(f"failed to extract ISO: {exc}") from exc

        print("   Setting file permissions...")
        try:
            make_writable(extract_dir)
        except OSError as exc:
            raise IsoToolError(f"failed to set permissions: {exc}") from exc

        print("   Modifying GRUB configuration...")
        try:
            modify_grub_configs(extract_dir)
        except IsoToolError as exc:
            raise IsoToolError(f"failed to modify GRUB configs: {exc}") from exc

        print("   Repacking ISO...")
        try:
            repack_iso(extract_dir, modified_path, volume_id)
        except IsoToolError as exc:
            raise IsoToolError(f"failed to repack ISO: {exc}") from exc
    finally:
        shutil.rmtree(extract_dir, ignore_errors=True)

    try:
        write_iso_meta(
            meta_path,
            IsoMeta(
                version=ISO_MODIFIER_VERSION,
                source_path=str(original),
                source_size=src_info.st_size,
                source_mod_time=_mod_time(src_info),
            ),
        )
    except OSError as exc:
        raise IsoToolError(f"failed to write ISO metadata: {exc}") from exc

    print(f"✅ Ubuntu ISO modified successfully: {modified_path}")
    return modified_path, True