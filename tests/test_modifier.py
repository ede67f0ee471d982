import os
import stat

import pytest

from vmbootstrap.modifier import (
    DEFAULT_MODIFIED_SUFFIX,
    ISO_MODIFIER_VERSION,
    IsoMeta,
    IsoToolError,
    cleanup_extract_dir,
    extract_iso,
    make_writable,
    modify_grub_configs,
    modify_grub_file,
    modify_grub_text,
    modify_ubuntu_iso,
    read_iso_meta,
    repack_iso,
    write_iso_meta,
)

FAKE_GENISOIMAGE = """#!/bin/sh
out=""
while [ "$#" -gt 0 ]; do
  if [ "$1" = "-o" ]; then
    out="$2"
    shift 2
    continue
  fi
  shift
done
touch "$out"
exit 0
"""

FAKE_XORRISO_GRUB = """#!/bin/sh
extractDir=""
for arg in "$@"; do
  extractDir="$arg"
done
mkdir -p "$extractDir/boot/grub/i386-pc"
mkdir -p "$extractDir/EFI/boot"
mkdir -p "$extractDir/isolinux"
cat > "$extractDir/boot/grub/grub.cfg" <<EOF
set timeout=30
menuentry "Install" {
 linux /casper/vmlinuz ---
}
EOF
echo ok > "$extractDir/boot/grub/i386-pc/eltorito.img"
echo ok > "$extractDir/EFI/boot/bootx64.efi"
echo ok > "$extractDir/isolinux/txt.cfg"
exit 0
"""


@pytest.fixture
def fake_bin(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))
    return bin_dir


def write_fake_executable(bin_dir, name, content):
    path = bin_dir / name
    path.write_text(content)
    path.chmod(0o755)
    return path


def test_modify_grub_file_adds_default_timeout_and_autoinstall(tmp_path):
    cfg = tmp_path / "grub.cfg"
    cfg.write_text('set timeout=30\nmenuentry "Install" {\n linux /casper/vmlinuz --- \n}\n')

    assert modify_grub_file(cfg) is True

    s = cfg.read_text()
    assert "set default=0" in s
    assert "set timeout=5" in s
    assert "autoinstall ds=nocloud ---" in s


def test_modify_grub_file_does_not_duplicate_autoinstall(tmp_path):
    cfg = tmp_path / "grub.cfg"
    cfg.write_text(
        "set timeout=30\nset default=1\nmenuentry \"Install\" {\n"
        " linux /casper/vmlinuz autoinstall ds=nocloud --- \n}\n"
    )

    modify_grub_file(cfg)

    s = cfg.read_text()
    assert s.count("autoinstall") == 1
    assert "set default=0" in s
    assert "set default=1" not in s


def test_modify_grub_file_adds_autoinstall_to_isolinux_append(tmp_path):
    cfg = tmp_path / "txt.cfg"
    cfg.write_text(
        "default live\nlabel live\n  menu label ^Install Ubuntu Server\n"
        "  kernel /casper/vmlinuz\n  append   initrd=/casper/initrd quiet  ---\n"
    )

    modify_grub_file(cfg)

    s = cfg.read_text()
    assert "  append   initrd=/casper/initrd quiet  autoinstall ds=nocloud ---" in s


def test_modify_grub_file_missing_file(tmp_path):
    with pytest.raises(IsoToolError, match="failed to read file"):
        modify_grub_file(tmp_path / "missing.cfg")


def test_modify_grub_file_is_idempotent(tmp_path):
    cfg = tmp_path / "grub.cfg"
    cfg.write_text("timeout 30\nlinux /vmlinuz quiet\n")
    assert modify_grub_file(cfg) is True
    first = cfg.read_text()
    assert modify_grub_file(cfg) is False
    assert cfg.read_text() == first


def test_modify_grub_text_exact_output():
    result = modify_grub_text("timeout 30\nlinux /vmlinuz ---\n")
    assert result == "set default=0\ntimeout 5\nlinux /vmlinuz autoinstall ds=nocloud ---\n"


def test_modify_grub_text_kernel_without_separator():
    result = modify_grub_text("set default=2\nlinuxefi /casper/vmlinuz quiet\n")
    assert result == "set default=0\nlinuxefi /casper/vmlinuz autoinstall ds=nocloud quiet\n"


def test_modify_grub_text_append_without_separator():
    result = modify_grub_text("set default=0\n  append initrd=x\n")
    assert result == "set default=0\n  append autoinstall ds=nocloud initrd=x\n"


def test_modify_grub_text_custom_timeout():
    assert modify_grub_text("set timeout=30", 7) == "set default=0\nset timeout=7"


def test_modify_grub_configs_no_files(tmp_path):
    with pytest.raises(IsoToolError, match="no GRUB config files"):
        modify_grub_configs(tmp_path)


def test_modify_grub_configs_one_file(tmp_path):
    cfg = tmp_path / "boot/grub/grub.cfg"
    cfg.parent.mkdir(parents=True)
    cfg.write_text("timeout 30\nlinux /vmlinuz ---\n")

    assert modify_grub_configs(tmp_path) == ["boot/grub/grub.cfg"]
    assert "autoinstall ds=nocloud ---" in cfg.read_text()


def test_modify_grub_configs_skips_unreadable(tmp_path):
    (tmp_path / "boot/grub/grub.cfg").mkdir(parents=True)
    txt = tmp_path / "isolinux/txt.cfg"
    txt.parent.mkdir()
    txt.write_text("append initrd=x ---\n")

    assert modify_grub_configs(tmp_path) == ["isolinux/txt.cfg"]


def test_make_writable(tmp_path):
    f = tmp_path / "grub.cfg"
    f.write_text("timeout 30\nlinux /vmlinuz ---\n")
    f.chmod(0o444)

    make_writable(tmp_path)

    assert f.stat().st_mode & stat.S_IWUSR
    # The file is now writable, so the GRUB rewrite succeeds on it.
    assert modify_grub_file(f) is True
    assert "autoinstall ds=nocloud ---" in f.read_text()


def test_cleanup_extract_dir(tmp_path):
    d = tmp_path / "extract"
    d.mkdir()
    f = d / "file.txt"
    f.write_text("data")
    f.chmod(0o444)

    cleanup_extract_dir(d)

    assert not d.exists()


def test_cleanup_extract_dir_missing(tmp_path):
    d = tmp_path / "absent"
    cleanup_extract_dir(d)
    assert not d.exists()


def test_iso_meta_round_trip(tmp_path):
    meta = IsoMeta(version="v1", source_path="/x.iso", source_size=3, source_mod_time=1700000000)
    path = tmp_path / "m.json"
    write_iso_meta(path, meta)
    assert read_iso_meta(path) == meta
    assert '"source_mod_time":1700000000' in path.read_text()


def test_read_iso_meta_missing(tmp_path):
    with pytest.raises(OSError):
        read_iso_meta(tmp_path / "none.json")


def test_repack_iso_missing_bios_boot(tmp_path):
    with pytest.raises(IsoToolError, match="BIOS boot image not found"):
        repack_iso(tmp_path, tmp_path / "out.iso")


def test_extract_iso_success(tmp_path, fake_bin):
    write_fake_executable(
        fake_bin,
        "xorriso",
        '#!/bin/sh\nextractDir=""\nfor arg in "$@"; do\n  extractDir="$arg"\ndone\n'
        'mkdir -p "$extractDir"\necho ok > "$extractDir/.done"\nexit 0\n',
    )
    extract_dir = tmp_path / "extract"
    extract_iso("dummy.iso", extract_dir)
    assert (extract_dir / ".done").read_text() == "ok\n"


def test_extract_iso_failure(tmp_path, fake_bin):
    write_fake_executable(fake_bin, "xorriso", "#!/bin/sh\nexit 1\n")
    with pytest.raises(IsoToolError, match="xorriso extract failed"):
        extract_iso("dummy.iso", tmp_path / "extract")


def test_repack_iso_success_with_uefi(tmp_path, fake_bin):
    write_fake_executable(fake_bin, "genisoimage", FAKE_GENISOIMAGE)
    extract_dir = tmp_path / "extract"
    (extract_dir / "boot/grub/i386-pc").mkdir(parents=True)
    (extract_dir / "EFI/boot").mkdir(parents=True)
    (extract_dir / "boot/grub/i386-pc/eltorito.img").write_text("x")
    (extract_dir / "EFI/boot/bootx64.efi").write_text("x")

    out = tmp_path / "out.iso"
    args = repack_iso(extract_dir, out)

    assert out.exists()
    assert args[args.index("-e") + 1] == "EFI/boot/bootx64.efi"
    assert args[args.index("-c") + 1] == "boot.catalog"


def test_repack_iso_success_no_uefi(tmp_path, fake_bin):
    write_fake_executable(fake_bin, "genisoimage", FAKE_GENISOIMAGE)
    extract_dir = tmp_path / "extract"
    (extract_dir / "boot/grub/i386-pc").mkdir(parents=True)
    (extract_dir / "boot/grub/i386-pc/eltorito.img").write_text("x")

    out = tmp_path / "out.iso"
    args = repack_iso(extract_dir, out)

    assert out.exists()
    assert "-eltorito-alt-boot" not in args
    assert args[-1] == str(extract_dir)


def test_repack_iso_isolinux_layout(tmp_path, fake_bin):
    write_fake_executable(fake_bin, "genisoimage", FAKE_GENISOIMAGE)
    extract_dir = tmp_path / "extract"
    (extract_dir / "isolinux").mkdir(parents=True)
    (extract_dir / "isolinux/isolinux.bin").write_text("x")

    args = repack_iso(extract_dir, tmp_path / "out.iso", "VOL")

    assert args[args.index("-b") + 1] == "isolinux/isolinux.bin"
    assert args[args.index("-c") + 1] == "isolinux/boot.cat"
    assert args[args.index("-V") + 1] == "VOL"


def test_repack_iso_tool_failure(tmp_path, fake_bin):
    write_fake_executable(fake_bin, "genisoimage", "#!/bin/sh\necho boom\nexit 2\n")
    extract_dir = tmp_path / "extract"
    (extract_dir / "isolinux").mkdir(parents=True)
    (extract_dir / "isolinux/isolinux.bin").write_text("x")

    with pytest.raises(IsoToolError, match="genisoimage failed") as info:
        repack_iso(extract_dir, tmp_path / "out.iso")
    assert "boom" in str(info.value)


def test_modify_ubuntu_iso_success_and_cache(tmp_path, fake_bin):
    write_fake_executable(fake_bin, "xorriso", FAKE_XORRISO_GRUB)
    write_fake_executable(fake_bin, "genisoimage", FAKE_GENISOIMAGE)
    iso = tmp_path / "ubuntu.iso"
    iso.write_text("dummy")

    modified, created = modify_ubuntu_iso(iso)
    assert created is True
    assert modified.exists()
    assert modified == tmp_path / f"ubuntu{DEFAULT_MODIFIED_SUFFIX}.iso"
    assert read_iso_meta(str(modified) + ".meta.json").version == ISO_MODIFIER_VERSION

    modified2, created2 = modify_ubuntu_iso(iso)
    assert created2 is False
    assert modified2 == modified


def test_modify_ubuntu_iso_uses_cached_when_meta_matches(tmp_path):
    orig = tmp_path / "ubuntu-20.04.iso"
    orig.write_text("iso")
    os.utime(orig, (1700000000, 1700000000))
    info = orig.stat()

    modified = tmp_path / f"ubuntu-20.04{DEFAULT_MODIFIED_SUFFIX}.iso"
    modified.write_text("cached")
    write_iso_meta(
        str(modified) + ".meta.json",
        IsoMeta(
            version=ISO_MODIFIER_VERSION,
            source_path=str(orig),
            source_size=info.st_size,
            source_mod_time=1700000000,
        ),
    )

    got, created = modify_ubuntu_iso(orig)
    assert created is False
    assert got == modified
    assert modified.read_text() == "cached"


def test_modify_ubuntu_iso_rebuilds_on_stale_meta(tmp_path, fake_bin):
    write_fake_executable(fake_bin, "xorriso", FAKE_XORRISO_GRUB)
    write_fake_executable(fake_bin, "genisoimage", FAKE_GENISOIMAGE)
    orig = tmp_path / "ubuntu.iso"
    orig.write_text("iso")
    modified = tmp_path / f"ubuntu{DEFAULT_MODIFIED_SUFFIX}.iso"
    modified.write_text("stale")
    write_iso_meta(str(modified) + ".meta.json", IsoMeta(version="old"))

    got, created = modify_ubuntu_iso(orig)
    assert created is True
    assert got == modified
    assert modified.read_text() == ""


def test_modify_ubuntu_iso_missing_source(tmp_path):
    with pytest.raises(IsoToolError, match="stat source ISO"):
        modify_ubuntu_iso(tmp_path / "missing.iso")