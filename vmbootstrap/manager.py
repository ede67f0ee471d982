"""ISO download, creation, upload and mounting for VM bootstrapping."""

from __future__ import annotations

import fnmatch
import shutil
import tempfile
import time
from collections.abc import Iterable, Mapping
from pathlib import Path

from vmbootstrap import datastore as _datastore
from vmbootstrap import modifier as _modifier
from vmbootstrap.datastore import GovcError, needs_upload, save_uploaded_hash, split_remote_path
from vmbootstrap.devices import (
    Cdrom,
    ConnectInfo,
    DeviceChange,
    Operation,
    SataController,
    VirtualDevice,
    VirtualMachine,
    VSphereError,
    get_cdroms,
    get_devices,
    reconfigure_vm,
)
from vmbootstrap.download import (
    DEFAULT_DOWNLOAD_TIMEOUT,
    ChecksumError,
    DownloadError,
    UbuntuRelease,
    download_file,
    verify_checksum,
)
from vmbootstrap.nocloud import DEFAULT_NOCLOUD_VOLUME_ID, create_nocloud_iso

DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "vmbootstrap-iso"
DEFAULT_HARDWARE_INIT_SECONDS = 5.0
SATA_CONTROLLER_KEY = 15000
SATA_UNIT_COUNT = 30


class Datastore:
    """A named datastore whose files may be held under a local root directory."""

    def __init__(self, name: str, root: str | Path | None = None) -> None:
        self.name = name
        self.root = Path(root) if root is not None else None

    def __repr__(self) -> str:
        return f"Datastore({self.name!r})"

    def _resolve(self, relative: str) -> Path:
        if self.root is None:
            raise VSphereError(f"datastore {self.name!r} has no file access")
        base = self.root.resolve()
        target = (base / relative).resolve()
        if target != base and base not in target.parents:
            raise VSphereError(f"path {relative!r} is outside datastore {self.name!r}")
        return target

    def search(self, directory: str, pattern: str) -> list[str]:
        """Return names in directory matching pattern; FileNotFoundError if absent."""
        target = self._resolve(directory)
        if not target.is_dir():
            raise FileNotFoundError(f"[{self.name}] {directory} was not found")
        return sorted(fnmatch.filter((p.name for p in target.iterdir()), pattern))

    def upload(self, local_path: str | Path, remote_path: str) -> None:
        """Copy a local file to remote_path on the datastore."""
        destination = self._resolve(remote_path)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, destination)
        except OSError as exc:
            raise VSphereError(f"failed to upload to datastore: {exc}") from exc


def _base_name(url: str) -> str:
    stripped = url.rstrip("/")
    return stripped.rsplit("/", 1)[-1] if stripped else "/"


def _is_connected(cdrom: Cdrom) -> bool:
    return cdrom.connectable is not None and cdrom.connectable.connected


def _report_connection(cdroms: Iterable[Cdrom]) -> int:
    disconnected = 0
    for number, cdrom in enumerate(cdroms, start=1):
        connected = _is_connected(cdrom)
        print(f"   CD-ROM {number}: connected={str(connected).lower()}")
        if not connected:
            disconnected += 1
    return disconnected


class IsoManager:
    """Downloads, builds, uploads and mounts the ISOs a VM boots from."""

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        releases: Mapping[str, UbuntuRelease] | None = None,
        *,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        hardware_init_seconds: float = DEFAULT_HARDWARE_INIT_SECONDS,
        modified_suffix: str = _modifier.DEFAULT_MODIFIED_SUFFIX,
        ubuntu_volume_id: str = _modifier.DEFAULT_VOLUME_ID,
        nocloud_volume_id: str = DEFAULT_NOCLOUD_VOLUME_ID,
    ) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else DEFAULT_CACHE_DIR
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(f"⚠️  Failed to create cache dir {self.cache_dir}: {exc}")
        self.releases = dict(releases or {})
        self.download_timeout = download_timeout
        self.hardware_init_seconds = hardware_init_seconds
        self.modified_suffix = modified_suffix
        self.ubuntu_volume_id = ubuntu_volume_id
        self.nocloud_volume_id = nocloud_volume_id

    def set_cache_dir(self, directory: str | Path) -> None:
        """Use another directory for cached ISOs, creating it if needed."""
        path = Path(directory)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(f"failed to create cache dir: {exc}") from exc
        self.cache_dir = path

    def download_ubuntu(self, version: str) -> Path:
        """Return the cached Ubuntu ISO for version, downloading it if needed."""
        release = self.releases.get(version)
        if release is None:
            supported = ", ".join(sorted(self.releases))
            raise DownloadError(
                f"unsupported Ubuntu version {version!r} (supported: {supported})"
            )

        local_path = self.cache_dir / _base_name(release.url)
        if local_path.exists():
            if not release.checksum:
                return local_path
            try:
                verify_checksum(local_path, release.checksum)
                return local_path
            except ChecksumError:
                local_path.unlink(missing_ok=True)

        try:
            download_file(release.url, local_path, self.download_timeout)
        except DownloadError as exc:
            raise DownloadError(f"download failed: {exc}") from exc

        if release.checksum:
            try:
                verify_checksum(local_path, release.checksum)
            except ChecksumError as exc:
                local_path.unlink(missing_ok=True)
                raise ChecksumError(f"checksum verification failed: {exc}") from exc
        return local_path

    def modify_ubuntu_iso(self, original_iso_path: str | Path) -> tuple[Path, bool]:
        """Return the autoinstall ISO and whether it was newly built."""
        return _modifier.modify_ubuntu_iso(
            original_iso_path, self.modified_suffix, self.ubuntu_volume_id
        )

    def create_nocloud_iso(
        self, user_data: str, meta_data: str, network_config: str, vm_name: str
    ) -> Path:
        """Build the NoCloud seed ISO for a VM in the cache directory."""
        return create_nocloud_iso(
            user_data, meta_data, network_config, vm_name, self.cache_dir,
            self.nocloud_volume_id,
        )

    def check_file_exists(self, datastore: Datastore, remote_path: str) -> bool:
        """Return whether remote_path exists on the datastore."""
        directory, filename = split_remote_path(remote_path)
        try:
            return bool(datastore.search(directory, filename))
        except FileNotFoundError:
            return False
        except (VSphereError, OSError) as exc:
            raise VSphereError(f"datastore search failed: {exc}") from exc

    def upload_to_datastore(
        self,
        datastore: Datastore,
        local_path: str | Path,
        remote_path: str,
        vcenter_host: str,
        vcenter_user: str,
        vcenter_pass: str,
        insecure: bool,
    ) -> None:
        """Upload unless the file is on the datastore and unchanged since last upload."""
        try:
            exists = self.check_file_exists(datastore, remote_path)
        except VSphereError as exc:
            raise VSphereError(f"failed to check file existence: {exc}") from exc

        name = Path(local_path).name
        if exists and not needs_upload(local_path):
            print(f"✅ ISO already exists on datastore (unchanged): {name}")
            return
        if exists:
            print(f"🔄 Re-uploading (ISO changed since last upload): {name}")
        self._do_upload(
            datastore, local_path, remote_path,
            vcenter_host, vcenter_user, vcenter_pass, insecure, save_hash=True,
        )

    def upload_always(
        self,
        datastore: Datastore,
        local_path: str | Path,
        remote_path: str,
        vcenter_host: str,
        vcenter_user: str,
        vcenter_pass: str,
        insecure: bool,
    ) -> None:
        """Upload unconditionally, without recording the uploaded hash."""
        self._do_upload(
            datastore, local_path, remote_path,
            vcenter_host, vcenter_user, vcenter_pass, insecure, save_hash=False,
        )

    def _do_upload(
        self,
        datastore: Datastore,
        local_path: str | Path,
        remote_path: str,
        vcenter_host: str,
        vcenter_user: str,
        vcenter_pass: str,
        insecure: bool,
        *,
        save_hash: bool,
    ) -> None:
        path = Path(local_path)
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise VSphereError(f"failed to stat file: {exc}") from exc

        print(f"📤 Uploading {path.name} ({size / (1024 * 1024):.1f} MB) to datastore...")
        try:
            _datastore.upload_with_govc(
                datastore.name, path, remote_path,
                vcenter_host, vcenter_user, vcenter_pass, insecure,
            )
        except GovcError as exc:
            print(f"⚠️  govc upload failed ({exc}) - using govmomi fallback...")
        else:
            print(f"✅ Upload complete: {path.name}")
            if save_hash:
                save_uploaded_hash(path)
            return

        print("⚠️  govmomi fallback (may timeout on large files)...")
        try:
            datastore.upload(path, remote_path)
        except VSphereError as exc:
            raise VSphereError(f"failed to upload to datastore: {exc}") from exc
        if save_hash:
            save_uploaded_hash(path)

    def remove_all_cdroms(self, vm: VirtualMachine) -> None:
        """Remove every CD-ROM drive from the VM."""
        cdroms = get_cdroms(get_devices(vm))
        if not cdroms:
            return
        print(f"   Removing {len(cdroms)} existing CD-ROM(s)...")
        reconfigure_vm(vm, [DeviceChange(Operation.REMOVE, c) for c in cdroms])

    def mount_isos(self, vm: VirtualMachine, ubuntu_iso: str, nocloud_iso: str) -> None:
        """Replace the VM's CD-ROMs with the installer and seed ISOs, connected."""
        try:
            self.remove_all_cdroms(vm)
        except VSphereError as exc:
            raise VSphereError(f"failed to remove existing CD-ROMs: {exc}") from exc
        self._mount(vm, ubuntu_iso, "Ubuntu")
        self._mount(vm, nocloud_iso, "NoCloud")
        try:
            self.connect_all_cdroms(vm)
        except VSphereError as exc:
            raise VSphereError(f"failed to connect CD-ROMs: {exc}") from exc
        print("✅ Both ISOs mounted and connected successfully")

    def mount_single_iso(self, vm: VirtualMachine, iso_path: str, label: str) -> None:
        """Replace the VM's CD-ROMs with one ISO, connected."""
        try:
            self.remove_all_cdroms(vm)
        except VSphereError as exc:
            raise VSphereError(f"failed to remove existing CD-ROMs: {exc}") from exc
        self._mount(vm, iso_path, label)
        try:
            self.connect_all_cdroms(vm)
        except VSphereError as exc:
            raise VSphereError(f"failed to connect CD-ROMs: {exc}") from exc
        print(f"✅ {label} ISO mounted and connected successfully")

    def connect_all_cdroms(self, vm: VirtualMachine) -> None:
        """Mark every CD-ROM connected, connected at power-on and guest-controllable."""
        print("   Ensuring all CD-ROMs are connected...")
        cdroms = get_cdroms(get_devices(vm))
        if not cdroms:
            return
        for cdrom in cdroms:
            cdrom.connectable = ConnectInfo(
                connected=True, start_connected=True, allow_guest_control=True
            )
        reconfigure_vm(vm, [DeviceChange(Operation.EDIT, c) for c in cdroms])
        print(f"   ✅ {len(cdroms)} CD-ROM(s) connected")

    def ensure_cdroms_connected_after_boot(self, vm: VirtualMachine) -> None:
        """Power-cycle the VM if any CD-ROM came up disconnected after boot."""
        print(
            f"   Waiting {self.hardware_init_seconds:g}s for VM hardware to initialize..."
        )
        time.sleep(self.hardware_init_seconds)

        cdroms = get_cdroms(get_devices(vm))
        if not cdroms:
            print("   ⚠️  No CD-ROM devices found after boot!")
            return

        disconnected = _report_connection(cdroms)
        if disconnected == 0:
            print(f"   ✅ All {len(cdroms)} CD-ROM(s) connected after boot")
            return

        print(
            f"   ⚠️  {disconnected} CD-ROM(s) disconnected - "
            "power-cycling to force reconnection..."
        )
        try:
            vm.power_off()
        except VSphereError as exc:
            raise VSphereError(f"failed to power off VM: {exc}") from exc
        try:
            self.connect_all_cdroms(vm)
        except VSphereError as exc:
            raise VSphereError(f"failed to reconnect CD-ROMs: {exc}") from exc
        try:
            vm.power_on()
        except VSphereError as exc:
            raise VSphereError(f"failed to power on VM: {exc}") from exc

        time.sleep(self.hardware_init_seconds)
        cdroms = get_cdroms(get_devices(vm))
        if _report_connection(cdroms) == 0:
            print(f"   ✅ All {len(cdroms)} CD-ROM(s) connected after power-cycle")
        else:
            print("   ⚠️  Some CD-ROMs still disconnected - continuing anyway")

    def _mount(self, vm: VirtualMachine, iso_path: str, label: str) -> None:
        devices = get_devices(vm)
        try:
            controller = self.sata_controller(vm, devices)
        except VSphereError as exc:
            raise VSphereError(f"failed to get SATA controller: {exc}") from exc
        try:
            unit = self.next_cdrom_unit_number(vm, controller)
        except VSphereError as exc:
            raise VSphereError(f"failed to get unit number: {exc}") from exc

        cdrom = Cdrom(
            key=-1,
            controller_key=controller.key,
            unit_number=unit,
            iso_file=iso_path,
            connectable=ConnectInfo(
                connected=True, start_connected=True, allow_guest_control=True
            ),
        )
        try:
            reconfigure_vm(vm, [DeviceChange(Operation.ADD, cdrom)])
        except VSphereError as exc:
            raise VSphereError(f"failed to add {label} CD-ROM: {exc}") from exc
        print(f"   ✅ {label} CD-ROM added (unit {unit})")

    def sata_controller(
        self, vm: VirtualMachine, devices: Iterable[VirtualDevice]
    ) -> SataController:
        """Return the VM's SATA controller, adding an AHCI controller if there is none."""
        for device in devices:
            if isinstance(device, SataController):
                return device

        print("⚠️  No SATA controller found, creating AHCI controller...")
        try:
            vm.add_device(SataController(key=SATA_CONTROLLER_KEY, bus_number=0))
        except VSphereError as exc:
            raise VSphereError(f"failed to add SATA controller: {exc}") from exc
        try:
            refreshed = vm.devices()
        except VSphereError as exc:
            raise VSphereError(
                f"failed to refresh devices after adding controller: {exc}"
            ) from exc
        for device in refreshed:
            if isinstance(device, SataController):
                return device
        raise VSphereError("SATA controller not found after creation")

    def next_cdrom_unit_number(self, vm: VirtualMachine, controller: VirtualDevice) -> int:
        """Return the lowest unit number on the controller not used by a CD-ROM."""
        used = {
            c.unit_number
            for c in get_cdroms(get_devices(vm))
            if c.controller_key == controller.key and c.unit_number is not None
        }
        for unit in range(SATA_UNIT_COUNT):
            if unit not in used:
                return unit
        raise VSphereError("no available unit numbers on SATA controller")

    def delete_from_datastore(
        self,
        datastore_name: str,
        remote_path: str,
        vcenter_host: str,
        vcenter_user: str,
        vcenter_pass: str,
        insecure: bool,
    ) -> None:
        """Delete a file from a datastore with govc."""
        _datastore.delete_from_datastore(
            datastore_name, remote_path, vcenter_host, vcenter_user, vcenter_pass, insecure
        )

    def cleanup_nocloud_iso(self, vm: VirtualMachine) -> None:
        """Remove all CD-ROM drives, one at a time."""
        try:
            devices = vm.devices()
        except VSphereError as exc:
            raise VSphereError(f"failed to get VM devices: {exc}") from exc
        for cdrom in get_cdroms(devices):
            try:
                vm.remove_device(cdrom)
            except VSphereError as exc:
                raise VSphereError(f"failed to remove CD-ROM: {exc}") from exc