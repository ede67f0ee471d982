"""Virtual machine creation and hardware configuration."""

from __future__ import annotations

from collections.abc import MutableMapping
from dataclasses import dataclass
from typing import Any

from vmbootstrap.devices import (
    ConnectInfo,
    Disk,
    EthernetCard,
    PowerState,
    ScsiController,
    VirtualDevice,
    VirtualMachine,
    VSphereError,
)

DEFAULT_FIRMWARE = "bios"
DEFAULT_GUEST_OS = "ubuntu64Guest"
EFI_FIRMWARE = "efi"

SCSI_CONTROLLER_KEY = 1000
_SCSI_UNITS = 16
_SCSI_CONTROLLER_UNIT = 7
_KB_PER_GB = 1024 * 1024


@dataclass
class VMConfig:
    """Hardware and placement settings of a virtual machine."""

    name: str
    cpus: int = 0
    memory_mb: int = 0
    guest_os: str = ""
    firmware: str = ""
    disk_size_gb: int = 0
    data_disk_size_gb: int | None = None
    network_name: str = ""
    datacenter: str = ""
    folder: str = ""
    resource_pool: str = ""
    datastore: str = ""


@dataclass
class VMSpec:
    """Creation request for a virtual machine; empty firmware means BIOS."""

    name: str
    num_cpus: int
    memory_mb: int
    guest_id: str
    vm_path_name: str
    firmware: str = ""


def _free_scsi_slot(devices: list[VirtualDevice]) -> tuple[int, int]:
    for controller in devices:
        if not isinstance(controller, ScsiController):
            continue
        used = {d.unit_number for d in devices if d.controller_key == controller.key}
        for unit in range(_SCSI_UNITS):
            if unit != _SCSI_CONTROLLER_UNIT and unit not in used:
                return controller.key, unit
    raise VSphereError("no available SCSI controller")


class Creator:
    """Creates virtual machines and configures their hardware."""

    def create_spec(self, cfg: VMConfig) -> VMSpec:
        """Build a creation request, filling in the default guest OS and firmware."""
        firmware = cfg.firmware or DEFAULT_FIRMWARE
        guest_os = cfg.guest_os or DEFAULT_GUEST_OS
        return VMSpec(
            name=cfg.name,
            num_cpus=cfg.cpus,
            memory_mb=cfg.memory_mb,
            guest_id=guest_os,
            vm_path_name=f"[{cfg.datastore}]",
            firmware=EFI_FIRMWARE if firmware == EFI_FIRMWARE else "",
        )

    def create(
        self,
        folder: MutableMapping[str, VirtualMachine],
        resource_pool: Any,
        datastore: Any,
        spec: VMSpec,
    ) -> VirtualMachine:
        """Create a VM in the folder, which maps VM names to machines."""
        if spec.name in folder:
            raise VSphereError(
                f"failed to create VM task: a VM named {spec.name!r} already exists"
            )
        if not spec.name:
            raise VSphereError("VM creation failed: VM name is required")
        vm = VirtualMachine(spec.name)
        folder[spec.name] = vm
        return vm

    def ensure_scsi_controller(self, vm: VirtualMachine) -> int:
        """Return the key of the VM's SCSI controller, adding a paravirtual one if needed."""
        try:
            devices = vm.devices()
        except VSphereError as exc:
            raise VSphereError(f"failed to get VM devices: {exc}") from exc

        for device in devices:
            if isinstance(device, ScsiController):
                return device.key

        controller = ScsiController(
            key=SCSI_CONTROLLER_KEY,
            bus_number=0,
            shared_bus="noSharing",
            model="paravirtual",
        )
        try:
            return vm.add_device(controller)
        except VSphereError as exc:
            raise VSphereError(f"failed to add SCSI controller: {exc}") from exc

    def add_disk(
        self, vm: VirtualMachine, datastore: Any, size_gb: int, scsi_key: int
    ) -> int:
        """Add a thin-provisioned disk on the first SCSI controller with a free unit."""
        try:
            devices = vm.devices()
        except VSphereError as exc:
            raise VSphereError(f"failed to get VM devices: {exc}") from exc

        try:
            controller_key, unit = _free_scsi_slot(devices)
        except VSphereError as exc:
            raise VSphereError(f"failed to find SCSI controller: {exc}") from exc

        disk = Disk(
            controller_key=controller_key,
            unit_number=unit,
            capacity_kb=size_gb * _KB_PER_GB,
            datastore=datastore,
            thin_provisioned=True,
        )
        return vm.add_device(disk)

    def add_network_adapter(self, vm: VirtualMachine, network: str) -> int:
        """Add a vmxnet3 adapter attached to the named network."""
        if not network:
            raise VSphereError(
                "failed to get network backing info: network name is empty"
            )
        try:
            vm.devices()
        except VSphereError as exc:
            raise VSphereError(f"failed to get VM devices: {exc}") from exc

        card = EthernetCard(
            adapter_type="vmxnet3",
            network=network,
            connectable=ConnectInfo(start_connected=True, allow_guest_control=True),
        )
        return vm.add_device(card)

    def power_on(self, vm: VirtualMachine) -> None:
        """Power the VM on."""
        try:
            vm.power_on()
        except VSphereError as exc:
            raise VSphereError(f"failed to power on VM: {exc}") from exc

    def power_off(self, vm: VirtualMachine) -> None:
        """Power the VM off."""
        try:
            vm.power_off()
        except VSphereError as exc:
            raise VSphereError(f"failed to power off VM: {exc}") from exc

    def delete(self, vm: VirtualMachine) -> None:
        """Delete the VM, powering it off first if it is running."""
        try:
            state = vm.power_state()
        except VSphereError as exc:
            raise VSphereError(f"failed to get power state: {exc}") from exc

        if state is PowerState.POWERED_ON:
            try:
                self.power_off(vm)
            except VSphereError as exc:
                raise VSphereError(f"failed to power off before delete: {exc}") from exc

        try:
            vm.destroy()
        except VSphereError as exc:
            raise VSphereError(f"failed to delete VM: {exc}") from exc