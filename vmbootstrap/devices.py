"""Virtual machine device model and the helpers that operate on it."""

from __future__ import annotations

import copy
import enum
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass


class VSphereError(Exception):
    """Raised when a vSphere operation fails."""


class Operation(enum.Enum):
    """Kind of change applied to a device during reconfiguration."""

    ADD = "add"
    REMOVE = "remove"
    EDIT = "edit"


class PowerState(enum.Enum):
    """Power state of a virtual machine."""

    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    SUSPENDED = "suspended"


@dataclass
class ConnectInfo:
    """Connection flags of a removable device."""

    connected: bool = False
    start_connected: bool = False
    allow_guest_control: bool = False


@dataclass
class VirtualDevice:
    """A device attached to a virtual machine."""

    key: int = -1
    controller_key: int | None = None
    unit_number: int | None = None
    connectable: ConnectInfo | None = None


@dataclass
class Cdrom(VirtualDevice):
    """CD-ROM drive, optionally backed by an ISO image on a datastore."""

    iso_file: str = ""


@dataclass
class SataController(VirtualDevice):
    """AHCI (SATA) controller."""

    bus_number: int = 0


@dataclass
class ScsiController(VirtualDevice):
    """SCSI controller."""

    bus_number: int = 0
    shared_bus: str = "noSharing"
    model: str = "paravirtual"


@dataclass
class Disk(VirtualDevice):
    """Virtual hard disk."""

    capacity_kb: int = 0
    datastore: str | None = None
    thin_provisioned: bool = False


@dataclass
class EthernetCard(VirtualDevice):
    """Network adapter."""

    adapter_type: str = "vmxnet3"
    network: str = ""


@dataclass(frozen=True)
class DeviceChange:
    """One device change in a reconfiguration request."""

    operation: Operation
    device: VirtualDevice


def _check_slot(staged: dict[int, VirtualDevice], device: VirtualDevice) -> None:
    if device.controller_key is None:
        return
    if device.controller_key not in staged:
        raise VSphereError(f"controller {device.controller_key} not found")
    if device.unit_number is None:
        return
    for other in staged.values():
        if (
            other.key != device.key
            and other.controller_key == device.controller_key
            and other.unit_number == device.unit_number
        ):
            raise VSphereError(
                f"unit {device.unit_number} on controller "
                f"{device.controller_key} is already in use"
            )


def _stage(staged: dict[int, VirtualDevice], change: DeviceChange) -> int:
    device = copy.deepcopy(change.device)
    if change.operation is Operation.ADD:
        if device.key < 0:
            device.key = max(staged, default=0) + 1
        elif device.key in staged:
            raise VSphereError(f"device key {device.key} is already in use")
        _check_slot(staged, device)
        staged[device.key] = device
    elif change.operation is Operation.REMOVE:
        if device.key not in staged:
            raise VSphereError(f"device {device.key} not found")
        if any(other.controller_key == device.key for other in staged.values()):
            raise VSphereError(f"device {device.key} still has attached devices")
        del staged[device.key]
    else:
        current = staged.get(device.key)
        if current is None:
            raise VSphereError(f"device {device.key} not found")
        if type(current) is not type(device):
            raise VSphereError(f"device {device.key} cannot change its type")
        _check_slot(staged, device)
        staged[device.key] = device
    return device.key


class VirtualMachine:
    """A virtual machine: its devices and its power state."""

    def __init__(
        self,
        name: str,
        devices: Iterable[VirtualDevice] = (),
        power_state: PowerState = PowerState.POWERED_OFF,
    ) -> None:
        self.name = name
        self._devices: dict[int, VirtualDevice] = {}
        self._power_state = power_state
        self._destroyed = False
        self.reconfigure([DeviceChange(Operation.ADD, d) for d in devices])

    def __repr__(self) -> str:
        return f"VirtualMachine({self.name!r})"

    def _ensure_exists(self) -> None:
        if self._destroyed:
            raise VSphereError(f"virtual machine {self.name!r} has been deleted")

    def devices(self) -> list[VirtualDevice]:
        """Return a snapshot of the attached devices."""
        self._ensure_exists()
        return [copy.deepcopy(d) for d in self._devices.values()]

    def reconfigure(self, changes: Sequence[DeviceChange]) -> list[int]:
        """Apply all changes atomically and return the affected device keys."""
        self._ensure_exists()
        staged = dict(self._devices)
        keys = [_stage(staged, change) for change in changes]
        self._devices = staged
        return keys

    def add_device(self, device: VirtualDevice) -> int:
        """Attach a device and return the key it was given."""
        return self.reconfigure([DeviceChange(Operation.ADD, device)])[0]

    def remove_device(self, device: VirtualDevice) -> None:
        """Detach the device with the given device's key."""
        self.reconfigure([DeviceChange(Operation.REMOVE, device)])

    def power_on(self) -> None:
        """Power the machine on; devices set to start connected get connected."""
        self._ensure_exists()
        if self._power_state is PowerState.POWERED_ON:
            raise VSphereError(f"virtual machine {self.name!r} is already powered on")
        for device in self._devices.values():
            if device.connectable is not None:
                device.connectable.connected = device.connectable.start_connected
        self._power_state = PowerState.POWERED_ON

    def power_off(self) -> None:
        """Power the machine off."""
        self._ensure_exists()
        if self._power_state is PowerState.POWERED_OFF:
            raise VSphereError(f"virtual machine {self.name!r} is already powered off")
        self._power_state = PowerState.POWERED_OFF

    def power_state(self) -> PowerState:
        """Return the current power state."""
        self._ensure_exists()
        return self._power_state

    def destroy(self) -> None:
        """Delete the machine; it must be powered off."""
        self._ensure_exists()
        if self._power_state is PowerState.POWERED_ON:
            raise VSphereError(f"virtual machine {self.name!r} is powered on")
        self._devices = {}
        self._destroyed = True


def govc_command(
    vcenter_host: str,
    vcenter_user: str,
    vcenter_pass: str,
    insecure: bool,
    *args: str,
) -> tuple[list[str], dict[str, str]]:
    """Return the argv and environment for running govc against a vCenter."""
    env = dict(os.environ)
    env.update(
        {
            "GOVC_URL": f"https://{vcenter_host}/sdk",
            "GOVC_USERNAME": vcenter_user,
            "GOVC_PASSWORD": vcenter_pass,
            "GOVC_INSECURE": "true" if insecure else "false",
        }
    )
    return ["govc", *args], env


def get_devices(vm: VirtualMachine) -> list[VirtualDevice]:
    """Return all devices of a VM."""
    try:
        return vm.devices()
    except VSphereError as exc:
        raise VSphereError(f"failed to get VM devices: {exc}") from exc


def get_cdroms(devices: Iterable[VirtualDevice]) -> list[Cdrom]:
    """Return the CD-ROM drives among the given devices."""
    return [d for d in devices if isinstance(d, Cdrom)]


def reconfigure_vm(vm: VirtualMachine, changes: Iterable[DeviceChange]) -> None:
    """Apply device changes to a VM."""
    try:
        vm.reconfigure(list(changes))
    except VSphereError as exc:
        raise VSphereError(f"failed to reconfigure VM: {exc}") from exc