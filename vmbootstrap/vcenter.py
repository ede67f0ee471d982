"""vCenter connection settings, inventory lookups and listings."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from vmbootstrap.devices import VirtualMachine

DEFAULT_PORT = 443

_ROOTS = {
    "datastore": "datastore",
    "network": "network",
    "folder": "vm",
    "resource pool": "host",
    "virtual machine": "vm",
}

_GIB = 1024 * 1024 * 1024


class VCenterError(Exception):
    """Raised when a vCenter operation fails."""


class NotFoundError(VCenterError):
    """Raised when an inventory object does not exist."""


@dataclass
class VCenterConfig:
    """vCenter connection parameters; port 0 means the default port."""

    host: str
    username: str
    password: str
    port: int = 0
    insecure: bool = False


@dataclass(frozen=True)
class DatastoreInfo:
    """Summary of a datastore."""

    name: str
    capacity_gb: float
    free_space_gb: float
    accessible: bool
    type: str


@dataclass(frozen=True)
class NetworkInfo:
    """A network or port group, named by its inventory path."""

    name: str


@dataclass(frozen=True)
class FolderInfo:
    """A VM folder, named relative to the datacenter's vm root."""

    name: str


@dataclass(frozen=True)
class ResourcePoolInfo:
    """A resource pool, named relative to the datacenter's host tree."""

    name: str


@dataclass
class _Entry:
    kind: str
    obj: Any
    summary: tuple[int, int, bool] | None = None


class Inventory:
    """Objects of a vCenter session, addressed by inventory path."""

    def __init__(self) -> None:
        self._datacenters: dict[str, Any] = {}
        self._entries: dict[str, _Entry] = {}
        self.connected = True

    def _require_connection(self) -> None:
        if not self.connected:
            raise VCenterError("not connected to vCenter")

    @staticmethod
    def _absolute(datacenter: str, kind: str, path: str) -> str:
        if kind not in _ROOTS:
            raise ValueError(f"unknown inventory kind {kind!r}")
        if path.startswith("/"):
            return path.rstrip("/")
        return f"/{datacenter}/{_ROOTS[kind]}/{path.strip('/')}"

    def _register(
        self,
        datacenter: str,
        kind: str,
        path: str,
        obj: Any,
        summary: tuple[int, int, bool] | None = None,
    ) -> str:
        self.datacenter(datacenter)
        full = self._absolute(datacenter, kind, path)
        if full in self._entries:
            raise VCenterError(f"inventory path {full!r} already exists")
        self._entries[full] = _Entry(kind, full if obj is None else obj, summary)
        return full

    def add_datacenter(self, name: str, obj: Any = None) -> str:
        """Add a datacenter together with its root VM folder."""
        path = f"/{name}"
        self._datacenters[name] = path if obj is None else obj
        self._entries[f"{path}/vm"] = _Entry("folder", f"{path}/vm")
        return path

    def add_datastore(
        self,
        datacenter: str,
        name: str,
        capacity_bytes: int = 0,
        free_bytes: int = 0,
        accessible: bool = True,
        obj: Any = None,
    ) -> str:
        """Add a datastore; the object defaults to its inventory path."""
        return self._register(
            datacenter, "datastore", name, obj, (capacity_bytes, free_bytes, accessible)
        )

    def add_network(self, datacenter: str, name: str, obj: Any = None) -> str:
        """Add a network; the object defaults to its inventory path."""
        return self._register(datacenter, "network", name, obj)

    def add_folder(self, datacenter: str, path: str, obj: Any = None) -> str:
        """Add a VM folder; the object defaults to its inventory path."""
        return self._register(datacenter, "folder", path, obj)

    def add_resource_pool(self, datacenter: str, path: str, obj: Any = None) -> str:
        """Add a resource pool; the object defaults to its inventory path."""
        return self._register(datacenter, "resource pool", path, obj)

    def add_vm(self, datacenter: str, path: str, vm: VirtualMachine | None = None) -> str:
        """Add a virtual machine, created empty if none is given."""
        if vm is None:
            vm = VirtualMachine(path.rstrip("/").rsplit("/", 1)[-1])
        return self._register(datacenter, "virtual machine", path, vm)

    def datacenter(self, name: str) -> Any:
        """Return the datacenter object with this name."""
        self._require_connection()
        try:
            return self._datacenters[name]
        except KeyError:
            raise NotFoundError(f"datacenter '{name}' not found") from None

    def find(self, datacenter: str, kind: str, path: str) -> Any:
        """Resolve an absolute path, a relative path or a bare name."""
        self.datacenter(datacenter)
        full = self._absolute(datacenter, kind, path)
        entry = self._entries.get(full)
        if entry is not None and entry.kind == kind:
            return entry.obj
        if "/" not in path:
            prefix = f"/{datacenter}/{_ROOTS[kind]}/"
            matches = [
                e.obj
                for p, e in self._entries.items()
                if e.kind == kind and p.startswith(prefix) and p.rsplit("/", 1)[1] == path
            ]
            if len(matches) == 1:
                return matches[0]
            if matches:
                raise VCenterError(f"path '{path}' resolves to multiple {kind}s")
        raise NotFoundError(f"{kind} '{path}' not found")

    def entries(self, datacenter: str, kind: str) -> list[tuple[str, Any]]:
        """Return (inventory path, object) pairs of one kind in a datacenter."""
        self.datacenter(datacenter)
        prefix = f"/{datacenter}/"
        return [
            (p, e.obj)
            for p, e in self._entries.items()
            if e.kind == kind and p.startswith(prefix)
        ]

    def datastore_summary(self, path: str) -> tuple[int, int, bool]:
        """Return capacity bytes, free bytes and accessibility of a datastore."""
        self._require_connection()
        entry = self._entries.get(path)
        if entry is None or entry.summary is None:
            raise NotFoundError(f"datastore summary for '{path}' not found")
        return entry.summary

    def logout(self) -> None:
        """End the session."""
        self._require_connection()
        self.connected = False


Connector = Callable[[str, str, str, bool], Inventory]


def build_sdk_url(config: VCenterConfig) -> str:
    """Return the SDK endpoint URL (without credentials) for a configuration."""
    port = config.port or DEFAULT_PORT
    host = config.host
    if "://" not in host:
        return f"https://{host}:{port}/sdk"

    try:
        parts = urlsplit(host)
        explicit_port = parts.port
    except ValueError as exc:
        raise VCenterError(f"invalid vCenter URL {host!r}: {exc}") from exc

    scheme = parts.scheme or "https"
    if scheme != "https":
        raise VCenterError(f"unsupported vCenter URL scheme {scheme!r} (https required)")
    path = parts.path or "/sdk"
    netloc = parts.netloc.rpartition("@")[2]
    if not parts.hostname:
        raise VCenterError(f"invalid vCenter URL (missing host): {host!r}")
    if explicit_port is None:
        netloc = f"{netloc.rstrip(':')}:{port}"
    return urlunsplit((scheme, netloc, path, parts.query, parts.fragment))


def infer_storage_type(name: str) -> str:
    """Guess SSD or HDD from a datastore name."""
    lower = name.lower()
    return "SSD" if "ssd" in lower or "nvme" in lower else "HDD"


def _wrap(exc: VCenterError, message: str) -> VCenterError:
    return type(exc)(f"{message}: {exc}")


class Client:
    """High-level vCenter operations on top of an inventory session."""

    def __init__(self, inventory: Inventory | None) -> None:
        self.inventory = inventory

    @classmethod
    def connect(cls, config: VCenterConfig, connector: Connector) -> Client:
        """Open a session through connector(url, username, password, insecure)."""
        url = build_sdk_url(config)
        try:
            inventory = connector(url, config.username, config.password, config.insecure)
        except (OSError, VCenterError) as exc:
            raise VCenterError(f"failed to connect to vCenter: {exc}") from exc
        return cls(inventory)

    def _session(self) -> Inventory:
        if self.inventory is None:
            raise VCenterError("not connected to vCenter")
        return self.inventory

    def disconnect(self) -> None:
        """Close the session, if any."""
        if self.inventory is not None:
            self.inventory.logout()

    def find_datacenter(self, name: str) -> Any:
        try:
            return self._session().datacenter(name)
        except VCenterError as exc:
            raise _wrap(exc, f'datacenter "{name}" not found') from exc

    def _find(self, datacenter: str, kind: str, path: str) -> Any:
        self.find_datacenter(datacenter)
        try:
            return self._session().find(datacenter, kind, path)
        except VCenterError as exc:
            raise _wrap(exc, f'{kind} "{path}" not found') from exc

    def find_datastore(self, datacenter: str, name: str) -> Any:
        return self._find(datacenter, "datastore", name)

    def find_network(self, datacenter: str, name: str) -> Any:
        return self._find(datacenter, "network", name)

    def find_folder(self, datacenter: str, path: str) -> Any:
        return self._find(datacenter, "folder", path)

    def find_resource_pool(self, datacenter: str, path: str) -> Any:
        return self._find(datacenter, "resource pool", path)

    def find_vm(self, datacenter: str, name: str) -> VirtualMachine | None:
        """Return the VM with this name, or None if there is none."""
        self.find_datacenter(datacenter)
        try:
            return self._session().find(datacenter, "virtual machine", name)
        except NotFoundError:
            return None
        except VCenterError as exc:
            raise VCenterError(f'failed to find VM "{name}": {exc}') from exc

    def list_datastores(self, datacenter: str) -> list[DatastoreInfo]:
        """Return datastores; those without a readable summary are skipped."""
        self.find_datacenter(datacenter)
        session = self._session()
        result = []
        for path, _ in session.entries(datacenter, "datastore"):
            try:
                capacity, free, accessible = session.datastore_summary(path)
            except VCenterError:
                continue
            name = path.rsplit("/", 1)[-1]
            result.append(
                DatastoreInfo(
                    name=name,
                    capacity_gb=capacity / _GIB,
                    free_space_gb=free / _GIB,
                    accessible=accessible,
                    type=infer_storage_type(name),
                )
            )
        return result

    def list_networks(self, datacenter: str) -> list[NetworkInfo]:
        self.find_datacenter(datacenter)
        return [NetworkInfo(path) for path, _ in self._session().entries(datacenter, "network")]

    def list_folders(self, datacenter: str) -> list[FolderInfo]:
        """Return VM folders below the datacenter's vm root, excluding the root."""
        self.find_datacenter(datacenter)
        prefix = f"/{datacenter}/vm/"
        return [
            FolderInfo(path[len(prefix):])
            for path, _ in self._session().entries(datacenter, "folder")
            if path.startswith(prefix)
        ]

    def list_resource_pools(self, datacenter: str) -> list[ResourcePoolInfo]:
        self.find_datacenter(datacenter)
        prefix = f"/{datacenter}/host/"
        return [
            ResourcePoolInfo(path.removeprefix(prefix))
            for path, _ in self._session().entries(datacenter, "resource pool")
        ]