# vmbootstrap

Building blocks for bootstrapping virtual machines on vSphere from installer
ISOs:

- downloading installer ISOs into a local cache, with SHA-256 verification
  and re-download of corrupted cache entries;
- patching Ubuntu Server ISOs for unattended installs (GRUB/ISOLINUX
  timeout, default entry, `autoinstall ds=nocloud` kernel parameters);
- writing small ISO 9660 NoCloud seed images from cloud-init `user-data`,
  `meta-data` and `network-config`;
- uploading ISOs to a datastore, skipping uploads whose content has not
  changed since the last recorded upload;
- mounting ISOs as SATA CD-ROMs and power-cycling a VM whose CD-ROMs come
  up disconnected after boot;
- building VM creation specs, adding SCSI controllers, thin disks and
  vmxnet3 adapters, and power control;
- inventory lookups and listings of datacenters, datastores, networks,
  folders, resource pools and VMs.

## Requirements

Python 3.10 or later. No third-party Python packages are needed.

Some functions run external tools, which must be on `PATH` when used:

| Tool          | Used by                                                    |
|---------------|------------------------------------------------------------|
| `govc`        | `upload_with_govc`, `delete_from_datastore`                |
| `xorriso`     | `extract_iso` (and so `modify_ubuntu_iso`)                 |
| `genisoimage` | `repack_iso` (and so `modify_ubuntu_iso`)                  |

`IsoManager.upload_to_datastore` and `IsoManager.upload_always` fall back to
`Datastore.upload` when the `govc` upload fails or `govc` is missing.

## Modules

| Module                  | What it holds                                                                  |
|-------------------------|--------------------------------------------------------------------------------|
| `vmbootstrap.devices`   | device dataclasses, `VirtualMachine`, `DeviceChange`, `govc_command`, `get_cdroms` |
| `vmbootstrap.vcenter`   | `Client`, `VCenterConfig`, `Inventory`, `build_sdk_url`, `infer_storage_type`  |
| `vmbootstrap.vm`        | `Creator`, `VMConfig`, `VMSpec`                                                |
| `vmbootstrap.download`  | `download_file`, `verify_checksum`, `compute_sha256`, `ubuntu_releases`        |
| `vmbootstrap.modifier`  | `modify_ubuntu_iso`, `modify_grub_text`, `extract_iso`, `repack_iso`           |
| `vmbootstrap.nocloud`   | `Iso9660Writer`, `create_nocloud_iso`                                          |
| `vmbootstrap.datastore` | `needs_upload`, `save_uploaded_hash`, `upload_with_govc`, `delete_from_datastore` |
| `vmbootstrap.manager`   | `IsoManager`, `Datastore`                                                      |

## Examples

Patch a boot menu for an unattended install:

```python
from vmbootstrap.modifier import modify_grub_text

menu = """set timeout=30
menuentry "Install" {
 linux /casper/vmlinuz ---
}
"""
print(modify_grub_text(menu, 5))
```

The timeout becomes 5 seconds, `set default=0` is put in front, and the
kernel line gets `autoinstall ds=nocloud` in front of `---`. Lines that
already carry `autoinstall` are left alone. `modify_ubuntu_iso(path)` does
the same to a whole ISO (extract with `xorriso`, patch, repack with
`genisoimage`) and returns `(modified_path, was_created)`; a second call for
an unchanged source ISO returns the cached result with `was_created=False`.

Build a NoCloud seed ISO:

```python
from vmbootstrap.nocloud import create_nocloud_iso

path = create_nocloud_iso(
    "#cloud-config\nhostname: web-01\n",
    "instance-id: web-01\nlocal-hostname: web-01\n",
    "version: 2\nethernets:\n  ens192:\n    dhcp4: true\n",
    "web-01",
    "/var/cache/vmbootstrap",
)
# path is Path("/var/cache/vmbootstrap/nocloud-web-01.iso"), volume id "cidata"
```

Decide whether an ISO needs to go to the datastore again:

```python
from vmbootstrap.datastore import hash_file_path, needs_upload, save_uploaded_hash

iso = "/var/cache/vmbootstrap/ubuntu.iso"
hash_file_path(iso)   # "/var/cache/vmbootstrap/ubuntu.iso.uploaded.sha256"
if needs_upload(iso):
    ...               # upload it
    save_uploaded_hash(iso)
```

Create a VM and mount ISOs on it:

```python
from vmbootstrap.manager import IsoManager
from vmbootstrap.vm import Creator, VMConfig

creator = Creator()
spec = creator.create_spec(VMConfig(name="web-01", cpus=2, memory_mb=4096, datastore="ds1"))
folder = {}
vm = creator.create(folder, None, "ds1", spec)
scsi_key = creator.ensure_scsi_controller(vm)      # 1000
creator.add_disk(vm, "ds1", 20, scsi_key)
creator.add_network_adapter(vm, "VM Network")

manager = IsoManager(cache_dir="/var/cache/vmbootstrap")
manager.mount_isos(vm, "[ds1] ISO/ubuntu.iso", "[ds1] ISO/nocloud.iso")
creator.power_on(vm)
```

`mount_isos` removes existing CD-ROMs, adds an AHCI controller if the VM has
no SATA controller, attaches both ISOs on the lowest free units and marks
every CD-ROM connected.

Look up inventory through a client:

```python
from vmbootstrap.vcenter import Client, Inventory, VCenterConfig, build_sdk_url

inventory = Inventory()
inventory.add_datacenter("DC0")
inventory.add_datastore("DC0", "fast-ssd-01", capacity_bytes=2 ** 40, free_bytes=2 ** 39)

password = "password"
config = VCenterConfig("vc.example.com", "user", password=password)
build_sdk_url(config)           # "https://vc.example.com:443/sdk"

client = Client.connect(config, lambda url, user, pwd, insecure: inventory)
client.list_datastores("DC0")   # [DatastoreInfo(name="fast-ssd-01", ..., type="SSD")]
client.find_vm("DC0", "missing")  # None
```

Only `https` vCenter URLs are accepted; a URL without a path gets `/sdk`, and
one without a port gets the configured port (443 by default).

## What it does not do

- There is no command-line program; everything is used from Python.
- There is no network client for the vSphere API. `VirtualMachine` and
  `Inventory` are in-process models, `Client.connect` uses whatever session
  its `connector` returns, and `Datastore` keeps its files under a local
  directory. Real vCenter access goes only through `govc`.
- It does not generate cloud-init documents or run a complete bootstrap
  from configuration; the steps above are called by the user in turn.
- `IsoManager` ships with no list of Ubuntu releases; pass one, for example
  built with `ubuntu_releases({"24.04": {"url": ..., "checksum": ...}})`.

## Errors

Failures are raised as exceptions: `VSphereError` for device, power and
datastore operations, `VCenterError` and `NotFoundError` for inventory
lookups, `DownloadError` and `ChecksumError` for downloads, `IsoToolError`
for ISO extraction, patching and repacking, and `GovcError` for `govc`
calls. `Client.find_vm` returns `None` for a VM that does not exist, and
`delete_from_datastore` treats a file that is already gone as success.