"""NoCloud seed images: a small ISO 9660 writer and the seed builder."""

from __future__ import annotations

import math
import struct
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

SECTOR_SIZE = 2048
DEFAULT_NOCLOUD_VOLUME_ID = "cidata"

_SYSTEM_AREA_SECTORS = 16
_PVD_SECTOR = 16
_TERMINATOR_SECTOR = 17
_L_PATH_TABLE_SECTOR = 18
_M_PATH_TABLE_SECTOR = 19
_ROOT_DIR_SECTOR = 20
_MAX_NAME_LENGTH = 200
_MAX_VOLUME_ID_LENGTH = 32


def _both16(value: int) -> bytes:
    return struct.pack("<H", value) + struct.pack(">H", value)


def _both32(value: int) -> bytes:
    return struct.pack("<I", value) + struct.pack(">I", value)


def _record_stamp(moment: datetime) -> bytes:
    return bytes(
        [moment.year - 1900, moment.month, moment.day,
         moment.hour, moment.minute, moment.second, 0]
    )


def _volume_stamp(moment: datetime) -> bytes:
    return moment.strftime("%Y%m%d%H%M%S").encode("ascii") + b"00" + b"\x00"


def _padded(text: str, length: int) -> bytes:
    return text.encode("ascii").ljust(length, b" ")


def _dir_record(
    identifier: bytes, lba: int, size: int, is_dir: bool, stamp: bytes
) -> bytes:
    pad = b"\x00" if len(identifier) % 2 == 0 else b""
    length = 33 + len(identifier) + len(pad)
    return (
        bytes([length, 0])
        + _both32(lba)
        + _both32(size)
        + stamp
        + bytes([2 if is_dir else 0, 0, 0])
        + _both16(1)
        + bytes([len(identifier)])
        + identifier
        + pad
    )


def _pack_sectors(records: list[bytes]) -> bytes:
    """Lay out records so that none crosses a sector boundary."""
    out = bytearray()
    used = 0
    for record in records:
        if used + len(record) > SECTOR_SIZE:
            out += bytes(SECTOR_SIZE - used)
            used = 0
        out += record
        used += len(record)
    if used:
        out += bytes(SECTOR_SIZE - used)
    return bytes(out)


def _sectors(length: int) -> int:
    return math.ceil(length / SECTOR_SIZE)


class Iso9660Writer:
    """Builds a flat ISO 9660 image (no Joliet, no Rock Ridge) in memory."""

    def __init__(self, created: datetime | None = None) -> None:
        self._files: dict[str, bytes] = {}
        self._created = created

    def add_file(self, name: str, data: bytes) -> None:
        """Add a file to the root directory of the image."""
        if not name or name in (".", ".."):
            raise ValueError(f"invalid file name {name!r}")
        if "/" in name or ";" in name:
            raise ValueError(f"file name {name!r} must not contain '/' or ';'")
        if not name.isascii() or not name.isprintable():
            raise ValueError(f"file name {name!r} must be printable ASCII")
        if len(name) > _MAX_NAME_LENGTH:
            raise ValueError(f"file name {name!r} is too long")
        if name in self._files:
            raise ValueError(f"file {name!r} already added")
        self._files[name] = bytes(data)

    def write(self, stream: BinaryIO, volume_id: str = DEFAULT_NOCLOUD_VOLUME_ID) -> int:
        """Write the image to a binary stream and return the bytes written."""
        if not volume_id.isascii() or len(volume_id) > _MAX_VOLUME_ID_LENGTH:
            raise ValueError(
                f"volume id {volume_id!r} must be ASCII of at most "
                f"{_MAX_VOLUME_ID_LENGTH} characters"
            )
        moment = self._created or datetime.now(timezone.utc)
        stamp = _record_stamp(moment)
        names = sorted(self._files, key=lambda n: n.encode("ascii"))

        # Record lengths depend only on names, so size the directory first.
        placeholder = [_dir_record(b"\x00", 0, 0, True, stamp)] * 2 + [
            _dir_record(n.encode("ascii"), 0, 0, False, stamp) for n in names
        ]
        dir_size = len(_pack_sectors(placeholder))

        next_lba = _ROOT_DIR_SECTOR + _sectors(dir_size)
        extents: list[tuple[str, int]] = []
        for name in names:
            extents.append((name, next_lba))
            next_lba += _sectors(len(self._files[name]))
        total_sectors = next_lba

        root_self = _dir_record(b"\x00", _ROOT_DIR_SECTOR, dir_size, True, stamp)
        root_parent = _dir_record(b"\x01", _ROOT_DIR_SECTOR, dir_size, True, stamp)
        directory = _pack_sectors(
            [root_self, root_parent]
            + [
                _dir_record(n.encode("ascii"), lba, len(self._files[n]), False, stamp)
                for n, lba in extents
            ]
        )

        path_table_size = 10
        l_table = (
            bytes([1, 0]) + struct.pack("<I", _ROOT_DIR_SECTOR)
            + struct.pack("<H", 1) + b"\x00\x00"
        )
        m_table = (
            bytes([1, 0]) + struct.pack(">I", _ROOT_DIR_SECTOR)
            + struct.pack(">H", 1) + b"\x00\x00"
        )

        pvd = bytearray(SECTOR_SIZE)
        pvd[0] = 1
        pvd[1:6] = b"CD001"
        pvd[6] = 1
        pvd[8:40] = _padded("", 32)
        pvd[40:72] = _padded(volume_id, 32)
        pvd[80:88] = _both32(total_sectors)
        pvd[120:124] = _both16(1)
        pvd[124:128] = _both16(1)
        pvd[128:132] = _both16(SECTOR_SIZE)
        pvd[132:140] = _both32(path_table_size)
        pvd[140:144] = struct.pack("<I", _L_PATH_TABLE_SECTOR)
        pvd[148:152] = struct.pack(">I", _M_PATH_TABLE_SECTOR)
        pvd[156:190] = root_self
        pvd[190:318] = _padded("", 128)
        pvd[318:446] = _padded("", 128)
        pvd[446:574] = _padded("", 128)
        pvd[574:702] = _padded("", 128)
        pvd[702:739] = _padded("", 37)
        pvd[739:776] = _padded("", 37)
        pvd[776:813] = _padded("", 37)
        created = _volume_stamp(moment)
        pvd[813:830] = created
        pvd[830:847] = created
        pvd[847:864] = b"0" * 16 + b"\x00"
        pvd[864:881] = b"0" * 16 + b"\x00"
        pvd[881] = 1

        terminator = bytearray(SECTOR_SIZE)
        terminator[0] = 255
        terminator[1:6] = b"CD001"
        terminator[6] = 1

        pieces = [
            bytes(_SYSTEM_AREA_SECTORS * SECTOR_SIZE),
            bytes(pvd),
            bytes(terminator),
            l_table.ljust(SECTOR_SIZE, b"\x00"),
            m_table.ljust(SECTOR_SIZE, b"\x00"),
            directory,
        ]
        for name, _ in extents:
            data = self._files[name]
            pieces.append(data + bytes(_sectors(len(data)) * SECTOR_SIZE - len(data)))

        written = 0
        for piece in pieces:
            stream.write(piece)
            written += len(piece)
        return written


def create_nocloud_iso(
    user_data: str,
    meta_data: str,
    network_config: str,
    vm_name: str,
    cache_dir: str | Path,
) -> Path:
    """Write nocloud-<vm_name>.iso holding the cloud-init seed files."""
    iso_path = Path(cache_dir) / f"nocloud-{vm_name}.iso"
    writer = Iso9660Writer()
    for name, content in (
        ("user-data", user_data),
        ("meta-data", meta_data),
        ("network-config", network_config),
    ):
        writer.add_file(name, content.encode("utf-8"))
    with open(iso_path, "wb") as out:
        writer.write(out, DEFAULT_NOCLOUD_VOLUME_ID)
    return iso_path