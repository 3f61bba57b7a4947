#!/usr/bin/env python3
"""
fatdisk - Raw disk images with an MBR partition table and FAT32 filesystems

This module is the block device layer used by esp_image. It creates or opens a
raw image file, reads and writes a classic MBR partition table, formats a FAT32
filesystem inside a partition and offers path based access to it (directories,
file reads and writes, VFAT long file names).

Only 512-byte sectors are supported.
"""

import os
import struct
import sys
from datetime import datetime
from typing import NamedTuple, Optional

import mmh3


SECTOR_SIZE = 512

# MBR layout
MBR_SIGNATURE = b"\x55\xAA"
PARTITION_ENTRY_OFFSET = 446
PARTITION_ENTRY_SIZE = 16
MAX_PARTITIONS = 4
DISK_SIGNATURE_OFFSET = 440

# Partition type tags
EFI_SYSTEM = 0xEF
FAT32_LBA = 0x0C

# FAT32 layout
RESERVED_SECTORS = 32
FAT_COUNT = 2
MEDIA_DESCRIPTOR = 0xF8
ROOT_CLUSTER = 2
FSINFO_SECTOR = 1
BACKUP_BOOT_SECTOR = 6
MIN_CLUSTERS = 65525
MAX_CLUSTERS = 0x0FFFFFF5
MAX_FILE_SIZE = 0xFFFFFFFF

FSINFO_LEAD_SIGNATURE = 0x41615252
FSINFO_STRUCT_SIGNATURE = 0x61417272
FSINFO_TRAIL_SIGNATURE = 0xAA550000

FREE_CLUSTER = 0x00000000
END_OF_CHAIN = 0x0FFFFFFF
END_OF_CHAIN_MIN = 0x0FFFFFF8
CLUSTER_MASK = 0x0FFFFFFF

# (upper bound in sectors, sectors per cluster) for 512-byte sectors
CLUSTER_SIZE_TABLE = [
    (532480, 1),        # up to 260 MiB: 512 bytes
    (16777216, 8),      # up to 8 GiB: 4 KiB
    (33554432, 16),     # up to 16 GiB: 8 KiB
    (67108864, 32),     # up to 32 GiB: 16 KiB
    (0xFFFFFFFF, 64),   # larger: 32 KiB
]

# Directory entries
DIR_ENTRY_SIZE = 32
MAX_DIR_ENTRIES = 65536
DELETED_ENTRY = 0xE5
ATTR_READ_ONLY = 0x01
ATTR_HIDDEN = 0x02
ATTR_SYSTEM = 0x04
ATTR_VOLUME_ID = 0x08
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20
ATTR_LONG_NAME = ATTR_READ_ONLY | ATTR_HIDDEN | ATTR_SYSTEM | ATTR_VOLUME_ID
LFN_LAST_ENTRY = 0x40
LFN_CHARS_PER_ENTRY = 13
MAX_LFN_LENGTH = 255
CASE_LOWER_BASE = 0x08
CASE_LOWER_EXT = 0x10

SHORT_NAME_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!#$%&'()-@^_`{}~")
INVALID_NAME_CHARS = set('"*/:<>?\\|')
DOT_NAME = b".          "
DOTDOT_NAME = b"..         "
NO_NAME_LABEL = b"NO NAME    "


def log(message: str, verbose: bool = True):
    """Print a timestamped message to stderr if verbose mode is enabled."""
    if verbose:
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        print(f"[{timestamp}] {message}", file=sys.stderr)


class DiskError(Exception):
    """Base class for errors raised by the block device layer."""


class PartitionError(DiskError):
    """The partition table is missing, malformed or does not fit the disk."""


class FilesystemError(DiskError):
    """A FAT32 filesystem could not be created, opened or modified."""


class Partition(NamedTuple):
    """One MBR partition entry. start and size are in sectors."""
    start: int
    size: int
    type: int = EFI_SYSTEM
    bootable: bool = False


class DirEntry(NamedTuple):
    """A directory entry as found in a FAT directory.

    index is the slot of the short (8.3) entry inside its directory, first_slot
    the slot of the first long file name entry belonging to it.
    """
    name: str
    is_dir: bool
    size: int
    cluster: int
    short_name: bytes
    index: int
    first_slot: int


def lba_to_chs(lba: int) -> bytes:
    """Encode an LBA as the 3-byte CHS tuple of an MBR entry (255 heads, 63 sectors)."""
    heads, sectors = 255, 63
    if lba >= 1024 * heads * sectors:
        return b"\xFE\xFF\xFF"
    cylinder = lba // (heads * sectors)
    head = (lba // sectors) % heads
    sector = lba % sectors + 1
    return bytes([head, (sector & 0x3F) | ((cylinder >> 2) & 0xC0), cylinder & 0xFF])


class PartitionTable(NamedTuple):
    """A classic MBR partition table with up to four primary partitions."""
    partitions: tuple
    disk_signature: int = 0

    def to_bytes(self) -> bytes:
        """
        Encode the table as a 512-byte MBR sector.

        Returns:
            The sector with an empty boot code area, the disk signature, the
            partition entries and the 0x55AA signature.

        Raises:
            PartitionError: If there are too many partitions or an entry does
                not fit the 32-bit LBA fields.
        """
        if len(self.partitions) > MAX_PARTITIONS:
            raise PartitionError(f"an MBR holds at most {MAX_PARTITIONS} partitions, got {len(self.partitions)}")

        mbr = bytearray(SECTOR_SIZE)
        struct.pack_into("<I", mbr, DISK_SIGNATURE_OFFSET, self.disk_signature & 0xFFFFFFFF)
        for number, partition in enumerate(self.partitions):
            if partition.start <= 0 or partition.size <= 0:
                raise PartitionError(f"partition {number + 1} has an empty or invalid extent")
            if partition.start + partition.size > 0xFFFFFFFF:
                raise PartitionError(f"partition {number + 1} does not fit in 32-bit LBA addressing")

            entry = bytearray(PARTITION_ENTRY_SIZE)
            entry[0] = 0x80 if partition.bootable else 0x00
            entry[1:4] = lba_to_chs(partition.start)
            entry[4] = partition.type
            entry[5:8] = lba_to_chs(partition.start + partition.size - 1)
            struct.pack_into("<II", entry, 8, partition.start, partition.size)

            offset = PARTITION_ENTRY_OFFSET + number * PARTITION_ENTRY_SIZE
            mbr[offset:offset + PARTITION_ENTRY_SIZE] = entry
        mbr[510:512] = MBR_SIGNATURE
        return bytes(mbr)

    @classmethod
    def from_bytes(cls, sector: bytes) -> "PartitionTable":
        """Decode an MBR sector. Empty slots are left out."""
        if len(sector) < SECTOR_SIZE or sector[510:512] != MBR_SIGNATURE:
            raise PartitionError("no MBR signature found in sector 0")

        partitions = []
        for number in range(MAX_PARTITIONS):
            offset = PARTITION_ENTRY_OFFSET + number * PARTITION_ENTRY_SIZE
            entry = sector[offset:offset + PARTITION_ENTRY_SIZE]
            part_type = entry[4]
            start, size = struct.unpack_from("<II", entry, 8)
            if part_type == 0 or size == 0:
                continue
            partitions.append(Partition(start=start, size=size, type=part_type, bootable=entry[0] == 0x80))

        signature = struct.unpack_from("<I", sector, DISK_SIGNATURE_OFFSET)[0]
        return cls(partitions=tuple(partitions), disk_signature=signature)


class Disk:
    """A raw disk image file addressed in bytes and 512-byte sectors."""

    def __init__(self, path, fp, size: int, read_only: bool = False, verbose: bool = False):
        self.path = path
        self.size = size
        self.sector_size = SECTOR_SIZE
        self.read_only = read_only
        self.verbose = verbose
        self._fp = fp
        self._filesystems = []

    @classmethod
    def create(cls, path, size: int, sector_size: int = SECTOR_SIZE, verbose: bool = False) -> "Disk":
        """
        Create a new raw image of the given size.

        The file is extended with truncate() so untouched regions stay sparse.

        Args:
            path: Image file to create, must not exist yet
            size: Size of the device in bytes, a multiple of the sector size
            sector_size: Sector size in bytes (only 512 is supported)
            verbose: Whether to print timestamped progress messages to stderr

        Raises:
            FileExistsError: If path already exists
            DiskError: If the geometry is not supported
        """
        if sector_size != SECTOR_SIZE:
            raise DiskError(f"unsupported sector size {sector_size}, only {SECTOR_SIZE} is supported")
        if size <= 0 or size % sector_size:
            raise DiskError(f"disk size {size} is not a positive multiple of the sector size {sector_size}")

        fp = open(path, "x+b")
        try:
            fp.truncate(size)
        except OSError:
            fp.close()
            raise
        disk = cls(path, fp, size, verbose=verbose)
        disk._log(f"Created raw disk {path} ({size} bytes)")
        return disk

    @classmethod
    def open(cls, path, read_only: bool = False, verbose: bool = False) -> "Disk":
        """Open an existing raw image. Bytes missing at the end of a trimmed image read as zeros."""
        fp = open(path, "rb" if read_only else "r+b")
        size = os.fstat(fp.fileno()).st_size
        return cls(path, fp, size, read_only=read_only, verbose=verbose)

    def _log(self, message: str):
        log(message, self.verbose)

    def read_at(self, offset: int, length: int) -> bytes:
        self._fp.seek(offset)
        data = self._fp.read(length)
        if len(data) < length:
            data += bytes(length - len(data))
        return data

    def write_at(self, offset: int, data):
        if self.read_only:
            raise DiskError(f"disk {self.path} is opened read-only")
        self._fp.seek(offset)
        self._fp.write(data)

    def partition(self, table: PartitionTable):
        """
        Write a partition table to sector 0.

        Args:
            table: The partition table to write

        Raises:
            PartitionError: If a partition extends past the end of the disk
        """
        total_sectors = self.size // self.sector_size
        for number, partition in enumerate(table.partitions):
            if partition.start + partition.size > total_sectors:
                raise PartitionError(
                    f"partition {number + 1} ends at sector {partition.start + partition.size}, "
                    f"past the end of the disk ({total_sectors} sectors)"
                )
        self.write_at(0, table.to_bytes())
        self._log(f"Wrote partition table with {len(table.partitions)} partition(s)")

    def get_partition_table(self) -> PartitionTable:
        return PartitionTable.from_bytes(self.read_at(0, SECTOR_SIZE))

    def _partition(self, number: int) -> Partition:
        partitions = self.get_partition_table().partitions
        if not 1 <= number <= len(partitions):
            raise PartitionError(f"partition {number} does not exist, the disk has {len(partitions)} partition(s)")
        return partitions[number - 1]

    def create_filesystem(self, partition: int = 1, label: str = "NO NAME",
                          volume_id: Optional[int] = None) -> "FileSystem":
        """
        Format a FAT32 filesystem inside a partition.

        Args:
            partition: 1-based partition number
            label: Volume label, up to 11 ASCII characters
            volume_id: Volume serial number; derived from the label and the
                partition geometry when omitted so identical inputs give
                identical boot sectors

        Returns:
            The opened filesystem. It is flushed when the disk is closed.
        """
        entry = self._partition(partition)
        if volume_id is None:
            volume_id = mmh3.hash(f"{label}:{entry.start}:{entry.size}", signed=False)
        self._log(f"Formatting partition {partition} as FAT32 with label '{label}'")
        filesystem = FileSystem.format(
            self,
            entry.start * self.sector_size,
            entry.size * self.sector_size,
            label=label,
            volume_id=volume_id,
            hidden_sectors=entry.start,
        )
        self._filesystems.append(filesystem)
        return filesystem

    def get_filesystem(self, partition: int = 1) -> "FileSystem":
        """Open the FAT32 filesystem stored in a partition."""
        entry = self._partition(partition)
        filesystem = FileSystem(self, entry.start * self.sector_size, entry.size * self.sector_size)
        self._filesystems.append(filesystem)
        return filesystem

    def close(self):
        """Flush every filesystem opened through this disk and close the image file."""
        if self._fp.closed:
            return
        try:
            for filesystem in self._filesystems:
                filesystem.flush()
        finally:
            self._fp.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def cluster_sectors(total_sectors: int) -> int:
    """Sectors per cluster for a FAT32 volume of the given size."""
    for limit, sectors in CLUSTER_SIZE_TABLE:
        if total_sectors <= limit:
            return sectors
    return CLUSTER_SIZE_TABLE[-1][1]


def compute_fat_sectors(total_sectors: int, sectors_per_cluster: int) -> int:
    fat_sectors = 1
    while True:
        data_sectors = total_sectors - RESERVED_SECTORS - FAT_COUNT * fat_sectors
        cluster_count = data_sectors // sectors_per_cluster
        needed_bytes = (cluster_count + 2) * 4
        new_fat_sectors = (needed_bytes + SECTOR_SIZE - 1) // SECTOR_SIZE
        if new_fat_sectors <= fat_sectors:
            return fat_sectors
        fat_sectors = new_fat_sectors


def fat32_cluster_count(total_sectors: int) -> int:
    """
    Number of data clusters a FAT32 volume of total_sectors would hold.

    A volume is only valid FAT32 when this is at least MIN_CLUSTERS.
    """
    sectors_per_cluster = cluster_sectors(total_sectors)
    fat_sectors = compute_fat_sectors(total_sectors, sectors_per_cluster)
    return max(total_sectors - RESERVED_SECTORS - FAT_COUNT * fat_sectors, 0) // sectors_per_cluster


def encode_label(label: str) -> bytes:
    """Encode a volume label as the 11-byte, space padded, upper case field."""
    if not label:
        return NO_NAME_LABEL
    upper = label.upper()
    if len(upper) > 11:
        raise FilesystemError(f"volume label '{label}' is longer than 11 characters")
    if any(c in INVALID_NAME_CHARS or c == "." or ord(c) < 0x20 or ord(c) > 0x7E for c in upper):
        raise FilesystemError(f"volume label '{label}' contains unsupported characters")
    return upper.ljust(11).encode("ascii")


def fat_timestamp(moment: datetime) -> tuple:
    """Return (time, date) in FAT encoding, clamped to the 1980 epoch."""
    if moment.year < 1980:
        return 0, (1 << 5) | 1
    fat_time = (moment.hour << 11) | (moment.minute << 5) | (moment.second // 2)
    fat_date = ((min(moment.year, 2107) - 1980) << 9) | (moment.month << 5) | moment.day
    return fat_time, fat_date


def make_dir_entry(name11: bytes, attr: int, first_cluster: int, size: int, stamp: tuple = (0, 0)) -> bytes:
    if len(name11) != 11:
        raise ValueError("name11 must be exactly 11 bytes")

    fat_time, fat_date = stamp
    entry = bytearray(DIR_ENTRY_SIZE)
    entry[0:11] = name11
    entry[11] = attr & 0xFF
    struct.pack_into("<HH", entry, 14, fat_time, fat_date)  # creation
    struct.pack_into("<H", entry, 18, fat_date)  # last access
    struct.pack_into("<H", entry, 20, (first_cluster >> 16) & 0xFFFF)
    struct.pack_into("<HH", entry, 22, fat_time, fat_date)  # last write
    struct.pack_into("<H", entry, 26, first_cluster & 0xFFFF)
    struct.pack_into("<I", entry, 28, size & 0xFFFFFFFF)
    return bytes(entry)


# =====================================================================
# VFAT long file name helpers
# =====================================================================

def lfn_checksum(name83: bytes) -> int:
    """Compute the VFAT LFN checksum from an 8.3 name (11 bytes)."""
    s = 0
    for b in name83:
        s = (((s & 1) << 7) + (s >> 1) + b) & 0xFF
    return s


def validate_name(name: str):
    if not name or name in (".", ".."):
        raise FilesystemError(f"invalid file name: {name!r}")
    if any(c in INVALID_NAME_CHARS or ord(c) < 0x20 for c in name):
        raise FilesystemError(f"invalid character in file name: {name!r}")
    if len(name.encode("utf-16-le")) // 2 > MAX_LFN_LENGTH:
        raise FilesystemError(f"file name longer than {MAX_LFN_LENGTH} characters: {name!r}")


def exact_short_name(name: str) -> Optional[bytes]:
    """
    Return the 8.3 form of name if it can be stored without a long file name.

    Names with lower case letters get a long name so their case survives.
    """
    if name != name.upper():
        return None
    base, dot, ext = name.partition(".")
    if not 1 <= len(base) <= 8 or len(ext) > 3 or (dot and not ext):
        return None
    if any(c not in SHORT_NAME_CHARS for c in base + ext):
        return None
    return (base.ljust(8) + ext.ljust(3)).encode("ascii")


def _short_chars(text: str) -> str:
    chars = []
    for c in text:
        if c == " " or c == ".":
            continue
        chars.append(c if c in SHORT_NAME_CHARS else "_")
    return "".join(chars)


def short_alias(name: str, taken: set) -> bytes:
    """Generate a unique ~N short name for a long file name."""
    upper = name.upper().lstrip(".")
    if "." in upper:
        base, ext = upper.rsplit(".", 1)
    else:
        base, ext = upper, ""

    base = _short_chars(base)[:6] or "_"
    ext = _short_chars(ext)[:3]

    for counter in range(1, 1000000):
        tail = f"~{counter}"
        candidate = ((base[:8 - len(tail)] + tail).ljust(8) + ext.ljust(3)).encode("ascii")
        if candidate not in taken:
            return candidate
    raise FilesystemError(f"no free short name left for {name!r}")


def make_lfn_entries(filename: str, name83: bytes) -> list:
    """Create LFN directory entries. Returns list of 32-byte entries in disk order."""
    chk = lfn_checksum(name83)

    encoded = filename.encode("utf-16-le")
    units = list(struct.unpack(f"<{len(encoded) // 2}H", encoded))
    num_entries = (len(units) + LFN_CHARS_PER_ENTRY - 1) // LFN_CHARS_PER_ENTRY
    if len(units) % LFN_CHARS_PER_ENTRY:
        units.append(0x0000)
    units.extend([0xFFFF] * (num_entries * LFN_CHARS_PER_ENTRY - len(units)))

    entries = []
    for seq in range(1, num_entries + 1):
        chars = units[(seq - 1) * LFN_CHARS_PER_ENTRY:seq * LFN_CHARS_PER_ENTRY]
        entry = bytearray(DIR_ENTRY_SIZE)
        entry[0] = seq | (LFN_LAST_ENTRY if seq == num_entries else 0)
        struct.pack_into("<5H", entry, 1, *chars[0:5])
        entry[11] = ATTR_LONG_NAME
        entry[13] = chk
        struct.pack_into("<6H", entry, 14, *chars[5:11])
        struct.pack_into("<2H", entry, 28, *chars[11:13])
        entries.append(bytes(entry))

    # The entry flagged as last is stored first
    entries.reverse()
    return entries


def _lfn_units(raw) -> list:
    return (list(struct.unpack_from("<5H", raw, 1))
            + list(struct.unpack_from("<6H", raw, 14))
            + list(struct.unpack_from("<2H", raw, 28)))


def _decode_lfn(parts: dict) -> str:
    units = []
    for seq in sorted(parts):
        units.extend(parts[seq])
    if 0x0000 in units:
        units = units[:units.index(0x0000)]
    units = [u for u in units if u != 0xFFFF]
    return struct.pack(f"<{len(units)}H", *units).decode("utf-16-le", errors="replace")


def format_short_name(name11: bytes, case_flags: int = 0) -> str:
    raw = bytearray(name11)
    if raw[0] == 0x05:
        raw[0] = DELETED_ENTRY
    base = bytes(raw[0:8]).rstrip(b" ").decode("cp437")
    ext = bytes(raw[8:11]).rstrip(b" ").decode("cp437")
    if case_flags & CASE_LOWER_BASE:
        base = base.lower()
    if case_flags & CASE_LOWER_EXT:
        ext = ext.lower()
    return f"{base}.{ext}" if ext else base


def parse_directory(data) -> list:
    """
    Decode the entries of a directory.

    Deleted entries and volume labels are skipped, long file names are
    attached to the short entry that follows them when the checksum matches.

    Args:
        data: Raw contents of the whole directory cluster chain

    Returns:
        List of DirEntry in on-disk order
    """
    entries = []
    lfn_parts = {}
    lfn_check = None
    lfn_start = None

    for index in range(len(data) // DIR_ENTRY_SIZE):
        raw = data[index * DIR_ENTRY_SIZE:(index + 1) * DIR_ENTRY_SIZE]
        first = raw[0]
        if first == 0x00:
            break
        if first == DELETED_ENTRY:
            lfn_parts = {}
            continue

        attr = raw[11]
        if (attr & ATTR_LONG_NAME) == ATTR_LONG_NAME:
            if first & LFN_LAST_ENTRY:
                lfn_parts = {}
                lfn_check = raw[13]
                lfn_start = index
            lfn_parts[first & 0x1F] = _lfn_units(raw)
            continue
        if attr & ATTR_VOLUME_ID:
            lfn_parts = {}
            continue

        short = bytes(raw[0:11])
        if lfn_parts and lfn_check == lfn_checksum(short):
            name = _decode_lfn(lfn_parts)
            first_slot = lfn_start
        else:
            name = format_short_name(short, raw[12])
            first_slot = index
        lfn_parts = {}

        cluster = (struct.unpack_from("<H", raw, 20)[0] << 16) | struct.unpack_from("<H", raw, 26)[0]
        size = struct.unpack_from("<I", raw, 28)[0]
        entries.append(DirEntry(
            name=name,
            is_dir=bool(attr & ATTR_DIRECTORY),
            size=size,
            cluster=cluster,
            short_name=short,
            index=index,
            first_slot=first_slot,
        ))
    return entries


def _free_slots(data, count: int) -> Optional[int]:
    """Index of the first run of count free directory slots, or None."""
    total = len(data) // DIR_ENTRY_SIZE
    run = 0
    for index in range(total):
        first = data[index * DIR_ENTRY_SIZE]
        if first == 0x00:
            # Everything after the end marker is free
            if total - index + run >= count:
                return index - run
            return None
        if first == DELETED_ENTRY:
            run += 1
            if run == count:
                return index - count + 1
        else:
            run = 0
    return None


def split_path(path: str) -> list:
    parts = [part for part in path.split("/") if part not in ("", ".")]
    if ".." in parts:
        raise FilesystemError(f"path may not contain '..': {path}")
    return parts


class FileSystem:
    """A FAT32 filesystem living inside a partition of a Disk.

    The allocation table is kept in memory and written back to every FAT copy
    by flush(), which Disk.close() calls.
    """

    def __init__(self, disk: Disk, start: int, size: int):
        self.disk = disk
        self.start = start
        self.size = size
        self._stamp = fat_timestamp(datetime.now())

        boot = disk.read_at(start, SECTOR_SIZE)
        if boot[510:512] != MBR_SIGNATURE:
            raise FilesystemError(f"no boot sector signature at offset {start}")

        (bytes_per_sector, sectors_per_cluster, reserved, fat_count, root_entries,
         total16, _media, fat_size16) = struct.unpack_from("<HBHBHHBH", boot, 11)
        total32, fat_size32 = struct.unpack_from("<II", boot, 32)
        root_cluster, fsinfo_sector = struct.unpack_from("<IH", boot, 44)

        if (bytes_per_sector != SECTOR_SIZE or sectors_per_cluster == 0 or fat_count == 0
                or fat_size16 != 0 or root_entries != 0 or fat_size32 == 0):
            raise FilesystemError(f"partition at offset {start} does not contain a FAT32 filesystem")

        total_sectors = total32 or total16
        self.cluster_size = sectors_per_cluster * bytes_per_sector
        self.fat_count = fat_count
        self.fat_start = reserved * bytes_per_sector
        self.fat_bytes = fat_size32 * bytes_per_sector
        self.data_start = (reserved + fat_count * fat_size32) * bytes_per_sector
        self.root_cluster = root_cluster
        self.fsinfo_offset = fsinfo_sector * bytes_per_sector
        self.volume_id = struct.unpack_from("<I", boot, 67)[0]
        self.label = boot[71:82].decode("ascii", errors="replace").rstrip()

        data_clusters = (total_sectors - reserved - fat_count * fat_size32) // sectors_per_cluster
        self.cluster_count = min(data_clusters, self.fat_bytes // 4 - 2)

        self._fat = bytearray(disk.read_at(start + self.fat_start, self.fat_bytes))
        self._free_count = sum(
            1 for (value,) in struct.iter_unpack("<I", self._fat[8:(self.cluster_count + 2) * 4])
            if value & CLUSTER_MASK == FREE_CLUSTER
        )
        self._next_free = self._read_next_free_hint()
        self._dirty = False

    @classmethod
    def format(cls, disk: Disk, start: int, size: int, label: str = "NO NAME",
               volume_id: int = 0, hidden_sectors: int = 0) -> "FileSystem":
        """
        Write an empty FAT32 filesystem into a byte range of the disk.

        Args:
            disk: The disk to format
            start: Byte offset of the partition
            size: Size of the partition in bytes
            label: Volume label
            volume_id: Volume serial number
            hidden_sectors: Sectors preceding the partition (its start LBA)

        Returns:
            The new filesystem, opened

        Raises:
            FilesystemError: If the partition is too small or too large for FAT32
        """
        total_sectors = size // SECTOR_SIZE
        sectors_per_cluster = cluster_sectors(total_sectors)
        fat_sectors = compute_fat_sectors(total_sectors, sectors_per_cluster)
        cluster_count = fat32_cluster_count(total_sectors)
        if cluster_count < MIN_CLUSTERS:
            raise FilesystemError(
                f"partition of {size} bytes is too small for FAT32: "
                f"{cluster_count} clusters, at least {MIN_CLUSTERS} required"
            )
        if cluster_count > MAX_CLUSTERS:
            raise FilesystemError(f"partition of {size} bytes is too large for FAT32")

        label11 = encode_label(label)

        # Boot sector
        boot = bytearray(SECTOR_SIZE)
        boot[0:3] = b"\xEB\x58\x90"
        boot[3:11] = b"MSWIN4.1"
        struct.pack_into("<H", boot, 11, SECTOR_SIZE)
        boot[13] = sectors_per_cluster
        struct.pack_into("<H", boot, 14, RESERVED_SECTORS)
        boot[16] = FAT_COUNT
        struct.pack_into("<H", boot, 17, 0)  # FAT32 root entries
        struct.pack_into("<H", boot, 19, 0)  # use TotSec32
        boot[21] = MEDIA_DESCRIPTOR
        struct.pack_into("<H", boot, 22, 0)  # FAT16 only
        struct.pack_into("<H", boot, 24, 63)
        struct.pack_into("<H", boot, 26, 255)
        struct.pack_into("<I", boot, 28, hidden_sectors)
        struct.pack_into("<I", boot, 32, total_sectors)
        struct.pack_into("<I", boot, 36, fat_sectors)
        struct.pack_into("<H", boot, 40, 0)
        struct.pack_into("<H", boot, 42, 0)
        struct.pack_into("<I", boot, 44, ROOT_CLUSTER)
        struct.pack_into("<H", boot, 48, FSINFO_SECTOR)
        struct.pack_into("<H", boot, 50, BACKUP_BOOT_SECTOR)
        boot[64] = 0x80
        boot[66] = 0x29
        struct.pack_into("<I", boot, 67, volume_id & 0xFFFFFFFF)
        boot[71:82] = label11
        boot[82:90] = b"FAT32   "
        boot[90:93] = b"\xF4\xEB\xFD"  # hlt; jmp $-1
        boot[510:512] = MBR_SIGNATURE

        # FSInfo
        fsinfo = bytearray(SECTOR_SIZE)
        struct.pack_into("<I", fsinfo, 0, FSINFO_LEAD_SIGNATURE)
        struct.pack_into("<I", fsinfo, 484, FSINFO_STRUCT_SIGNATURE)
        struct.pack_into("<I", fsinfo, 488, cluster_count - 1)
        struct.pack_into("<I", fsinfo, 492, ROOT_CLUSTER + 1)
        struct.pack_into("<I", fsinfo, 508, FSINFO_TRAIL_SIGNATURE)

        disk.write_at(start, boot)
        disk.write_at(start + FSINFO_SECTOR * SECTOR_SIZE, fsinfo)
        disk.write_at(start + BACKUP_BOOT_SECTOR * SECTOR_SIZE, boot)
        disk.write_at(start + (BACKUP_BOOT_SECTOR + 1) * SECTOR_SIZE, fsinfo)

        # FAT tables
        fat = bytearray(fat_sectors * SECTOR_SIZE)
        struct.pack_into("<I", fat, 0, 0x0FFFFF00 | MEDIA_DESCRIPTOR)
        struct.pack_into("<I", fat, 4, END_OF_CHAIN)
        struct.pack_into("<I", fat, ROOT_CLUSTER * 4, END_OF_CHAIN)
        for fat_index in range(FAT_COUNT):
            disk.write_at(start + (RESERVED_SECTORS + fat_index * fat_sectors) * SECTOR_SIZE, fat)

        # Root directory
        root = bytearray(sectors_per_cluster * SECTOR_SIZE)
        if label11 != NO_NAME_LABEL:
            root[0:DIR_ENTRY_SIZE] = make_dir_entry(
                label11, ATTR_VOLUME_ID, 0, 0, fat_timestamp(datetime.now()))
        disk.write_at(start + (RESERVED_SECTORS + FAT_COUNT * fat_sectors) * SECTOR_SIZE, root)

        disk._log(f"FAT32: {cluster_count} clusters of {sectors_per_cluster * SECTOR_SIZE} bytes, "
                  f"{fat_sectors} sectors per FAT")
        return cls(disk, start, size)

    def _read_next_free_hint(self) -> int:
        fsinfo = self.disk.read_at(self.start + self.fsinfo_offset, SECTOR_SIZE)
        lead, = struct.unpack_from("<I", fsinfo, 0)
        hint, = struct.unpack_from("<I", fsinfo, 492)
        if lead == FSINFO_LEAD_SIGNATURE and 2 <= hint < self.cluster_count + 2:
            return hint
        return ROOT_CLUSTER

    # -----------------------------------------------------------------
    # Allocation table
    # -----------------------------------------------------------------

    def _get_fat(self, cluster: int) -> int:
        return struct.unpack_from("<I", self._fat, cluster * 4)[0] & CLUSTER_MASK

    def _set_fat(self, cluster: int, value: int):
        reserved_bits = struct.unpack_from("<I", self._fat, cluster * 4)[0] & ~CLUSTER_MASK
        struct.pack_into("<I", self._fat, cluster * 4, reserved_bits | (value & CLUSTER_MASK))
        self._dirty = True

    def _chain(self, first: int) -> list:
        """Follow a cluster chain from its first cluster."""
        chain = []
        cluster = first
        while True:
            if not 2 <= cluster < self.cluster_count + 2:
                raise FilesystemError(f"invalid cluster {cluster:#x} in chain starting at {first}")
            chain.append(cluster)
            if len(chain) > self.cluster_count:
                raise FilesystemError(f"cluster chain starting at {first} loops")
            value = self._get_fat(cluster)
            if value >= END_OF_CHAIN_MIN:
                return chain
            cluster = value

    def _allocate(self, count: int, previous: int = 0) -> list:
        """
        Allocate count free clusters and link them into a chain.

        Args:
            count: Number of clusters needed
            previous: Last cluster of an existing chain to extend, 0 for a new chain

        Returns:
            The newly allocated clusters in chain order

        Raises:
            FilesystemError: If the filesystem runs out of clusters
        """
        if count > self._free_count:
            raise FilesystemError(f"no space left on device: {count} clusters needed, {self._free_count} free")

        clusters = []
        cluster = self._next_free
        while len(clusters) < count:
            if cluster >= self.cluster_count + 2:
                cluster = 2
            if self._get_fat(cluster) == FREE_CLUSTER:
                clusters.append(cluster)
            cluster += 1

        for current, following in zip(clusters, clusters[1:]):
            self._set_fat(current, following)
        self._set_fat(clusters[-1], END_OF_CHAIN)
        if previous:
            self._set_fat(previous, clusters[0])

        self._next_free = cluster if cluster < self.cluster_count + 2 else 2
        self._free_count -= count
        return clusters

    def _release(self, first: int):
        chain = self._chain(first)
        for cluster in chain:
            self._set_fat(cluster, FREE_CLUSTER)
        self._free_count += len(chain)

    @property
    def free_clusters(self) -> int:
        return self._free_count

    # -----------------------------------------------------------------
    # Cluster I/O
    # -----------------------------------------------------------------

    def _cluster_offset(self, cluster: int) -> int:
        return self.start + self.data_start + (cluster - 2) * self.cluster_size

    def _runs(self, chain: list, pos: int, length: int):
        """Yield (disk offset, length) pieces covering [pos, pos + length) of a chain.

        Physically contiguous clusters are merged into one piece.
        """
        index, skip = divmod(pos, self.cluster_size)
        remaining = length
        while remaining > 0:
            if index >= len(chain):
                raise FilesystemError("access past the end of the cluster chain")
            first = index
            span = self.cluster_size - skip
            while span < remaining and index + 1 < len(chain) and chain[index + 1] == chain[index] + 1:
                index += 1
                span += self.cluster_size
            piece = min(span, remaining)
            yield self._cluster_offset(chain[first]) + skip, piece
            remaining -= piece
            index += 1
            skip = 0

    def _read_chain(self, chain: list, pos: int, length: int) -> bytes:
        return b"".join(self.disk.read_at(offset, piece) for offset, piece in self._runs(chain, pos, length))

    def _write_chain(self, chain: list, pos: int, data):
        view = memoryview(data)
        done = 0
        for offset, piece in self._runs(chain, pos, len(view)):
            self.disk.write_at(offset, view[done:done + piece])
            done += piece

    # -----------------------------------------------------------------
    # Directories
    # -----------------------------------------------------------------

    def _read_directory(self, cluster: int):
        chain = self._chain(cluster)
        data = bytearray(self._read_chain(chain, 0, len(chain) * self.cluster_size))
        return chain, data

    def _list(self, cluster: int) -> list:
        _, data = self._read_directory(cluster)
        return parse_directory(data)

    def _find(self, cluster: int, name: str) -> Optional[DirEntry]:
        """Case-insensitive lookup of name in a directory."""
        key = name.upper()
        for entry in self._list(cluster):
            if entry.name.upper() == key or format_short_name(entry.short_name).upper() == key:
                return entry
        return None

    def _walk_dir(self, parts: list, path: str) -> int:
        cluster = self.root_cluster
        for part in parts:
            entry = self._find(cluster, part)
            if entry is None:
                raise FilesystemError(f"no such directory: {path}")
            if not entry.is_dir:
                raise FilesystemError(f"not a directory: {path}")
            cluster = entry.cluster or self.root_cluster
        return cluster

    def _add_entry(self, parent: int, name: str, attr: int, cluster: int, size: int) -> DirEntry:
        """Append an entry (with long name entries when needed) to a directory."""
        validate_name(name)
        chain, data = self._read_directory(parent)
        taken = {entry.short_name for entry in parse_directory(data)}

        slots = []
        short = exact_short_name(name)
        if short is None or short in taken:
            short = short_alias(name, taken)
            slots = make_lfn_entries(name, short)
        slots.append(make_dir_entry(short, attr, cluster, size, self._stamp))

        index = _free_slots(data, len(slots))
        while index is None:
            if len(data) // DIR_ENTRY_SIZE >= MAX_DIR_ENTRIES:
                raise FilesystemError(f"directory is full, cannot add {name!r}")
            new_cluster = self._allocate(1, previous=chain[-1])[0]
            self._write_chain([new_cluster], 0, bytes(self.cluster_size))
            chain.append(new_cluster)
            data.extend(bytes(self.cluster_size))
            index = _free_slots(data, len(slots))

        self._write_chain(chain, index * DIR_ENTRY_SIZE, b"".join(slots))
        return DirEntry(
            name=name,
            is_dir=bool(attr & ATTR_DIRECTORY),
            size=size,
            cluster=cluster,
            short_name=short,
            index=index + len(slots) - 1,
            first_slot=index,
        )

    def _update_entry(self, parent: int, index: int, cluster: int, size: int):
        chain = self._chain(parent)
        raw = bytearray(self._read_chain(chain, index * DIR_ENTRY_SIZE, DIR_ENTRY_SIZE))
        fat_time, fat_date = self._stamp
        struct.pack_into("<H", raw, 20, (cluster >> 16) & 0xFFFF)
        struct.pack_into("<HH", raw, 22, fat_time, fat_date)
        struct.pack_into("<H", raw, 26, cluster & 0xFFFF)
        struct.pack_into("<I", raw, 28, size & 0xFFFFFFFF)
        self._write_chain(chain, index * DIR_ENTRY_SIZE, raw)

    def _check_writable(self):
        if self.disk.read_only:
            raise FilesystemError("filesystem is opened read-only")

    def read_dir(self, path: str) -> list:
        """
        List a directory.

        Subdirectories include their '.' and '..' entries, the root does not.

        Args:
            path: Absolute path inside the filesystem, '/' for the root

        Returns:
            List of DirEntry in on-disk order
        """
        return self._list(self._walk_dir(split_path(path), path))

    def mkdir(self, path: str):
        """Create a directory and any missing parents. Existing directories are left alone."""
        self._check_writable()
        cluster = self.root_cluster
        for part in split_path(path):
            entry = self._find(cluster, part)
            if entry is None:
                entry = self._create_directory(cluster, part)
                self.disk._log(f"mkdir {path}")
            elif not entry.is_dir:
                raise FilesystemError(f"cannot create directory {path}: '{part}' is a file")
            cluster = entry.cluster

    def _create_directory(self, parent: int, name: str) -> DirEntry:
        validate_name(name)
        cluster = self._allocate(1)[0]
        data = bytearray(self.cluster_size)
        data[0:DIR_ENTRY_SIZE] = make_dir_entry(DOT_NAME, ATTR_DIRECTORY, cluster, 0, self._stamp)
        parent_ref = 0 if parent == self.root_cluster else parent
        data[DIR_ENTRY_SIZE:2 * DIR_ENTRY_SIZE] = make_dir_entry(DOTDOT_NAME, ATTR_DIRECTORY, parent_ref, 0, self._stamp)
        self._write_chain([cluster], 0, data)
        return self._add_entry(parent, name, ATTR_DIRECTORY, cluster, 0)

    def open_file(self, path: str, mode: str = "r") -> "FatFile":
        """
        Open a file.

        Args:
            path: Absolute path inside the filesystem
            mode: 'r' to read, 'w' to create or truncate and open read-write

        Returns:
            A FatFile; closing it records the size in the directory entry

        Raises:
            FilesystemError: If the parent directory is missing, the path is a
                directory, or the file does not exist in read mode
        """
        mode = mode.replace("b", "")
        if mode not in ("r", "w"):
            raise ValueError(f"unsupported mode: {mode!r}")

        parts = split_path(path)
        if not parts:
            raise FilesystemError(f"cannot open the root directory as a file: {path}")
        parent = self._walk_dir(parts[:-1], path)
        entry = self._find(parent, parts[-1])

        if entry is not None and entry.is_dir:
            raise FilesystemError(f"is a directory: {path}")

        if mode == "r":
            if entry is None:
                raise FilesystemError(f"no such file: {path}")
            return FatFile(self, parent, entry, writable=False)

        self._check_writable()
        if entry is None:
            entry = self._add_entry(parent, parts[-1], ATTR_ARCHIVE, 0, 0)
        elif entry.cluster:
            self._release(entry.cluster)
            self._update_entry(parent, entry.index, 0, 0)
            entry = entry._replace(cluster=0, size=0)
        return FatFile(self, parent, entry, writable=True)

    def flush(self):
        """Write the allocation table to every FAT copy and refresh FSInfo."""
        if not self._dirty or self.disk.read_only:
            return
        for fat_index in range(self.fat_count):
            self.disk.write_at(self.start + self.fat_start + fat_index * self.fat_bytes, self._fat)

        fsinfo = bytearray(self.disk.read_at(self.start + self.fsinfo_offset, SECTOR_SIZE))
        if struct.unpack_from("<I", fsinfo, 0)[0] == FSINFO_LEAD_SIGNATURE:
            struct.pack_into("<I", fsinfo, 488, self._free_count)
            struct.pack_into("<I", fsinfo, 492, self._next_free)
            self.disk.write_at(self.start + self.fsinfo_offset, fsinfo)
        self._dirty = False


class FatFile:
    """An open file inside a FileSystem."""

    def __init__(self, filesystem: FileSystem, parent: int, entry: DirEntry, writable: bool):
        self.filesystem = filesystem
        self.name = entry.name
        self.writable = writable
        self.size = entry.size
        self.closed = False
        self._parent = parent
        self._index = entry.index
        self._chain = filesystem._chain(entry.cluster) if entry.cluster else []
        self._pos = 0
        self._modified = False

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        available = max(self.size - self._pos, 0)
        if size is None or size < 0 or size > available:
            size = available
        if size == 0:
            return b""
        data = self.filesystem._read_chain(self._chain, self._pos, size)
        self._pos += size
        return data

    def write(self, data) -> int:
        """Write data at the current position, growing the cluster chain as needed."""
        if self.closed:
            raise ValueError("I/O operation on closed file")
        if not self.writable:
            raise FilesystemError(f"file {self.name!r} is not open for writing")
        if not data:
            return 0

        end = self._pos + len(data)
        if end > MAX_FILE_SIZE:
            raise FilesystemError(
                f"file {self.name!r} too large for FAT32: {end} bytes, at most {MAX_FILE_SIZE} allowed"
            )

        cluster_size = self.filesystem.cluster_size
        needed = (end + cluster_size - 1) // cluster_size
        if needed > len(self._chain):
            previous = self._chain[-1] if self._chain else 0
            self._chain.extend(self.filesystem._allocate(needed - len(self._chain), previous=previous))

        self.filesystem._write_chain(self._chain, self._pos, data)
        self._pos = end
        self.size = max(self.size, end)
        self._modified = True
        return len(data)

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = self._pos + offset
        elif whence == os.SEEK_END:
            position = self.size + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        if position < 0:
            raise ValueError(f"negative seek position {position}")
        self._pos = position
        return position

    def tell(self) -> int:
        return self._pos

    def close(self):
        if self.closed:
            return
        if self._modified:
            first = self._chain[0] if self._chain else 0
            self.filesystem._update_entry(self._parent, self._index, first, self.size)
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
