#!/usr/bin/env python3
"""
ESP Image - Creates bootable disk images with a single FAT32 partition

This tool packs host files and directories into a raw disk image that holds one
bootable EFI System partition, optionally trims the zero-filled tail of the
image and gzips it. It can also list or extract the contents of an existing
image (plain or gzipped).
"""

import argparse
import glob
import gzip
import os
import posixpath
import shutil
import stat
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import NamedTuple, Optional

import mmh3

from fatdisk import (
    EFI_SYSTEM,
    FAT32_LBA,
    MIN_CLUSTERS,
    SECTOR_SIZE,
    Disk,
    FileSystem,
    Partition,
    PartitionTable,
    fat32_cluster_count,
    log,
)


MB = 1024 * 1024
PARTITION_START = 2048  # sectors, 1 MiB aligned
DISK_OVERHEAD = 4 * MB
TRIM_CHUNK_SIZE = MB
COPY_CHUNK_SIZE = MB
GZIP_LEVEL = 6

PARTITION_TYPES = {
    "efi": EFI_SYSTEM,
    "fat32": FAT32_LBA,
}

CREATE_DESCRIPTION = """
Create a disk image with an EFI partition.
The contents of the partition are specified as a list of one or more paths.
Folders are copied recursively, and include the folder name itself
unless it ends with a trailing '/'.
"""


class ImageError(Exception):
    """Base class for errors raised while building or reading an image."""


class ConfigurationError(ImageError):
    """The requested image cannot be built with the given parameters."""


class PatternError(ImageError):
    """An include pattern is malformed."""


class RootingError(ImageError):
    """A visited path does not start with the prefix it is re-rooted from."""


class ShortWriteError(ImageError):
    """Fewer bytes were written to the image than the source file holds."""


def format_size(size: int) -> str:
    """
    Format a byte count for humans using binary units.

    Examples:
        >>> format_size(512)
        '512 B'
        >>> format_size(1572864)
        '1.5 MiB'
    """
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KiB", "MiB", "GiB", "TiB"):
        value /= 1024
        if value < 1024 or unit == "TiB":
            return f"{value:.1f} {unit}"


class ImageConfig(NamedTuple):
    """Parameters of one image build."""
    output_path: str
    includes: tuple
    label: str = "boot"
    partition_mb: int = 1024
    gzip_output: bool = False
    trim_image: bool = False
    force: bool = False
    partition_type: str = "efi"
    verbose: bool = False

    @property
    def compress(self) -> bool:
        """Gzip is requested explicitly or implied by a '.gz' output path."""
        return self.gzip_output or self.output_path.endswith(".gz")


class ImageGeometry(NamedTuple):
    """Sizes of the disk and of its single partition, in bytes."""
    disk_size: int
    partition_size: int
    sector_size: int = SECTOR_SIZE
    partition_start: int = PARTITION_START

    @classmethod
    def for_partition(cls, partition_mb: int) -> "ImageGeometry":
        partition_size = partition_mb * MB
        return cls(disk_size=partition_size + DISK_OVERHEAD, partition_size=partition_size)

    @property
    def partition_sectors(self) -> int:
        return self.partition_size // self.sector_size


def expand_include(pattern: str) -> list:
    """
    Expand one include pattern against the host filesystem.

    Patterns without matches expand to an empty list. Wildcards match names
    starting with a dot like any other name. A trailing separator is
    preserved in the result, since it decides whether a directory's own name
    is part of the copied paths.

    Args:
        pattern: Glob pattern as given on the command line

    Returns:
        Sorted list of matching paths

    Raises:
        PatternError: If the pattern has an unterminated character class or
            contains a NUL byte
    """
    if "\0" in pattern:
        raise PatternError(f"syntax error in pattern {pattern!r}: NUL byte")

    position = 0
    while True:
        position = pattern.find("[", position)
        if position < 0:
            break
        if pattern.find("]", position + 2) < 0:
            raise PatternError(f"syntax error in pattern {pattern!r}: unterminated '['")
        position += 1

    return sorted(glob.glob(pattern, include_hidden=True))


def reroot_path(path: str, prefix: str) -> str:
    """
    Strip prefix from a host path and return it as a partition-root path.

    Examples:
        >>> reroot_path("/a/b/c", "/a/b")
        '/c'
        >>> reroot_path("/a/b/c/d", "/a/b")
        '/c/d'
        >>> reroot_path("fixtures/app/", "fixtures/app")
        '/'

    Raises:
        RootingError: If path does not start with prefix
    """
    if not path.startswith(prefix):
        raise RootingError(f"path '{path}' is not rooted in '{prefix}'")
    relative = path[len(prefix):]
    if prefix and relative and not prefix.endswith("/") and not relative.startswith("/"):
        raise RootingError(f"path '{path}' is not rooted in '{prefix}'")
    return "/" + "/".join(part for part in relative.split("/") if part)


def copy_file(src: str, dst: str, fs: FileSystem, log=None):
    """
    Copy one host file into the filesystem.

    The file is written with a single call so the filesystem can allocate the
    whole cluster chain at once. The parent directory of dst must exist.

    Args:
        src: Host path of the source file
        dst: Absolute destination path inside the filesystem
        fs: Target filesystem
        log: Optional callable receiving progress messages

    Raises:
        ShortWriteError: If the number of bytes written differs from the
            size of the source file
    """
    with open(src, "rb") as source:
        expected = os.fstat(source.fileno()).st_size
        if log:
            log(f"Copying {src} -> {dst} ({expected} bytes)")
        data = source.read()

    with fs.open_file(dst, "w") as target:
        written = target.write(data)
        if written != expected:
            raise ShortWriteError(
                f"error writing output file '{dst}': {written} bytes written, should be {expected}"
            )


def copy_dir(prefix: str, path: str, fs: FileSystem, log=None):
    """
    Recursively copy a host directory into the filesystem.

    Each visited path has prefix stripped to compute its target:

        /a/b/c/      -> c/
        /a/b/c/d/    -> c/d/
        /a/b/c/f.txt -> c/f.txt

    with prefix '/a/b'. Children are visited in sorted order so identical
    trees give identical images. The target directory is created before any
    of its files are written.

    Args:
        prefix: Host path prefix to remove
        path: Host directory to copy
        fs: Target filesystem
        log: Optional callable receiving progress messages

    Raises:
        RootingError: If path does not start with prefix
    """
    with os.scandir(path) as it:
        children = sorted(it, key=lambda entry: entry.name)

    target = reroot_path(path, prefix)
    fs.mkdir(target)

    for child in children:
        child_path = os.path.join(path, child.name)
        if child.is_dir():
            copy_dir(prefix, child_path, fs, log)
        elif child.is_file():
            copy_file(child_path, posixpath.join(target, child.name), fs, log)
        elif log:
            log(f"Skipping {child_path}: not a regular file or directory")


def find_trim_size(path, chunk_size: int = TRIM_CHUNK_SIZE) -> Optional[int]:
    """
    Find the size a file can be truncated to without losing non-zero bytes.

    The file is read backwards in chunk_size pieces (the first piece read may
    be shorter) and scanning stops at the first non-zero byte found from the
    end. The file itself is not modified.

    Args:
        path: File to scan
        chunk_size: Size of the pieces read from the end (default: 1 MiB)

    Returns:
        Offset just past the last non-zero byte, which equals the file size
        when the last byte is non-zero. None if the file holds no non-zero
        byte at all (including an empty file).
    """
    with open(path, "rb") as f:
        file_size = os.fstat(f.fileno()).st_size
        offset = file_size
        while offset > 0:
            read_size = min(chunk_size, offset)
            f.seek(offset - read_size)
            chunk = f.read(read_size)
            if len(chunk) != read_size:
                raise ImageError(f"short read from '{path}' at offset {offset - read_size}")

            used = len(chunk.rstrip(b"\0"))
            if used:
                return offset - read_size + used
            offset -= read_size
    return None


def compress_output(input_path, output_path, level: int = GZIP_LEVEL):
    """
    Stream input_path through gzip into output_path.

    The gzip stream is closed before returning, so a failure while writing the
    trailer is raised like any other write error.
    """
    with open(input_path, "rb") as source:
        with gzip.open(output_path, "wb", compresslevel=level) as target:
            shutil.copyfileobj(source, target, COPY_CHUNK_SIZE)


class ImageBuilder:
    """Builds a disk image from an ImageConfig."""

    def __init__(self, config: ImageConfig):
        """
        Initialize the builder.

        Args:
            config: Build parameters

        Raises:
            ConfigurationError: If a parameter is missing or out of range, or the
                partition would hold too few clusters for FAT32
        """
        if not config.output_path:
            raise ConfigurationError("Output path is required")
        if not config.includes:
            raise ConfigurationError("At least one valid path is required")
        if config.partition_mb <= 0:
            raise ConfigurationError(f"Partition size must be a positive number of megabytes, got {config.partition_mb}")
        if config.partition_type not in PARTITION_TYPES:
            raise ConfigurationError(f"Unknown partition type '{config.partition_type}'")

        self.config = config
        self.geometry = ImageGeometry.for_partition(config.partition_mb)
        clusters = fat32_cluster_count(self.geometry.partition_sectors)
        if clusters < MIN_CLUSTERS:
            raise ConfigurationError(
                f"Partition size of {config.partition_mb} MB is too small for FAT32: "
                f"{clusters} clusters, at least {MIN_CLUSTERS} required"
            )

    def _log(self, message: str):
        """Print a timestamped message to stderr if verbose mode is enabled."""
        log(message, self.config.verbose)

    def create_disk_image(self, image_path):
        """
        Create the raw image, its partition table and filesystem, and copy the includes.

        The disk is closed (allocation table flushed) on every exit path, so a
        failed run still leaves a readable partial image behind.

        Args:
            image_path: Path of the image file to create; must not exist
        """
        config = self.config
        geometry = self.geometry
        self._log(f"Creating {format_size(geometry.disk_size)} disk image with a "
                  f"{format_size(geometry.partition_size)} partition at sector {geometry.partition_start}")

        with Disk.create(image_path, geometry.disk_size, geometry.sector_size, verbose=config.verbose) as disk:
            table = PartitionTable(
                partitions=(
                    Partition(
                        start=geometry.partition_start,
                        size=geometry.partition_sectors,
                        type=PARTITION_TYPES[config.partition_type],
                        bootable=True,
                    ),
                ),
                disk_signature=mmh3.hash(f"{config.label}:{geometry.disk_size}", signed=False),
            )
            disk.partition(table)

            fs = disk.create_filesystem(partition=1, label=config.label)

            for include in config.includes:
                paths = expand_include(include)
                if not paths:
                    self._log(f"No match for '{include}'")
                for path in paths:
                    if stat.S_ISDIR(os.stat(path).st_mode):
                        # Copy recursively, including the folder name unless the pattern ends in '/'
                        copy_dir(os.path.dirname(path), path, fs, self._log)
                    else:
                        copy_file(path, "/" + os.path.basename(path), fs, self._log)

    def build(self) -> Path:
        """
        Run the whole pipeline: assemble, optionally trim, then gzip or rename.

        The image is assembled in a temporary file next to the output. It is
        removed on success; on failure it is kept for inspection and its path
        is reported on stderr.

        Returns:
            Path of the finished artifact

        Raises:
            ConfigurationError: If the output exists and force is not set
        """
        config = self.config
        output = Path(config.output_path)
        if output.exists() and not config.force:
            raise ConfigurationError(f"Output path '{output}' exists, remove it or use --force to overwrite")

        fd, temp_name = tempfile.mkstemp(prefix="disk.img.", dir=output.parent)
        os.close(fd)
        os.remove(temp_name)

        succeeded = False
        try:
            self.create_disk_image(temp_name)

            if config.trim_image:
                self._log("Truncating disk image")
                trim_size = find_trim_size(temp_name)
                if trim_size is None:
                    self._log("Disk image holds no non-zero byte, leaving it untrimmed")
                else:
                    os.truncate(temp_name, trim_size)
                    self._log(f"Truncated image to {format_size(trim_size)}")

            if config.compress:
                self._log(f"Compressing {output}")
                compress_output(temp_name, output)
                os.remove(temp_name)
            else:
                os.replace(temp_name, output)
            succeeded = True
        finally:
            if not succeeded and os.path.exists(temp_name):
                print(f"Partial disk image kept at {temp_name}", file=sys.stderr)

        self._log(f"Wrote {output}")
        return output


def gunzip_to_temp_file(path, verbose: bool = False) -> str:
    """
    Decompress a gzipped image into a new temporary file.

    The temporary file is removed again if decompression fails.

    Returns:
        Path of the decompressed copy; the caller owns and must delete it
    """
    fd, temp_name = tempfile.mkstemp(prefix="disk.img.")
    log(f"Uncompressing {path} to temp file {temp_name}", verbose)
    try:
        with os.fdopen(fd, "wb") as target:
            with gzip.open(path, "rb") as source:
                shutil.copyfileobj(source, target, COPY_CHUNK_SIZE)
    except BaseException:
        os.remove(temp_name)
        raise
    return temp_name


@contextmanager
def opened_image(path, verbose: bool = False):
    """Yield a path to a raw image, decompressing '.gz' inputs into a temporary file."""
    if not str(path).endswith(".gz"):
        yield path
        return

    temp_name = gunzip_to_temp_file(path, verbose)
    try:
        yield temp_name
    finally:
        os.remove(temp_name)


def walk_image(fs: FileSystem, path: str = "/"):
    """Yield (absolute path, DirEntry) for everything below path, depth first."""
    for entry in fs.read_dir(path):
        if entry.name in (".", ".."):
            continue
        abs_path = posixpath.join(path, entry.name)
        yield abs_path, entry
        if entry.is_dir:
            yield from walk_image(fs, abs_path)


def list_image(image_path, output=sys.stdout, long_form: bool = False, verbose: bool = False):
    """
    Print every path in the first partition of an image.

    Args:
        image_path: Raw or gzipped image
        output: Stream to print to
        long_form: Prefix each path with its type and size, like ls -l
        verbose: Whether to print timestamped progress messages to stderr
    """
    with opened_image(image_path, verbose) as raw_path:
        with Disk.open(raw_path, read_only=True, verbose=verbose) as disk:
            fs = disk.get_filesystem(1)
            for abs_path, entry in walk_image(fs):
                if long_form:
                    kind = "d" if entry.is_dir else "-"
                    output.write(f"{kind} {entry.size:>12} {abs_path}\n")
                else:
                    output.write(f"{abs_path}\n")


def copy_image(image_path, dest_dir, verbose: bool = False) -> int:
    """
    Extract every file in the first partition of an image into dest_dir.

    Args:
        image_path: Raw or gzipped image
        dest_dir: Host directory to mirror the partition into; created if missing
        verbose: Whether to print timestamped progress messages to stderr

    Returns:
        Number of files written
    """
    count = 0
    with opened_image(image_path, verbose) as raw_path:
        with Disk.open(raw_path, read_only=True, verbose=verbose) as disk:
            fs = disk.get_filesystem(1)
            os.makedirs(dest_dir, exist_ok=True)
            for abs_path, entry in walk_image(fs):
                # Image names are untrusted, keep every target below dest_dir
                target = os.path.join(dest_dir, posixpath.normpath("/" + abs_path).lstrip("/"))
                if entry.is_dir:
                    os.makedirs(target, exist_ok=True)
                    continue
                os.makedirs(os.path.dirname(target), exist_ok=True)
                log(f"Writing {target}", verbose)
                with fs.open_file(abs_path, "r") as source, open(target, "wb") as destination:
                    shutil.copyfileobj(source, destination, COPY_CHUNK_SIZE)
                count += 1
    return count


def main():
    """Main entry point for esp-image."""
    parser = argparse.ArgumentParser(
        description='Create, list and extract disk images holding a single FAT32 EFI partition',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build a 64 MB image from the contents of build/esp
  %(prog)s create -o disk.img -s 64 build/esp/

  # Same, trimmed and gzipped (gzip is implied by the .gz extension)
  %(prog)s create -o disk.img.gz -s 64 --trim build/esp/ extra/*.efi

  # Inspect an image
  %(prog)s ls disk.img.gz
  %(prog)s cp disk.img.gz extracted/
        """
    )
    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    create = subparsers.add_parser(
        'create',
        help='Create a disk image with an EFI partition',
        description=CREATE_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    create.add_argument(
        'paths',
        nargs='+',
        metavar='PATH',
        help='Files or folders (glob patterns allowed) to copy into the partition'
    )
    create.add_argument(
        '-o', '--output',
        required=True,
        metavar='FILE',
        help='Output path (required)'
    )
    create.add_argument(
        '-l', '--label',
        default='boot',
        help='EFI partition volume label (default: boot)'
    )
    create.add_argument(
        '-s', '--size',
        type=int,
        default=1024,
        metavar='MB',
        help='Partition size in megabytes (default: 1024)'
    )
    create.add_argument(
        '-z', '--gzip',
        action='store_true',
        help="Compress output file with gzip (automatic if output ends with '.gz')"
    )
    create.add_argument(
        '-t', '--trim',
        action='store_true',
        help='Trim disk image before compressing (truncate zero-filled sectors at the end)'
    )
    create.add_argument(
        '-f', '--force',
        action='store_true',
        help='Overwrite the output file if it exists'
    )
    create.add_argument(
        '-p', '--partition-type',
        choices=sorted(PARTITION_TYPES),
        default='efi',
        help='Partition type tag: EFI System (0xEF) or FAT32 LBA (0x0C) (default: efi)'
    )

    cp = subparsers.add_parser(
        'cp',
        help='Copy the partition contents of an image into a folder, recursively',
    )
    cp.add_argument('image', help="Disk image (uncompressed on the fly if it ends with '.gz')")
    cp.add_argument('dest', help='Destination folder')

    ls = subparsers.add_parser(
        'ls',
        help='List the partition contents of an image, recursively',
    )
    ls.add_argument('image', help="Disk image (uncompressed on the fly if it ends with '.gz')")
    ls.add_argument(
        '-l', '--long',
        action='store_true',
        help='List file attributes similar to ls -l'
    )

    for subparser in (create, cp, ls):
        subparser.add_argument(
            '-v', '--verbose',
            action='store_true',
            help='Enable verbose mode with timestamped progress messages to stderr'
        )

    args = parser.parse_args()

    try:
        if args.command == 'create':
            config = ImageConfig(
                output_path=args.output,
                includes=tuple(args.paths),
                label=args.label,
                partition_mb=args.size,
                gzip_output=args.gzip,
                trim_image=args.trim,
                force=args.force,
                partition_type=args.partition_type,
                verbose=args.verbose,
            )
            ImageBuilder(config).build()
        elif args.command == 'cp':
            copy_image(args.image, args.dest, verbose=args.verbose)
        else:
            list_image(args.image, sys.stdout, long_form=args.long, verbose=args.verbose)

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
