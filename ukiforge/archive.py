# SPDX-License-Identifier: LGPL-2.1-or-later

import os
import shutil
import stat
from collections.abc import Collection, Iterator
from pathlib import Path
from typing import BinaryIO, Optional

from ukiforge.config import Compression
from ukiforge.log import complete_step, die, log_step
from ukiforge.run import run
from ukiforge.util import PathString, format_bytes

CPIO_NEWC_MAGIC = b"070701"
CPIO_TRAILER = "TRAILER!!!"
# newc stores sizes as 8 hex digits.
CPIO_MAX_FILE_SIZE = 0xFFFFFFFF


def tar_exclude_apivfs_tmp() -> list[str]:
    return [
        "--exclude", "./dev/*",
        "--exclude", "./proc/*",
        "--exclude", "./sys/*",
        "--exclude", "./tmp/*",
        "--exclude", "./run/*",
        "--exclude", "./var/tmp/*",
    ]  # fmt: skip


def make_tar(src: Path, dst: Path) -> None:
    log_step(f"Creating tar archive {dst}…")

    with dst.open("wb") as f:
        run(
            [
                "tar",
                "--create",
                "--file", "-",
                "--directory", src,
                "--format=pax",
                # PAX format emits additional headers for atime, ctime and mtime
                # that would make the archive non-reproducible.
                "--pax-option=delete=atime,delete=ctime,delete=mtime",
                "--sort=name",
                "--mtime=@0",
                "--numeric-owner",
                "--owner=0",
                "--group=0",
                "--force-local",
                *tar_exclude_apivfs_tmp(),
                ".",
            ],
            stdout=f,
        )  # fmt: skip


def walk_tree(src: Path, exclude: Collection[str] = ()) -> Iterator[Path]:
    """
    Yield every entry below src in sorted, parents-first order.

    Top level entries named in exclude are skipped together with everything below them.
    """
    def walk(directory: Path) -> Iterator[Path]:
        for entry in sorted(directory.iterdir(), key=lambda p: p.name):
            if directory == src and entry.name in exclude:
                continue

            yield entry

            if entry.is_dir() and not entry.is_symlink():
                yield from walk(entry)

    yield from walk(src)


def cpio_header(
    *,
    name: str,
    ino: int,
    mode: int,
    nlink: int,
    mtime: int,
    size: int,
    rdevmajor: int = 0,
    rdevminor: int = 0,
) -> bytes:
    namesize = len(name.encode()) + 1
    fields = (ino, mode, 0, 0, nlink, mtime, size, 0, 0, rdevmajor, rdevminor, namesize, 0)
    header = CPIO_NEWC_MAGIC + b"".join(b"%08X" % f for f in fields) + name.encode() + b"\0"
    return header + b"\0" * (-len(header) % 4)


def write_cpio_entry(f: BinaryIO, path: Optional[Path], name: str, ino: int, mtime: int) -> None:
    if path is None:
        f.write(cpio_header(name=name, ino=0, mode=0, nlink=1, mtime=0, size=0))
        return

    st = path.lstat()
    # Only the file type and permission bits are kept, ownership and timestamps are normalized.
    mode = stat.S_IFMT(st.st_mode) | stat.S_IMODE(st.st_mode)

    data = os.fsencode(os.readlink(path)) if stat.S_ISLNK(st.st_mode) else b""
    size = st.st_size if stat.S_ISREG(st.st_mode) else len(data)

    if size > CPIO_MAX_FILE_SIZE:
        die(
            f"{path} is {format_bytes(size)}, a newc cpio archive cannot hold files of 4 GiB or more",
            hint="Remove the file from the root filesystem or ship it outside of the initrd",
        )

    f.write(
        cpio_header(
            name=name,
            ino=ino,
            mode=mode,
            nlink=2 if stat.S_ISDIR(st.st_mode) else 1,
            mtime=mtime,
            size=size,
            rdevmajor=os.major(st.st_rdev) if stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode) else 0,
            rdevminor=os.minor(st.st_rdev) if stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode) else 0,
        )
    )

    if stat.S_ISREG(st.st_mode):
        with path.open("rb") as i:
            shutil.copyfileobj(i, f)
    else:
        f.write(data)

    f.write(b"\0" * (-size % 4))


def make_cpio(src: Path, dst: Path, *, exclude: Collection[str] = (), mtime: int = 0) -> None:
    """
    Write a reproducible newc cpio archive of src to dst.

    Entry names are relative to src, inodes are renumbered in walk order and owners and timestamps are
    normalized, so identical trees always produce identical archives. dst is removed again if anything
    goes wrong while writing it.
    """
    log_step(f"Creating cpio archive {dst}…")

    try:
        with dst.open("wb") as f:
            for ino, path in enumerate(walk_tree(src, exclude), start=1):
                write_cpio_entry(f, path, os.fspath(path.relative_to(src)), ino, mtime)

            write_cpio_entry(f, None, CPIO_TRAILER, 0, 0)
    except BaseException:
        dst.unlink(missing_ok=True)
        raise


def compressor_command(compression: Compression) -> list[PathString]:
    """Returns a command suitable for compressing archives."""

    if compression == Compression.gz:
        return ["gzip", "-9", "--no-name", "--stdout", "-"]
    elif compression == Compression.zstd:
        return ["zstd", "-q", "-19", "-T0", "--stdout", "-"]
    else:
        die(f"Unknown compression {compression}")


def maybe_compress(compression: Compression, src: Path, dst: Optional[Path] = None) -> Path:
    if not dst:
        dst = src.parent / f"{src.name}.{compression.extension()}"

    cmd = compressor_command(compression)

    with complete_step(f"Compressing {src} with {compression}"):
        try:
            with src.open("rb") as i, dst.open("wb") as o:
                run(cmd, stdin=i, stdout=o)
        except BaseException:
            dst.unlink(missing_ok=True)
            raise
        finally:
            src.unlink(missing_ok=True)

    return dst
