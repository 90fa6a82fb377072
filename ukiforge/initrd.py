# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import os
import shutil
from pathlib import Path

from ukiforge.archive import make_cpio, maybe_compress
from ukiforge.config import Compression
from ukiforge.log import complete_step, die
from ukiforge.util import umask

# Kernel API filesystems and scratch space that are mounted at runtime and never belong in the initrd.
RUNTIME_DIRECTORIES = ("sys", "proc", "dev", "run", "tmp")

INIT = "/usr/bin/immucore"


def prepare_rootfs(root: Path) -> None:
    with complete_step("Creating additional directories in the rootfs"):
        init = root / "init"
        if init.is_symlink() or init.exists():
            init.unlink()
        init.symlink_to(INIT)

        with umask(~0o755):
            # oem and the esp are mounted here if found, install and upgrade drop configuration into
            # cloud-config.
            for d in ("oem", "efi", "usr/local/cloud-config"):
                (root / d).mkdir(parents=True, exist_ok=True)


def extract_kernel(root: Path, dst: Path) -> Path:
    """
    Copy the kernel out of the rootfs and remove /boot afterwards, the kernel is embedded in the UKI
    directly so there is no point in carrying it in the initrd as well.
    """
    vmlinuz = root / "boot/vmlinuz"

    if vmlinuz.is_symlink():
        kernel = root / "boot" / Path(os.readlink(vmlinuz)).name
    else:
        kernel = vmlinuz

    if not kernel.is_file():
        die(f"No kernel found at {kernel.relative_to(root)} in {root}",
            hint="The root filesystem needs a boot/vmlinuz kernel or symlink to one")  # fmt: skip

    logging.info(f"Copying kernel from {kernel} to {dst}")
    shutil.copyfile(kernel, dst)

    shutil.rmtree(root / "boot")

    return dst


def build_initramfs(root: Path, staging: Path, compression: Compression = Compression.zstd) -> Path:
    cpio = staging / "initrd.cpio"

    with complete_step("Creating initramfs", "Created initramfs {}") as args:
        make_cpio(root, cpio, exclude=RUNTIME_DIRECTORIES)
        initrd = maybe_compress(compression, cpio, staging / "initrd")
        args.append(initrd)

    return initrd
