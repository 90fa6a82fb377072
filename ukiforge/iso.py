# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Protocol

from ukiforge.log import complete_step, die
from ukiforge.run import run
from ukiforge.tree import normalize_permissions
from ukiforge.util import hash_file

ESP_IMAGE_NAME = "efiboot.img"
BIOS_BOOT_IMAGE = "isolinux/isolinux.bin"
BOOT_CATALOG = "boot.catalog"

# Where syslinux installs its ISO boot files on the common distributions.
SYSLINUX_DIRS = (
    Path("/usr/lib/ISOLINUX"),
    Path("/usr/share/syslinux"),
    Path("/usr/lib/syslinux/bios"),
)


@dataclasses.dataclass(frozen=True)
class BiosBoot:
    # Loaded by the BIOS El Torito entry when booting from optical media.
    image: Path
    # isohybrid MBR template used when the ISO is written to a disk.
    mbr: Path


class IsoMaster(Protocol):
    def master(
        self,
        source: Path,
        output: Path,
        *,
        label: str,
        efi_image: str,
        bios_image: str,
        mbr: Path,
    ) -> None: ...


class Xorriso:
    binaries = (("xorriso",),)

    def master(
        self,
        source: Path,
        output: Path,
        *,
        label: str,
        efi_image: str,
        bios_image: str,
        mbr: Path,
    ) -> None:
        run(
            [
                "xorriso",
                "-as", "mkisofs",
                "-V", label,
                "-J", "-joliet-long",
                "-r",
                "-c", BOOT_CATALOG,
                "-b", bios_image,
                "-no-emul-boot",
                "-boot-load-size", "4",
                "-boot-info-table",
                "-eltorito-alt-boot",
                "-e", efi_image,
                "-no-emul-boot",
                "-isohybrid-mbr", mbr,
                "-isohybrid-gpt-basdat",
                "-o", output,
                source,
            ]
        )  # fmt: skip


def find_syslinux_file(name: str, dirs: Sequence[Path] = SYSLINUX_DIRS) -> Optional[Path]:
    return next((d / name for d in dirs if (d / name).is_file()), None)


def find_bios_boot(
    image: Optional[Path] = None,
    mbr: Optional[Path] = None,
    *,
    dirs: Sequence[Path] = SYSLINUX_DIRS,
) -> BiosBoot:
    """Resolve the BIOS boot image and isohybrid MBR template, falling back to the syslinux install."""
    image = image or find_syslinux_file("isolinux.bin", dirs)
    mbr = mbr or find_syslinux_file("isohdpfx.bin", dirs)

    missing = [
        name
        for name, p in (("isolinux.bin", image), ("isohdpfx.bin", mbr))
        if not p or not p.is_file()
    ]
    if missing or not image or not mbr:
        die(
            f"Could not find the BIOS boot files {', '.join(missing)} needed to build an ISO",
            hint="Install syslinux or point --iso-bios-boot and --iso-mbr to them",
        )

    return BiosBoot(image=image, mbr=mbr)


def write_checksum(path: Path) -> Path:
    checksum = path.with_name(f"{path.name}.sha256")
    checksum.write_text(f"{hash_file(path)} *{path.name}\n")
    return checksum


def assemble_iso(
    source: Path,
    output: Path,
    *,
    master: IsoMaster,
    label: str,
    bios: BiosBoot,
) -> Path:
    """
    Master the staging directory source, which holds the ESP image at its root, into a hybrid ISO at
    output and write a detached checksum next to it.

    The ISO carries two El Torito entries, BIOS first and UEFI second, and an isohybrid MBR plus GPT
    so it also boots when written to a disk.
    """
    if not (source / ESP_IMAGE_NAME).is_file():
        raise FileNotFoundError(f"No ESP image found at {source / ESP_IMAGE_NAME}")

    (source / BIOS_BOOT_IMAGE).parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(bios.image, source / BIOS_BOOT_IMAGE)

    normalize_permissions(source)

    checksum = output.with_name(f"{output.name}.sha256")

    for p in (output, checksum):
        if p.exists():
            logging.warning(f"{p} already exists, overwriting it")
            p.unlink()

    with complete_step(f"Creating ISO {output.name}", "Created ISO {}") as args:
        try:
            master.master(
                source,
                output,
                label=label,
                efi_image=ESP_IMAGE_NAME,
                bios_image=BIOS_BOOT_IMAGE,
                mbr=bios.mbr,
            )
            write_checksum(output)
        except BaseException:
            output.unlink(missing_ok=True)
            checksum.unlink(missing_ok=True)
            raise

        args.append(output)

    return output
