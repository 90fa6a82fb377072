# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
from pathlib import Path
from typing import Protocol

from ukiforge.log import complete_step
from ukiforge.manifest import ArtifactManifest
from ukiforge.run import run
from ukiforge.util import round_up

# Headroom for FAT metadata. It also keeps even the smallest image above the cluster count below which
# firmware stops treating the filesystem as FAT32.
ESP_SAFETY_MARGIN_MIB = 50


class ImageFormatter(Protocol):
    def allocate(self, image: Path, size_mib: int) -> None: ...

    def format(self, image: Path) -> None: ...

    def mkdir(self, image: Path, directory: str) -> None: ...

    def copy(self, image: Path, source: Path, directory: str) -> None: ...


class MTools:
    binaries = (("dd",), ("mkfs.msdos",), ("mmd",), ("mcopy",))

    def allocate(self, image: Path, size_mib: int) -> None:
        run(["dd", "if=/dev/zero", f"of={image}", "bs=1M", f"count={size_mib}"])

    def format(self, image: Path) -> None:
        run(["mkfs.msdos", "-F", "32", image])

    def mkdir(self, image: Path, directory: str) -> None:
        # mmd does not create parent directories, so callers have to go outer to inner.
        run(["mmd", "-i", image, f"::{directory}"])

    def copy(self, image: Path, source: Path, directory: str) -> None:
        run(["mcopy", "-i", image, source, f"::{directory}/{source.name}"])


def esp_image_size(manifest: ArtifactManifest) -> int:
    """Size in MiB of a FAT image that can hold everything in the manifest."""
    return round_up(manifest.size(), 1024**2) // 1024**2 + ESP_SAFETY_MARGIN_MIB


def make_esp_image(manifest: ArtifactManifest, image: Path, formatter: ImageFormatter) -> Path:
    size = esp_image_size(manifest)

    with complete_step(f"Creating {size}M EFI system partition image {image.name}"):
        formatter.allocate(image, size)
        formatter.format(image)

        for directory, files in manifest:
            logging.debug(f"Creating directory {directory} in {image.name}")
            formatter.mkdir(image, directory)

            for f in files:
                logging.debug(f"Copying {f} to {directory} in {image.name}")
                formatter.copy(image, f, directory)

    return image
