# SPDX-License-Identifier: LGPL-2.1-or-later

import bisect
import logging
import shutil
from collections.abc import Iterator, Sequence
from pathlib import Path, PurePosixPath

from ukiforge.util import flatten, umask


class ArtifactManifest:
    """
    Target directories of the produced tree and the files that go into each of them.

    Entries are kept sorted by path components, which puts every directory after all of its parents.
    Adding a directory implicitly adds its parents, so walking the manifest in order always creates a
    directory before anything inside it.
    """

    def __init__(self) -> None:
        self._entries: list[tuple[PurePosixPath, list[Path]]] = []

    def _index(self, directory: PurePosixPath) -> int:
        keys = [d.parts for d, _ in self._entries]
        i = bisect.bisect_left(keys, directory.parts)
        if i == len(self._entries) or self._entries[i][0] != directory:
            self._entries.insert(i, (directory, []))
        return i

    def add(self, directory: str, files: Sequence[Path] = ()) -> None:
        d = PurePosixPath(directory.strip("/"))
        if d.is_absolute() or ".." in d.parts or d == PurePosixPath("."):
            raise ValueError(f"Invalid manifest directory {directory!r}")

        for parent in reversed(list(d.parents)[:-1]):
            self._index(parent)

        entry = self._entries[self._index(d)][1]
        for f in files:
            if any(e.name == f.name for e in entry):
                raise ValueError(f"Duplicate file name {f.name} in {d}")
            entry.append(f)

    def __iter__(self) -> Iterator[tuple[str, list[Path]]]:
        return ((str(d), list(files)) for d, files in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def directories(self) -> list[str]:
        return [str(d) for d, _ in self._entries]

    def files(self) -> list[Path]:
        return flatten(files for _, files in self._entries)

    def size(self) -> int:
        return sum(f.stat().st_size for f in self.files())

    def copy_to(self, root: Path) -> None:
        """Materialize the manifest below root, keeping only the base name of every source file."""
        with umask(~0o755):
            root.mkdir(parents=True, exist_ok=True)

        for directory, files in self:
            with umask(~0o755):
                (root / directory).mkdir(exist_ok=True)

            for f in files:
                dst = root / directory / f.name
                logging.debug(f"Copying {f} to {dst}")
                shutil.copyfile(f, dst)
                # Firmware doesn't care about permission bits but tools reading the tree later do.
                dst.chmod(0o644)


def artifact_manifest(
    *,
    entries: Sequence[tuple[Path, Path]],
    fallback_loader: Path,
    loader_conf: Path,
    keys: Path,
) -> ArtifactManifest:
    manifest = ArtifactManifest()

    manifest.add("EFI")
    manifest.add("EFI/BOOT", [fallback_loader])
    manifest.add("EFI/kairos", [efi for efi, _ in entries])
    manifest.add("EFI/tools")
    manifest.add("loader", [loader_conf])
    manifest.add("loader/entries", [conf for _, conf in entries])
    manifest.add("loader/keys")
    manifest.add(
        "loader/keys/auto",
        [keys / f"{role}.{ext}" for ext in ("der", "auth") for role in ("PK", "KEK", "db")],
    )

    return manifest
