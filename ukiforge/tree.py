# SPDX-License-Identifier: LGPL-2.1-or-later

import os
from pathlib import Path

from ukiforge.log import log_step
from ukiforge.run import run
from ukiforge.util import PathString


def copy_tree(src: Path, dst: Path, *, preserve: bool = True, dereference: bool = False) -> Path:
    src = src.absolute()
    dst = dst.absolute()

    attrs = "mode,links"
    if preserve:
        attrs += ",timestamps"
        # Only root can hand out files to other users.
        if os.getuid() == 0:
            attrs += ",ownership"

    cmdline: list[PathString] = [
        "cp",
        "--recursive",
        "--dereference" if dereference else "--no-dereference",
        f"--preserve={attrs}",
        "--reflink=auto",
        src,
        dst,
    ]

    # If the source and destination are both directories, we want to merge the source directory with the
    # destination directory. If the source if a file and the destination is a directory, we want to copy
    # the source inside the directory.
    if src.is_dir():
        cmdline += ["--no-target-directory"]

    run(cmdline)

    return dst


def overlay_tree(overlay: Path, dst: Path) -> None:
    log_step(f"Adding files from {overlay} to {dst.name}")
    copy_tree(overlay, dst, preserve=False)


def normalize_permissions(root: Path) -> None:
    """Make everything below root world readable, and directories and executables world executable."""
    for dirpath, dirnames, filenames in os.walk(root):
        os.chmod(dirpath, 0o755)

        for name in filenames:
            p = Path(dirpath) / name
            if p.is_symlink():
                continue
            p.chmod(0o755 if os.access(p, os.X_OK) else 0o644)
