# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Union

from ukiforge.archive import compressor_command
from ukiforge.bootloader import (
    build_uki_entries,
    finalize_cmdline_variants,
    find_support_files,
    sign_fallback_loader,
    write_loader_conf,
)
from ukiforge.config import Args, Config, KeyGenConfig, OutputFormat, Verb, workspace_dir
from ukiforge.context import Context, Tools
from ukiforge.esp import make_esp_image
from ukiforge.initrd import build_initramfs, extract_kernel, prepare_rootfs
from ukiforge.iso import ESP_IMAGE_NAME, BiosBoot, assemble_iso, find_bios_boot
from ukiforge.keys import CertAuthority, OpenSSL, check_key_set, generate_key_set
from ukiforge.log import complete_step, die, log_notice
from ukiforge.manifest import artifact_manifest
from ukiforge.oci import package_container, package_tree
from ukiforge.run import find_binary
from ukiforge.tree import copy_tree, overlay_tree
from ukiforge.util import read_env_file, unique


def check_tools(binaries: Sequence[tuple[str, ...]]) -> None:
    missing = [alternatives[0] for alternatives in binaries if not find_binary(*alternatives)]
    if missing:
        die(
            f"Could not find {', '.join(repr(m) for m in missing)} which "
            f"{'is' if len(missing) == 1 else 'are'} required to build",
            hint="Install the missing tools or make sure they are in $PATH",
        )


def required_binaries(config: Config, tools: Tools) -> list[tuple[str, ...]]:
    binaries = [("cp",), (os.fspath(compressor_command(config.compression)[0]),), *tools.binaries()]

    if config.output_format == OutputFormat.container:
        binaries += [("tar",)]

    return unique(binaries)


def check_inputs(config: Config, tools: Tools) -> tuple[Path, Path, Optional[BiosBoot]]:
    """
    Verify everything a build needs before touching the filesystem. Returns the stub, the boot loader
    and, for ISO output, the BIOS boot files.
    """
    check_tools(required_binaries(config, tools))
    stub, boot = find_support_files(config.support_dir, config.architecture)
    check_key_set(config.keys_dir)

    bios = None
    if config.output_format == OutputFormat.iso:
        bios = find_bios_boot(config.iso_bios_boot, config.iso_mbr)

    for overlay in (config.overlay_rootfs, config.overlay_iso):
        if overlay and not overlay.is_dir():
            die(f"Overlay directory {overlay} does not exist")

    return stub, boot, bios


def find_os_release(root: Path) -> Path:
    for candidate in ("etc/os-release", "usr/lib/os-release"):
        p = root / candidate

        # Resolve symlinks within the root, an absolute link must not escape to the host.
        for _ in range(8):
            if not p.is_symlink():
                break
            target = Path(os.readlink(p))
            p = root / target.relative_to("/") if target.is_absolute() else p.parent / target

        if p.is_file():
            return p

    die(f"No os-release file found in {root}")


def find_version(os_release: Path) -> str:
    env = read_env_file(os_release)

    if not (version := env.get("KAIROS_RELEASE") or env.get("VERSION_ID")):
        die(
            f"Could not find the release version in {os_release}",
            hint="os-release needs to set KAIROS_RELEASE or VERSION_ID",
        )

    return version


def build_uki(config: Config, *, tools: Optional[Tools] = None) -> Path:
    """
    Build the signed UKIs, boot loader and enrollment files from config.rootfs and produce them as a
    directory tree, an ISO or a container image in config.output_dir. Returns the produced artifact.
    """
    tools = tools or Tools()

    with complete_step("Checking build prerequisites"):
        stub, systemd_boot, bios = check_inputs(config, tools)
        variants = finalize_cmdline_variants(config)

    # Everything below the workspace is removed when the stack unwinds, whether the build succeeded,
    # failed or was interrupted.
    with contextlib.ExitStack() as stack:
        workspace = Path(
            stack.enter_context(
                tempfile.TemporaryDirectory(dir=workspace_dir(), prefix="ukiforge-workspace-")
            )
        )
        context = Context(config, workspace=workspace, tools=tools)

        with complete_step("Extracting root filesystem"):
            copy_tree(config.rootfs, context.root)
            context.root.chmod(0o755)
            if config.overlay_rootfs:
                overlay_tree(config.overlay_rootfs, context.root)

        os_release = context.staging / "os-release"
        shutil.copyfile(find_os_release(context.root), os_release)
        version = find_version(os_release)
        logging.info(f"Building version {version}")

        prepare_rootfs(context.root)
        kernel = extract_kernel(context.root, context.staging / "vmlinuz")
        initrd = build_initramfs(context.root, context.staging, config.compression)

        entries = build_uki_entries(
            variants,
            kernel=kernel,
            initrd=initrd,
            os_release=os_release,
            stub=stub,
            keys=config.keys_dir,
            staging=context.staging,
            composer=tools.composer,
            loader=config.loader,
            version=version,
            efi_size_warn=config.efi_size_warn,
        )

        loader_conf = write_loader_conf(context.staging, config.loader, variants)
        fallback = sign_fallback_loader(
            tools.signer,
            systemd_boot,
            keys=config.keys_dir,
            staging=context.staging,
            architecture=config.architecture,
        )

        manifest = artifact_manifest(
            entries=entries,
            fallback_loader=fallback,
            loader_conf=loader_conf,
            keys=config.keys_dir,
        )

        config.output_dir.mkdir(parents=True, exist_ok=True)

        if config.output_format == OutputFormat.iso:
            assert bios
            make_esp_image(manifest, context.iso / ESP_IMAGE_NAME, tools.formatter)
            if config.overlay_iso:
                overlay_tree(config.overlay_iso, context.iso)

            output = assemble_iso(
                context.iso,
                config.output_dir / config.output_name(version),
                master=tools.iso_master,
                label=config.iso_label,
                bios=bios,
            )
        elif config.output_format == OutputFormat.container:
            output = package_container(
                manifest,
                context.workspace,
                config.output_dir / config.output_name(version),
                architecture=config.architecture,
                tag=f"{config.name}_uki:{version}",
            )
        else:
            output = package_tree(manifest, config.output_dir)

    log_notice(f"Done building {config.output_format} at {output}")
    return output


def run_genkey(config: KeyGenConfig, *, ca: Optional[CertAuthority] = None) -> Path:
    if ca is None:
        check_tools(OpenSSL.binaries)

    try:
        return generate_key_set(config, ca=ca)
    except FileNotFoundError as e:
        die(f"{e.filename}: {e.strerror}")


def run_verb(args: Args, config: Union[Config, KeyGenConfig]) -> None:
    if args.verb == Verb.genkey:
        assert isinstance(config, KeyGenConfig)
        run_genkey(config)
    elif args.verb == Verb.build:
        assert isinstance(config, Config)
        build_uki(config)
