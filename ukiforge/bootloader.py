# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Protocol

from ukiforge.architecture import Architecture
from ukiforge.config import BASE_CMDLINE, INSTALL_MODE, Config, LoaderConfig
from ukiforge.log import complete_step, die, log_step
from ukiforge.run import find_binary, run
from ukiforge.util import PathString, format_bytes

ARTIFACT_BASE_NAME = "artifact"


@dataclasses.dataclass(frozen=True)
class CmdlineVariant:
    title: str
    cmdline: str
    file_stem: str
    # The part of the cmdline the variant adds on top of the shared base, shown in the boot menu.
    extra: str = ""


def extra_cmdline(cmdline: str, base: str = BASE_CMDLINE) -> str:
    extra = cmdline.removeprefix(base).strip()
    return "" if extra == INSTALL_MODE else extra


def file_stem(cmdline: str, base: str = BASE_CMDLINE) -> str:
    """
    Derive the file name of a UKI and its boot entry from its kernel command line.

    The shared base cmdline and the install-mode marker are dropped so the default entry maps to the
    bare base name and every other entry is named after what it adds.
    """
    name = f"{ARTIFACT_BASE_NAME}_{extra_cmdline(cmdline, base).replace(' ', '_')}"
    return name.removesuffix("_")


def finalize_base_cmdline(config: Config) -> str:
    return " ".join(filter(None, [BASE_CMDLINE, config.extend_cmdline.strip()]))


def finalize_cmdline_variants(config: Config) -> list[CmdlineVariant]:
    base = finalize_base_cmdline(config)
    title = config.loader.boot_branding

    variants = [CmdlineVariant(title, f"{base} {INSTALL_MODE}", file_stem(f"{base} {INSTALL_MODE}", base))]

    for extra in config.extra_cmdlines:
        cmdline = f"{base} {extra.strip()}"
        variants += [CmdlineVariant(title, cmdline, file_stem(cmdline, base), extra_cmdline(cmdline, base))]

    for single in config.single_efi_cmdlines:
        t, sep, params = single.partition(":")
        if not sep or not t.strip():
            die(f"Invalid single EFI cmdline {single!r}", hint="Use the format 'Title: kernel parameters'")

        cmdline = " ".join(filter(None, [base, params.strip()]))
        title = t.strip()
        variants += [CmdlineVariant(title, cmdline, file_stem(cmdline, base), extra_cmdline(cmdline, base))]

    seen: dict[str, CmdlineVariant] = {}
    stems: dict[str, CmdlineVariant] = {}
    for v in variants:
        if v.cmdline in seen:
            logging.debug(f"Dropping boot entry {v.title!r}, {seen[v.cmdline].title!r} has the same cmdline")
            continue

        if v.file_stem in stems:
            die(f"Boot entries {stems[v.file_stem].title!r} and {v.title!r} both map to {v.file_stem}")

        seen[v.cmdline] = stems[v.file_stem] = v

    return list(seen.values())


class UkiComposer(Protocol):
    def compose(
        self,
        *,
        kernel: Path,
        initrd: Path,
        cmdline: str,
        os_release: Path,
        stub: Path,
        keys: Path,
        output: Path,
    ) -> None: ...


class Signer(Protocol):
    def sign(self, input: Path, output: Path, *, key: Path, cert: Path) -> None: ...


class Ukify:
    binaries = (("ukify", "/usr/lib/systemd/ukify"),)

    def binary(self) -> Path:
        ukify = find_binary("ukify", "/usr/lib/systemd/ukify")
        if not ukify:
            die("Could not find ukify")

        return ukify

    def compose(
        self,
        *,
        kernel: Path,
        initrd: Path,
        cmdline: str,
        os_release: Path,
        stub: Path,
        keys: Path,
        output: Path,
    ) -> None:
        # Older versions of systemd-stub expect the cmdline section to be null terminated. We can't
        # embed NUL terminators in argv so let's communicate the cmdline via a file instead.
        cmdline_file = output.parent / f"{output.stem}.cmdline"
        cmdline_file.write_text(f"{cmdline}\x00")

        cmd: list[PathString] = [
            self.binary(),
            "build",
            "--linux", kernel,
            "--initrd", initrd,
            "--cmdline", f"@{cmdline_file}",
            "--os-release", f"@{os_release}",
            "--stub", stub,
            "--secureboot-private-key", keys / "db.key",
            "--secureboot-certificate", keys / "db.pem",
            "--pcr-private-key", keys / "tpm2-pcr-private.pem",
            "--measure",
            "--output", output,
        ]  # fmt: skip

        try:
            run(cmd)
        finally:
            cmdline_file.unlink(missing_ok=True)


class SbSign:
    binaries = (("sbsign",),)

    def sign(self, input: Path, output: Path, *, key: Path, cert: Path) -> None:
        run(
            [
                "sbsign",
                "--key", key,
                "--cert", cert,
                "--output", output,
                input,
            ]
        )  # fmt: skip


def find_support_files(support_dir: Path, arch: Architecture) -> tuple[Path, Path]:
    """Returns the EFI stub and the systemd-boot binary for the architecture."""
    stub = support_dir / arch.systemd_stub_binary()
    boot = support_dir / arch.systemd_boot_binary()

    missing = [p for p in (stub, boot) if not p.is_file()]
    if missing:
        die(
            f"Missing support files for {arch}: {', '.join(str(p) for p in missing)}",
            hint="Install systemd-boot and systemd-stub for the target architecture",
        )

    return stub, boot


def check_efi_size(path: Path, warn_mib: int) -> None:
    size = path.stat().st_size
    if size > warn_mib * 1024**2:
        logging.warning(
            f"{path.name} is {format_bytes(size)} which exceeds {warn_mib}M, "
            "some firmware may fail to load it"
        )


def write_loader_entry(
    variant: CmdlineVariant,
    staging: Path,
    loader: LoaderConfig,
    version: Optional[str] = None,
) -> Path:
    conf = staging / f"{variant.file_stem}.conf"
    log_step(f"Creating the {conf.name} file")

    # systemd-boot ignores keys it doesn't know, so the cmdline key only documents what was added.
    lines = [f"title {variant.title}", f"efi /EFI/kairos/{variant.file_stem}.efi"]
    if loader.include_version and version:
        lines += [f"version {version}"]
    if loader.include_cmdline:
        lines += [f"cmdline {variant.extra}"]

    conf.write_text("\n".join(lines) + "\n")
    return conf


def default_loader_entry(loader: LoaderConfig, variants: Sequence[CmdlineVariant]) -> str:
    if loader.default_entry:
        entry = loader.default_entry.strip()
        return entry if entry.endswith(".conf") else f"{entry}.conf"

    return f"{variants[0].file_stem}.conf"


def write_loader_conf(staging: Path, loader: LoaderConfig, variants: Sequence[CmdlineVariant]) -> Path:
    conf = staging / "loader.conf"
    default = default_loader_entry(loader, variants)

    if default not in [f"{v.file_stem}.conf" for v in variants]:
        logging.warning(f"Default entry {default} does not match any of the built entries")

    conf.write_text(
        f"default {default}\n"
        "timeout 5\n"
        "console-mode max\n"
        "editor no\n"
        f"secure-boot-enroll {loader.secure_boot_enroll}\n"
    )
    return conf


def build_uki_entries(
    variants: Sequence[CmdlineVariant],
    *,
    kernel: Path,
    initrd: Path,
    os_release: Path,
    stub: Path,
    keys: Path,
    staging: Path,
    composer: UkiComposer,
    loader: LoaderConfig,
    version: Optional[str] = None,
    efi_size_warn: int = 1024,
) -> list[tuple[Path, Path]]:
    """Build one signed UKI and boot entry per variant, returning (efi, conf) pairs in variant order."""
    entries = []

    for variant in variants:
        with complete_step(f"Running ukify for {variant.file_stem}"):
            logging.debug(f"Kernel command line: {variant.cmdline}")
            efi = staging / f"{variant.file_stem}.efi"

            composer.compose(
                kernel=kernel,
                initrd=initrd,
                cmdline=variant.cmdline,
                os_release=os_release,
                stub=stub,
                keys=keys,
                output=efi,
            )

            if not efi.is_file():
                die(f"ukify did not produce {efi}")

            check_efi_size(efi, efi_size_warn)
            entries += [(efi, write_loader_entry(variant, staging, loader, version))]

    return entries


def sign_fallback_loader(
    signer: Signer,
    systemd_boot: Path,
    *,
    keys: Path,
    staging: Path,
    architecture: Architecture,
) -> Path:
    output = staging / architecture.fallback_loader()

    with complete_step(f"Signing {systemd_boot.name} as {output.name}"):
        signer.sign(systemd_boot, output, key=keys / "db.key", cert=keys / "db.pem")

    return output
