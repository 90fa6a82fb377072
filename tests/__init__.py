# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import datetime
import os
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Callable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ukiforge.architecture import Architecture
from ukiforge.iso import BiosBoot
from ukiforge.keys import REQUIRED_KEY_FILES
from ukiforge.util import PathString


def make_certificate(
    cn: str,
    *,
    days: int = 365,
    issuer: Optional[tuple[str, rsa.RSAPrivateKey]] = None,
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    if issuer:
        issuer_name, issuer_key = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer[0])]), issuer[1]
    else:
        issuer_name, issuer_key = subject, key
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
        .sign(issuer_key, hashes.SHA256())
    )

    return key, cert


def write_key(key: rsa.RSAPrivateKey, path: Path) -> None:
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )


class FakeCA:
    """Generates the same files as the openssl based implementation, without openssl."""

    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.fail_on = fail_on
        self.generated: list[str] = []

    def generate_certificate(self, name: str, days: int, *, key: Path, cert: Path) -> None:
        if self.fail_on and key.stem == self.fail_on:
            raise RuntimeError(f"Failed to generate {key.stem}")

        k, c = make_certificate(name, days=days)
        write_key(k, key)
        cert.write_bytes(c.public_bytes(serialization.Encoding.PEM))
        self.generated.append(key.stem)

    def export_der(self, cert: Path, der: Path) -> None:
        c = x509.load_pem_x509_certificate(cert.read_bytes())
        der.write_bytes(c.public_bytes(serialization.Encoding.DER))

    def generate_pcr_key(self, key: Path) -> None:
        write_key(rsa.generate_private_key(public_exponent=65537, key_size=2048), key)


@dataclasses.dataclass
class FakeComposer:
    calls: list[dict[str, object]] = dataclasses.field(default_factory=list)

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
        assert kernel.is_file()
        assert initrd.is_file()
        assert os_release.is_file()
        self.calls.append(dict(cmdline=cmdline, output=output, kernel=kernel.read_bytes()))
        output.write_bytes(b"MZ" + cmdline.encode())


@dataclasses.dataclass
class FakeSigner:
    calls: list[tuple[Path, Path]] = dataclasses.field(default_factory=list)

    def sign(self, input: Path, output: Path, *, key: Path, cert: Path) -> None:
        assert key.name == "db.key"
        assert cert.name == "db.pem"
        self.calls.append((input, output))
        shutil.copyfile(input, output)


@dataclasses.dataclass
class FakeFormatter:
    """Records what would end up in the FAT image and refuses to create orphaned directories like mmd."""

    size_mib: int = 0
    formatted: bool = False
    directories: list[str] = dataclasses.field(default_factory=list)
    files: dict[str, bytes] = dataclasses.field(default_factory=dict)

    def allocate(self, image: Path, size_mib: int) -> None:
        self.size_mib = size_mib
        image.write_bytes(b"")

    def format(self, image: Path) -> None:
        self.formatted = True

    def mkdir(self, image: Path, directory: str) -> None:
        assert self.formatted
        parent = str(Path(directory).parent)
        if parent != "." and parent not in self.directories:
            raise RuntimeError(f"mmd: cannot create {directory}, {parent} does not exist")
        self.directories.append(directory)

    def copy(self, image: Path, source: Path, directory: str) -> None:
        if directory not in self.directories:
            raise RuntimeError(f"mcopy: {directory} does not exist")
        self.files[f"{directory}/{source.name}"] = source.read_bytes()


@dataclasses.dataclass
class FakeIsoMaster:
    fail: bool = False
    calls: list[dict[str, object]] = dataclasses.field(default_factory=list)

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
        output.write_bytes(b"CD001" + label.encode())
        if self.fail:
            raise RuntimeError("xorriso failed")

        self.calls.append(
            dict(
                label=label,
                efi_image=efi_image,
                bios_image=bios_image,
                mbr=mbr,
                contents=sorted(p.name for p in source.iterdir()),
            )
        )


def make_rootfs(path: Path, version: str = "v3.0.0") -> Path:
    for d in ("boot", "etc", "usr/bin", "sys/kernel", "proc/1", "dev", "run/lock", "tmp"):
        (path / d).mkdir(parents=True, exist_ok=True)

    (path / "boot/vmlinuz-6.6.0").write_bytes(b"kernel")
    (path / "boot/vmlinuz").symlink_to("vmlinuz-6.6.0")
    (path / "boot/initrd").write_bytes(b"initrd")
    (path / "etc/os-release").write_text(f'NAME="Kairos"\nKAIROS_RELEASE="{version}"\nVERSION_ID=3.0\n')
    (path / "usr/bin/immucore").write_text("#!/bin/sh\n")
    (path / "usr/bin/immucore").chmod(0o755)
    (path / "sys/kernel/leak").write_text("runtime")
    (path / "proc/1/cmdline").write_text("runtime")
    (path / "run/lock/leak").write_text("runtime")

    return path


def make_key_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    for f in REQUIRED_KEY_FILES:
        (path / f).write_bytes(f.encode())

    return path


def make_support_dir(path: Path, architecture: Architecture = Architecture.x86_64) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / architecture.systemd_stub_binary()).write_bytes(b"stub")
    (path / architecture.systemd_boot_binary()).write_bytes(b"systemd-boot")

    return path


def make_syslinux_dir(path: Path) -> BiosBoot:
    path.mkdir(parents=True, exist_ok=True)
    (path / "isolinux.bin").write_bytes(b"isolinux")
    (path / "isohdpfx.bin").write_bytes(b"\0" * 432)

    return BiosBoot(image=path / "isolinux.bin", mbr=path / "isohdpfx.bin")


@dataclasses.dataclass
class RecordingRun:
    """Replaces run() in a module and records every command line instead of executing it."""

    calls: list[list[str]] = dataclasses.field(default_factory=list)
    # Called with each command line while any files it references still exist.
    inspect: Optional[Callable[[list[str]], None]] = None

    def __call__(self, cmdline: Sequence[PathString], **kwargs: object) -> subprocess.CompletedProcess[str]:
        cmd = [os.fspath(c) for c in cmdline]
        self.calls.append(cmd)
        if self.inspect:
            self.inspect(cmd)

        return subprocess.CompletedProcess(cmd, 0, "", "")
