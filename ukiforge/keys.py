# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import datetime
import errno
import logging
import os
import tempfile
import textwrap
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Protocol

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

import ukiforge.resources
from ukiforge.config import KeyGenConfig
from ukiforge.efi import (
    EFI_CERT_X509_GUID,
    MICROSOFT_OWNER_GUID,
    SignatureDatabase,
    read_signature_database,
    sign_variable,
)
from ukiforge.log import complete_step, die, log_step
from ukiforge.run import run
from ukiforge.util import resource_path, umask

KEY_ROLES = ("PK", "KEK", "db")
# PK is the root of the hierarchy and only ever holds its owner's certificate.
EXTENSIBLE_ROLES = ("KEK", "db")
PCR_KEY = "tpm2-pcr-private.pem"

# Files the UKI builder needs from a key set.
REQUIRED_KEY_FILES = (
    "PK.der", "PK.auth",
    "KEK.der", "KEK.auth",
    "db.der", "db.auth", "db.key", "db.pem",
    PCR_KEY,
)  # fmt: skip


class CertAuthority(Protocol):
    def generate_certificate(self, name: str, days: int, *, key: Path, cert: Path) -> None: ...

    def export_der(self, cert: Path, der: Path) -> None: ...

    def generate_pcr_key(self, key: Path) -> None: ...


class OpenSSL:
    binaries = (("openssl",),)
    keylength = 2048

    def generate_certificate(self, name: str, days: int, *, key: Path, cert: Path) -> None:
        run(
            [
                "openssl",
                "req",
                "-new",
                "-x509",
                "-newkey", f"rsa:{self.keylength}",
                "-keyout", key,
                "-out", cert,
                "-days", str(days),
                "-subj", f"/CN={name}/",
                "-nodes",
            ],
            env=dict(OPENSSL_CONF="/dev/null"),
        )  # fmt: skip

    def export_der(self, cert: Path, der: Path) -> None:
        run(
            ["openssl", "x509", "-outform", "DER", "-in", cert, "-out", der],
            env=dict(OPENSSL_CONF="/dev/null"),
        )

    def generate_pcr_key(self, key: Path) -> None:
        run(
            ["openssl", "genrsa", "-out", key, str(self.keylength)],
            env=dict(OPENSSL_CONF="/dev/null"),
        )


def load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    if data.startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)

    return x509.load_der_x509_certificate(data)


def load_private_key(path: Path) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        die(f"{path} is not an RSA private key")

    return key


def load_cert_dir(directory: Path, role: str, owner: uuid.UUID) -> SignatureDatabase:
    """Collect every certificate in <directory>/<role>/ into a signature database, sorted by file name."""
    db = SignatureDatabase()

    d = directory / role
    if not d.is_dir():
        return db

    for p in sorted(d.iterdir()):
        if not p.is_file():
            continue

        db.append_certificate(owner, load_certificate(p))

    return db


def prepare_custom_certs(custom_cert_dir: Path, scratch: Path) -> Path:
    """
    Convert exported db and KEK variables into one DER file per certificate below
    <scratch>/custom/<role>/ and return <scratch>/custom.
    """
    if not custom_cert_dir.is_dir():
        raise FileNotFoundError(
            errno.ENOENT, "Custom certificate directory does not exist", os.fspath(custom_cert_dir)
        )

    for role in EXTENSIBLE_ROLES:
        p = custom_cert_dir / role
        if not p.is_file():
            raise FileNotFoundError(errno.ENOENT, f"Custom {role} export not found", os.fspath(p))

    out = scratch / "custom"

    for role in EXTENSIBLE_ROLES:
        with complete_step(f"Converting custom certificates ({role})"):
            (out / role).mkdir(parents=True, exist_ok=True)

            for entry in read_signature_database((custom_cert_dir / role).read_bytes()):
                logging.info(f"Signature owner: {entry.owner}")

                if entry.type != EFI_CERT_X509_GUID:
                    logging.warning(f"Signature type {entry.type_name()} is not supported, skipping")
                    continue

                try:
                    cert = entry.certificate()
                except ValueError as e:
                    logging.warning(f"Skipping invalid certificate owned by {entry.owner}: {e}")
                    continue

                (out / role / f"{role}{cert.serial_number}").write_bytes(
                    cert.public_bytes(serialization.Encoding.DER)
                )

    return out


def build_signature_database(
    role: str,
    cert: x509.Certificate,
    owner: uuid.UUID,
    *,
    vendor_certs_dir: Optional[Path] = None,
    custom_certs_dir: Optional[Path] = None,
) -> SignatureDatabase:
    db = SignatureDatabase()
    db.append_certificate(owner, cert)

    if role not in EXTENSIBLE_ROLES:
        return db

    if vendor_certs_dir:
        db.extend(load_cert_dir(vendor_certs_dir, role, MICROSOFT_OWNER_GUID))

    if custom_certs_dir:
        db.extend(load_cert_dir(custom_certs_dir, role, owner))

    return db


def install_key_set(staging: Path, output: Path, files: Sequence[str]) -> None:
    with umask(~0o700):
        output.mkdir(parents=True, exist_ok=True)

    for f in files:
        os.replace(staging / f, output / f)


def generate_key_set(config: KeyGenConfig, *, ca: Optional[CertAuthority] = None) -> Path:
    """
    Generate the PK, KEK and db keys, certificates and signed signature databases plus the PCR
    signing key into config.output_dir.

    Everything is generated in a scratch directory first and only moved into place once every role
    was generated successfully, so a failure never leaves a partial key set behind.
    """
    ca = ca or OpenSSL()
    expiration_date = datetime.date.today() + datetime.timedelta(config.expiration_days)

    if config.vendor_certs and config.vendor_certs_dir and not config.vendor_certs_dir.is_dir():
        die(
            f"Vendor certificate directory {config.vendor_certs_dir} does not exist",
            hint="Drop --vendor-certs-dir to use the bundled Microsoft certificates",
        )

    if not config.vendor_certs:
        logging.warning(
            "Not including the Microsoft certificates, the keys will not boot Microsoft signed binaries"
        )

    config.output_dir.parent.mkdir(parents=True, exist_ok=True)

    with contextlib.ExitStack() as stack:
        vendor: Optional[Path] = None
        if config.vendor_certs:
            vendor = config.vendor_certs_dir or (
                stack.enter_context(resource_path(ukiforge.resources)) / "vendor-certs"
            )

        staging = Path(
            stack.enter_context(
                tempfile.TemporaryDirectory(dir=config.output_dir.parent, prefix=".ukiforge-keys-")
            )
        )
        scratch = staging / "scratch"
        scratch.mkdir()

        custom = prepare_custom_certs(config.custom_cert_dir, scratch) if config.custom_cert_dir else None

        log_step(f"Generating keys rsa:{OpenSSL.keylength} for CN {config.name!r}.")
        logging.info(
            textwrap.dedent(
                f"""
                The keys will expire in {config.expiration_days} days ({expiration_date:%A %d. %B %Y}).
                Remember to roll them over to new ones before then.
                """
            )
        )

        # All roles share one owner so firmware shows them as belonging together.
        owner = uuid.uuid4()
        files: list[str] = []

        for role in KEY_ROLES:
            with complete_step(f"Generating {role} key"):
                key, pem, der = staging / f"{role}.key", staging / f"{role}.pem", staging / f"{role}.der"

                with umask(~0o600):
                    ca.generate_certificate(config.name, config.expiration_days, key=key, cert=pem)
                ca.export_der(pem, der)

                cert = load_certificate(pem)
                db = build_signature_database(
                    role,
                    cert,
                    owner,
                    vendor_certs_dir=vendor,
                    custom_certs_dir=custom,
                )
                logging.info(f"{role} signature database holds {len(db)} certificate(s)")

                auth = sign_variable(role, db, load_private_key(key), cert)

                (staging / f"{role}.esl").write_bytes(bytes(db))
                (staging / f"{role}.auth").write_bytes(bytes(auth))
                (staging / f"{role}.auth").chmod(0o644)

                files += [f"{role}.key", f"{role}.pem", f"{role}.der", f"{role}.esl", f"{role}.auth"]

        with complete_step("Generating PCR policy key"), umask(~0o600):
            ca.generate_pcr_key(staging / PCR_KEY)
            files += [PCR_KEY]

        install_key_set(staging, config.output_dir, files)

    log_step(f"Key set written to {config.output_dir}")
    return config.output_dir


def check_key_set(keys: Path) -> None:
    missing = [f for f in REQUIRED_KEY_FILES if not (keys / f).exists()]
    if missing:
        die(
            f"Key set in {keys} is incomplete, missing {', '.join(missing)}",
            hint="Generate a key set with the genkey verb",
        )
