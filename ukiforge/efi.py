# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Binary formats of UEFI secure boot variables.

A signature database is a sequence of EFI_SIGNATURE_LIST structures, each holding entries of a single
signature type and size. An authenticated variable (EFI_VARIABLE_AUTHENTICATION_2) prefixes such a
database with a timestamp and a PKCS#7 signature over the variable name, vendor, attributes, timestamp
and payload, which is what firmware expects when a key is enrolled.
"""

import dataclasses
import datetime
import struct
import uuid
from collections.abc import Iterator, Sequence
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs7

EFI_CERT_X509_GUID = uuid.UUID("a5c059a1-94e4-4aa7-87b5-ab155c2bf072")
EFI_CERT_SHA256_GUID = uuid.UUID("c1c41626-504c-4092-aca9-41f936934328")
EFI_CERT_TYPE_PKCS7_GUID = uuid.UUID("4aafd29d-68df-49ee-8aa9-347d375665a7")
EFI_GLOBAL_VARIABLE = uuid.UUID("8be4df61-93ca-11d2-aa0d-00e098032b8c")
EFI_IMAGE_SECURITY_DATABASE = uuid.UUID("d719b2cb-3d3a-4596-a3bc-dad00e67656f")
MICROSOFT_OWNER_GUID = uuid.UUID("77fa9abd-0359-4d32-bd60-28f4e78f784b")

EFI_VARIABLE_NON_VOLATILE = 0x00000001
EFI_VARIABLE_BOOTSERVICE_ACCESS = 0x00000002
EFI_VARIABLE_RUNTIME_ACCESS = 0x00000004
EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS = 0x00000020

SECURE_BOOT_VARIABLE_ATTRIBUTES = (
    EFI_VARIABLE_NON_VOLATILE
    | EFI_VARIABLE_BOOTSERVICE_ACCESS
    | EFI_VARIABLE_RUNTIME_ACCESS
    | EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS
)

WIN_CERT_REVISION_2_0 = 0x0200
WIN_CERT_TYPE_EFI_GUID = 0x0EF1

# SignatureType, SignatureListSize, SignatureHeaderSize, SignatureSize
SIGNATURE_LIST_HEADER = struct.Struct("<16sIII")
# Year, Month, Day, Hour, Minute, Second, Pad1, Nanosecond, TimeZone, Daylight, Pad2
EFI_TIME = struct.Struct("<HBBBBBBIhBB")
# dwLength, wRevision, wCertificateType, CertType
WIN_CERTIFICATE_UEFI_GUID = struct.Struct("<IHH16s")

SIGNATURE_TYPE_NAMES = {
    EFI_CERT_X509_GUID: "X509",
    EFI_CERT_SHA256_GUID: "SHA256",
}


class EfiFormatError(ValueError):
    pass


def variable_vendor(name: str) -> uuid.UUID:
    if name in ("PK", "KEK"):
        return EFI_GLOBAL_VARIABLE

    return EFI_IMAGE_SECURITY_DATABASE


@dataclasses.dataclass(frozen=True)
class SignatureEntry:
    type: uuid.UUID
    owner: uuid.UUID
    data: bytes

    def type_name(self) -> str:
        return SIGNATURE_TYPE_NAMES.get(self.type, str(self.type))

    def certificate(self) -> x509.Certificate:
        if self.type != EFI_CERT_X509_GUID:
            raise EfiFormatError(f"Signature of type {self.type_name()} is not a certificate")

        return x509.load_der_x509_certificate(self.data)


class SignatureDatabase:
    def __init__(self, entries: Sequence[SignatureEntry] = ()) -> None:
        self.entries: list[SignatureEntry] = []
        for e in entries:
            self.append(e.type, e.owner, e.data)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[SignatureEntry]:
        return iter(self.entries)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SignatureDatabase) and self.entries == other.entries

    def append(self, type: uuid.UUID, owner: uuid.UUID, data: bytes) -> None:
        entry = SignatureEntry(type, owner, data)
        if any(e.type == type and e.data == data for e in self.entries):
            return

        self.entries.append(entry)

    def append_certificate(self, owner: uuid.UUID, cert: Union[x509.Certificate, bytes]) -> None:
        if isinstance(cert, x509.Certificate):
            cert = cert.public_bytes(serialization.Encoding.DER)

        self.append(EFI_CERT_X509_GUID, owner, cert)

    def extend(self, other: "SignatureDatabase") -> None:
        for e in other:
            self.append(e.type, e.owner, e.data)

    def certificates(self) -> list[x509.Certificate]:
        return [e.certificate() for e in self.entries if e.type == EFI_CERT_X509_GUID]

    def lists(self) -> list[list[SignatureEntry]]:
        """Group consecutive entries of the same type and size into signature lists."""
        lists: list[list[SignatureEntry]] = []

        for e in self.entries:
            if lists and lists[-1][0].type == e.type and len(lists[-1][0].data) == len(e.data):
                lists[-1].append(e)
            else:
                lists.append([e])

        return lists

    def __bytes__(self) -> bytes:
        out = bytearray()

        for entries in self.lists():
            size = 16 + len(entries[0].data)
            out += SIGNATURE_LIST_HEADER.pack(
                entries[0].type.bytes_le,
                SIGNATURE_LIST_HEADER.size + size * len(entries),
                0,
                size,
            )
            for e in entries:
                out += e.owner.bytes_le + e.data

        return bytes(out)

    @classmethod
    def parse(cls, data: bytes) -> "SignatureDatabase":
        db = cls()
        offset = 0

        while offset < len(data):
            if len(data) - offset < SIGNATURE_LIST_HEADER.size:
                raise EfiFormatError(f"Truncated signature list header at offset {offset}")

            type, listsize, headersize, size = SIGNATURE_LIST_HEADER.unpack_from(data, offset)
            if listsize < SIGNATURE_LIST_HEADER.size + headersize or offset + listsize > len(data):
                raise EfiFormatError(f"Invalid signature list size {listsize} at offset {offset}")
            if size <= 16 or (listsize - SIGNATURE_LIST_HEADER.size - headersize) % size != 0:
                raise EfiFormatError(f"Invalid signature size {size} at offset {offset}")

            pos = offset + SIGNATURE_LIST_HEADER.size + headersize
            while pos < offset + listsize:
                owner = uuid.UUID(bytes_le=data[pos:pos + 16])
                # Append to the list directly, exports from firmware may legitimately contain duplicates.
                db.entries.append(SignatureEntry(uuid.UUID(bytes_le=type), owner, data[pos + 16:pos + size]))
                pos += size

            offset += listsize

        return db


def efi_time(timestamp: datetime.datetime) -> bytes:
    t = timestamp.astimezone(datetime.timezone.utc)
    # Time based authenticated variables require Pad1, Nanosecond, TimeZone, Daylight and Pad2 to be zero.
    return EFI_TIME.pack(t.year, t.month, t.day, t.hour, t.minute, t.second, 0, 0, 0, 0, 0)


def parse_efi_time(data: bytes) -> datetime.datetime:
    year, month, day, hour, minute, second, *_ = EFI_TIME.unpack_from(data)
    return datetime.datetime(year, month, day, hour, minute, second, tzinfo=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True)
class AuthenticatedVariable:
    timestamp: datetime.datetime
    signature: bytes
    payload: bytes

    def database(self) -> SignatureDatabase:
        return SignatureDatabase.parse(self.payload)

    def signers(self) -> list[x509.Certificate]:
        return pkcs7.load_der_pkcs7_certificates(self.signature)

    def __bytes__(self) -> bytes:
        return (
            efi_time(self.timestamp)
            + WIN_CERTIFICATE_UEFI_GUID.pack(
                WIN_CERTIFICATE_UEFI_GUID.size + len(self.signature),
                WIN_CERT_REVISION_2_0,
                WIN_CERT_TYPE_EFI_GUID,
                EFI_CERT_TYPE_PKCS7_GUID.bytes_le,
            )
            + self.signature
            + self.payload
        )

    @classmethod
    def parse(cls, data: bytes) -> "AuthenticatedVariable":
        if len(data) < EFI_TIME.size + WIN_CERTIFICATE_UEFI_GUID.size:
            raise EfiFormatError("Authenticated variable is too short")

        length, revision, certtype, guid = WIN_CERTIFICATE_UEFI_GUID.unpack_from(data, EFI_TIME.size)
        if revision != WIN_CERT_REVISION_2_0 or certtype != WIN_CERT_TYPE_EFI_GUID:
            raise EfiFormatError(f"Unsupported certificate revision {revision:#x} or type {certtype:#x}")
        if uuid.UUID(bytes_le=guid) != EFI_CERT_TYPE_PKCS7_GUID:
            raise EfiFormatError(f"Unsupported certificate type {uuid.UUID(bytes_le=guid)}")
        if length < WIN_CERTIFICATE_UEFI_GUID.size or EFI_TIME.size + length > len(data):
            raise EfiFormatError(f"Invalid certificate length {length}")

        start = EFI_TIME.size + WIN_CERTIFICATE_UEFI_GUID.size
        end = EFI_TIME.size + length

        return cls(
            timestamp=parse_efi_time(data),
            signature=data[start:end],
            payload=data[end:],
        )


def signed_data(
    name: str,
    payload: bytes,
    timestamp: datetime.datetime,
    attributes: int = SECURE_BOOT_VARIABLE_ATTRIBUTES,
) -> bytes:
    return (
        name.encode("utf-16-le")
        + variable_vendor(name).bytes_le
        + struct.pack("<I", attributes)
        + efi_time(timestamp)
        + payload
    )


def sign_variable(
    name: str,
    db: SignatureDatabase,
    key: rsa.RSAPrivateKey,
    cert: x509.Certificate,
    timestamp: Optional[datetime.datetime] = None,
) -> AuthenticatedVariable:
    timestamp = (timestamp or datetime.datetime.now(datetime.timezone.utc)).replace(microsecond=0)
    payload = bytes(db)

    signature = (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(signed_data(name, payload, timestamp))
        .add_signer(cert, key, hashes.SHA256())
        .sign(
            serialization.Encoding.DER,
            [
                pkcs7.PKCS7Options.DetachedSignature,
                pkcs7.PKCS7Options.NoAttributes,
                pkcs7.PKCS7Options.Binary,
            ],
        )
    )

    return AuthenticatedVariable(timestamp=timestamp, signature=signature, payload=payload)


def read_signature_database(data: bytes) -> SignatureDatabase:
    """
    Parse a signature database exported from firmware, which may or may not still carry its
    authentication header.
    """
    try:
        return AuthenticatedVariable.parse(data).database()
    except EfiFormatError:
        return SignatureDatabase.parse(data)
