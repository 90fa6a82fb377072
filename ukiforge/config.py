# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import dataclasses
import enum
import os
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import Callable, Optional, TypeVar, Union

from ukiforge.architecture import Architecture
from ukiforge.log import Style, die
from ukiforge.util import StrEnum

__version__ = "1.0"

SE = TypeVar("SE", bound=StrEnum)

BASE_CMDLINE = (
    "console=ttyS0 console=tty1 net.ifnames=1 rd.immucore.oemlabel=COS_OEM rd.immucore.debug "
    "rd.immucore.oemtimeout=2 rd.immucore.uki selinux=0"
)
INSTALL_MODE = "install-mode"


class Verb(StrEnum):
    build = enum.auto()
    genkey = enum.auto()


class OutputFormat(StrEnum):
    uki = enum.auto()
    iso = enum.auto()
    container = enum.auto()


class Compression(StrEnum):
    # fmt: off
    zstd = enum.auto()
    zst  = zstd
    gz   = enum.auto()
    gzip = gz
    # fmt: on

    @classmethod
    def _missing_(cls, value: object) -> Optional["Compression"]:
        # Aliases share the canonical value, so resolve them by name.
        return cls.__members__.get(value) if isinstance(value, str) else None

    def extension(self) -> str:
        return {Compression.zstd: "zst"}.get(self, str(self))


class SecureBootEnroll(StrEnum):
    off = enum.auto()
    manual = enum.auto()
    if_safe = enum.auto()
    force = enum.auto()


def try_parse_boolean(s: str) -> Optional[bool]:
    "Parse 1/true/yes/y/t/on as true and 0/false/no/n/f/off/None as false"

    s_l = s.lower()
    if s_l in {"1", "true", "yes", "y", "t", "on", "always"}:
        return True

    if s_l in {"0", "false", "no", "n", "f", "off", "never"}:
        return False

    return None


def parse_boolean(s: str) -> bool:
    value = try_parse_boolean(s)

    if value is None:
        die(f"Invalid boolean literal: {s!r}")

    return value


def make_enum_parser(type: type[SE]) -> Callable[[str], SE]:
    def parse_enum(value: str) -> SE:
        try:
            return type(value)
        except ValueError:
            die(f"'{value}' is not a valid {type.__name__}")

    return parse_enum


def parse_path(value: str) -> Path:
    return Path(value).absolute()


def parse_days(value: str) -> int:
    try:
        days = int(value)
    except ValueError:
        die(f"Invalid number of days: {value!r}")

    if days <= 0:
        die(f"Number of days must be positive, got {days}")

    return days


@dataclasses.dataclass(frozen=True)
class LoaderConfig:
    boot_branding: str = "Kairos"
    include_version: bool = False
    include_cmdline: bool = False
    secure_boot_enroll: SecureBootEnroll = SecureBootEnroll.if_safe
    default_entry: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class Args:
    verb: Verb
    debug: bool
    tool_timeout: float


@dataclasses.dataclass(frozen=True)
class Config:
    rootfs: Path
    output_dir: Path
    keys_dir: Path
    output_format: OutputFormat = OutputFormat.uki
    name: str = "kairos"
    extra_cmdlines: list[str] = dataclasses.field(default_factory=list)
    extend_cmdline: str = ""
    single_efi_cmdlines: list[str] = dataclasses.field(default_factory=list)
    architecture: Architecture = dataclasses.field(default_factory=Architecture.native)
    support_dir: Path = Path("/usr/kairos")
    efi_size_warn: int = 1024
    compression: Compression = Compression.zstd
    overlay_rootfs: Optional[Path] = None
    overlay_iso: Optional[Path] = None
    iso_label: str = "UKI_ISO_INSTALL"
    iso_bios_boot: Optional[Path] = None
    iso_mbr: Optional[Path] = None
    loader: LoaderConfig = LoaderConfig()

    def output_name(self, version: str) -> str:
        return {
            OutputFormat.iso:       f"{self.name}_{version}.iso",
            OutputFormat.container: f"{self.name}_uki_{version}.tar",
        }.get(self.output_format, "")  # fmt: skip


@dataclasses.dataclass(frozen=True)
class KeyGenConfig:
    name: str
    output_dir: Path
    expiration_days: int = 365
    vendor_certs: bool = True
    # None selects the Microsoft certificates shipped with ukiforge.
    vendor_certs_dir: Optional[Path] = None
    custom_cert_dir: Optional[Path] = None


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ukiforge",
        description="Assemble signed Unified Kernel Image artifacts",
        # the synopsis below is supposed to be indented by two spaces
        usage="\n  "
        + textwrap.dedent("""\
              ukiforge [options…] {b}build{e}  ROOTFS
                ukiforge [options…] {b}genkey{e} NAME
                ukiforge -h | --help
                ukiforge --version
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
    )

    parser.add_argument("--version", action="version", version="%(prog)s " + __version__)
    parser.add_argument("--debug", help="Turn on debugging output", action="store_true", default=False)
    parser.add_argument(
        "--tool-timeout",
        help="Seconds after which an external tool invocation is aborted",
        type=float,
        default=600.0,
        metavar="SECONDS",
    )
    parser.add_argument("verb", type=make_enum_parser(Verb), choices=list(Verb), help=argparse.SUPPRESS)
    parser.add_argument("target", help=argparse.SUPPRESS)

    group = parser.add_argument_group("Output options")
    group.add_argument(
        "-o",
        "--output-dir",
        type=parse_path,
        default=None,
        help="Directory to place the produced artifacts or key set in",
        metavar="PATH",
    )
    group.add_argument(
        "-t",
        "--output-format",
        type=make_enum_parser(OutputFormat),
        choices=list(OutputFormat),
        default=OutputFormat.uki,
        help="Terminal form of the produced artifacts",
    )
    group.add_argument("--name", default="kairos", help="Base name of produced artifacts")
    group.add_argument(
        "--compression",
        type=make_enum_parser(Compression),
        choices=list(Compression),
        default=Compression.zstd,
        help="Compression of the initrd",
    )
    group.add_argument("--iso-label", default="UKI_ISO_INSTALL", help="Volume label of the ISO")
    group.add_argument("--iso-bios-boot", type=parse_path, default=None, metavar="PATH",
                       help="isolinux.bin loaded by the BIOS El Torito entry of the ISO")  # fmt: skip
    group.add_argument(
        "--iso-mbr",
        type=parse_path,
        default=None,
        help="MBR template used to make the ISO bootable on BIOS systems",
        metavar="PATH",
    )
    group.add_argument("--overlay-rootfs", type=parse_path, default=None, metavar="PATH",
                       help="Directory to copy over the root filesystem")  # fmt: skip
    group.add_argument("--overlay-iso", type=parse_path, default=None, metavar="PATH",
                       help="Directory to copy into the root of the ISO")  # fmt: skip

    group = parser.add_argument_group("Boot options")
    group.add_argument("-k", "--keys", dest="keys_dir", type=parse_path, default=None, metavar="PATH",
                       help="Directory holding the secure boot key set")  # fmt: skip
    group.add_argument("-c", "--extra-cmdline", dest="extra_cmdlines", action="append", default=[],
                       metavar="CMDLINE",
                       help="Build an extra entry with these kernel parameters")  # fmt: skip
    group.add_argument("-x", "--extend-cmdline", default="", metavar="CMDLINE",
                       help="Append these kernel parameters to every entry")  # fmt: skip
    group.add_argument("-s", "--single-efi-cmdline", dest="single_efi_cmdlines", action="append", default=[],
                       metavar="TITLE: CMDLINE",
                       help="Build an extra entry with a custom title")  # fmt: skip
    group.add_argument("--architecture", type=Architecture.from_uname, default=None,
                       help="Architecture to build for")  # fmt: skip
    group.add_argument("--support-dir", type=parse_path, default=Path("/usr/kairos"), metavar="PATH",
                       help="Directory holding the systemd-boot and systemd-stub binaries")  # fmt: skip
    group.add_argument("--efi-size-warn", type=int, default=1024, metavar="MIB",
                       help="Warn when an EFI binary exceeds this size")  # fmt: skip
    group.add_argument("--boot-branding", default="Kairos", help="Title of the boot entries")
    group.add_argument("--include-version-in-config", type=parse_boolean, default=False, metavar="BOOL",
                       help="Show the OS version in the boot entries")  # fmt: skip
    group.add_argument("--include-cmdline-in-config", type=parse_boolean, default=False, metavar="BOOL",
                       help="Show the extra kernel parameters in the boot entries")  # fmt: skip
    group.add_argument(
        "--secure-boot-enroll",
        type=make_enum_parser(SecureBootEnroll),
        choices=list(SecureBootEnroll),
        default=SecureBootEnroll.if_safe,
        help="Firmware key enrollment policy",
    )
    group.add_argument("--default-entry", default=None, help="Boot entry selected by default")

    group = parser.add_argument_group("Key generation options")
    group.add_argument("-e", "--expiration-in-days", dest="expiration_days", type=parse_days, default=365,
                       metavar="DAYS", help="Validity of the generated certificates")  # fmt: skip
    group.add_argument("--skip-microsoft-certs-I-KNOW-WHAT-IM-DOING", dest="skip_vendor_certs",
                       action="store_true", default=False,
                       help="Do not add the Microsoft certificates to db and KEK")  # fmt: skip
    group.add_argument("--vendor-certs-dir", type=parse_path, default=None, metavar="PATH",
                       help="Vendor certificates to use instead of the bundled ones")  # fmt: skip
    group.add_argument("--custom-cert-dir", type=parse_path, default=None, metavar="PATH",
                       help="Directory holding exported db and KEK variables to merge")  # fmt: skip

    return parser


def parse_config(argv: Sequence[str] = ()) -> tuple[Args, Union[Config, KeyGenConfig]]:
    ns = create_argument_parser().parse_args(argv)
    args = Args(verb=ns.verb, debug=ns.debug, tool_timeout=ns.tool_timeout)

    if args.verb == Verb.genkey:
        return args, KeyGenConfig(
            name=ns.target,
            output_dir=ns.output_dir or Path.cwd() / "keys",
            expiration_days=ns.expiration_days,
            vendor_certs=not ns.skip_vendor_certs,
            vendor_certs_dir=ns.vendor_certs_dir,
            custom_cert_dir=ns.custom_cert_dir,
        )

    if not ns.keys_dir:
        die("No secure boot keys specified", hint="Use --keys to point to a directory created by genkey")

    rootfs = parse_path(ns.target)
    if not rootfs.is_dir():
        die(f"Root filesystem {rootfs} is not a directory")

    return args, Config(
        rootfs=rootfs,
        output_dir=ns.output_dir or Path.cwd(),
        keys_dir=ns.keys_dir,
        output_format=ns.output_format,
        name=ns.name,
        extra_cmdlines=ns.extra_cmdlines,
        extend_cmdline=ns.extend_cmdline,
        single_efi_cmdlines=ns.single_efi_cmdlines,
        architecture=ns.architecture or Architecture.native(),
        support_dir=ns.support_dir,
        efi_size_warn=ns.efi_size_warn,
        compression=ns.compression,
        overlay_rootfs=ns.overlay_rootfs,
        overlay_iso=ns.overlay_iso,
        iso_label=ns.iso_label,
        iso_bios_boot=ns.iso_bios_boot,
        iso_mbr=ns.iso_mbr,
        loader=LoaderConfig(
            boot_branding=ns.boot_branding,
            include_version=ns.include_version_in_config,
            include_cmdline=ns.include_cmdline_in_config,
            secure_boot_enroll=ns.secure_boot_enroll,
            default_entry=ns.default_entry,
        ),
    )


def workspace_dir() -> Path:
    return Path(os.getenv("TMPDIR", "/var/tmp"))
