# SPDX-License-Identifier: LGPL-2.1-or-later

import enum
import platform

from ukiforge.log import die
from ukiforge.util import StrEnum


class Architecture(StrEnum):
    arm64  = enum.auto()
    x86_64 = enum.auto()

    @staticmethod
    def from_uname(s: str) -> "Architecture":
        a = {
            "aarch64"    : Architecture.arm64,
            "aarch64_be" : Architecture.arm64,
            "arm64"      : Architecture.arm64,
            "x86_64"     : Architecture.x86_64,
            "amd64"      : Architecture.x86_64,
        }.get(s)  # fmt: skip

        if not a:
            die(
                f"Architecture {s} is not supported",
                hint=f"Supported architectures are {', '.join(Architecture.values())}",
            )

        return a

    def to_efi(self) -> str:
        return {
            Architecture.x86_64 : "x64",
            Architecture.arm64  : "aa64",
        }[self]  # fmt: skip

    def to_oci(self) -> str:
        return {
            Architecture.x86_64 : "amd64",
            Architecture.arm64  : "arm64",
        }[self]  # fmt: skip

    def systemd_boot_binary(self) -> str:
        return f"systemd-boot{self.to_efi()}.efi"

    def systemd_stub_binary(self) -> str:
        return f"linux{self.to_efi()}.efi.stub"

    def fallback_loader(self) -> str:
        """The removable media path file name the firmware looks up on its own."""
        return f"BOOT{self.to_efi().upper()}.EFI"

    @classmethod
    def native(cls) -> "Architecture":
        return cls.from_uname(platform.machine())
