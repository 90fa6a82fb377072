# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
from pathlib import Path

from ukiforge.bootloader import SbSign, Signer, UkiComposer, Ukify
from ukiforge.config import Config
from ukiforge.esp import ImageFormatter, MTools
from ukiforge.iso import IsoMaster, Xorriso


@dataclasses.dataclass(frozen=True)
class Tools:
    """The external programs a build shells out to."""

    composer: UkiComposer = dataclasses.field(default_factory=Ukify)
    signer: Signer = dataclasses.field(default_factory=SbSign)
    formatter: ImageFormatter = dataclasses.field(default_factory=MTools)
    iso_master: IsoMaster = dataclasses.field(default_factory=Xorriso)

    def binaries(self) -> list[tuple[str, ...]]:
        tools = [getattr(self, f.name) for f in dataclasses.fields(self)]
        return [b for tool in tools for b in getattr(tool, "binaries", ())]


class Context:
    """State related properties."""

    def __init__(self, config: Config, *, workspace: Path, tools: Tools) -> None:
        self.config = config
        self.workspace = workspace
        self.tools = tools

        self.staging.mkdir()
        self.iso.mkdir()

    @property
    def root(self) -> Path:
        return self.workspace / "root"

    @property
    def staging(self) -> Path:
        return self.workspace / "staging"

    @property
    def iso(self) -> Path:
        return self.workspace / "iso"
