# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
from pathlib import Path

import pytest

import ukiforge.bootloader
from ukiforge.architecture import Architecture
from ukiforge.bootloader import (
    CmdlineVariant,
    SbSign,
    Ukify,
    build_uki_entries,
    check_efi_size,
    extra_cmdline,
    file_stem,
    finalize_cmdline_variants,
    find_support_files,
    sign_fallback_loader,
    write_loader_conf,
    write_loader_entry,
)
from ukiforge.config import BASE_CMDLINE, INSTALL_MODE, Config, LoaderConfig, SecureBootEnroll

from . import FakeComposer, FakeSigner, RecordingRun, make_support_dir


def make_config(tmp_path: Path, **kwargs: object) -> Config:
    return Config(
        rootfs=tmp_path / "rootfs",
        output_dir=tmp_path / "output",
        keys_dir=tmp_path / "keys",
        architecture=Architecture.x86_64,
        **kwargs,  # type: ignore
    )


def test_file_stem_base() -> None:
    assert file_stem(f"{BASE_CMDLINE} {INSTALL_MODE}") == "artifact"
    assert file_stem(BASE_CMDLINE) == "artifact"
    assert file_stem(f"{BASE_CMDLINE}   ") == "artifact"


def test_file_stem_extra() -> None:
    assert file_stem(f"{BASE_CMDLINE} rd.debug") == "artifact_rd.debug"
    assert file_stem(f"{BASE_CMDLINE} rd.debug rd.shell") == "artifact_rd.debug_rd.shell"


def test_file_stem_deterministic() -> None:
    for cmdline in (BASE_CMDLINE, f"{BASE_CMDLINE} {INSTALL_MODE}", f"{BASE_CMDLINE} foo=bar baz"):
        assert file_stem(cmdline) == file_stem(cmdline)


def test_file_stem_custom_base() -> None:
    base = f"{BASE_CMDLINE} quiet"
    assert file_stem(f"{base} {INSTALL_MODE}", base) == "artifact"
    assert file_stem(f"{base} rd.debug", base) == "artifact_rd.debug"


def test_extra_cmdline() -> None:
    assert extra_cmdline(f"{BASE_CMDLINE} {INSTALL_MODE}") == ""
    assert extra_cmdline(f"{BASE_CMDLINE} rd.debug  ") == "rd.debug"


def test_cmdline_variants_default(tmp_path: Path) -> None:
    variants = finalize_cmdline_variants(make_config(tmp_path))

    assert variants == [CmdlineVariant("Kairos", f"{BASE_CMDLINE} {INSTALL_MODE}", "artifact")]


def test_cmdline_variants_extra(tmp_path: Path) -> None:
    config = make_config(tmp_path, extra_cmdlines=["rd.debug", "rd.debug", "  rd.shell  "])
    variants = finalize_cmdline_variants(config)

    assert [v.file_stem for v in variants] == ["artifact", "artifact_rd.debug", "artifact_rd.shell"]
    assert variants[1].cmdline == f"{BASE_CMDLINE} rd.debug"
    assert variants[1].extra == "rd.debug"
    assert variants[2].cmdline == f"{BASE_CMDLINE} rd.shell"


def test_cmdline_variants_extend(tmp_path: Path) -> None:
    config = make_config(tmp_path, extend_cmdline="quiet", extra_cmdlines=["rd.debug"])
    variants = finalize_cmdline_variants(config)

    assert variants[0].cmdline == f"{BASE_CMDLINE} quiet {INSTALL_MODE}"
    assert variants[0].file_stem == "artifact"
    assert variants[1].cmdline == f"{BASE_CMDLINE} quiet rd.debug"
    assert variants[1].file_stem == "artifact_rd.debug"


def test_cmdline_variants_single_efi(tmp_path: Path) -> None:
    config = make_config(tmp_path, single_efi_cmdlines=["Debug Shell: rd.debug rd.shell"])
    variants = finalize_cmdline_variants(config)

    assert len(variants) == 2
    assert variants[1].title == "Debug Shell"
    assert variants[1].cmdline == f"{BASE_CMDLINE} rd.debug rd.shell"
    assert variants[1].file_stem == "artifact_rd.debug_rd.shell"
    assert variants[1].extra == "rd.debug rd.shell"


def test_cmdline_variants_single_efi_invalid(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        finalize_cmdline_variants(make_config(tmp_path, single_efi_cmdlines=["no title here"]))


def test_cmdline_variants_single_efi_same_as_extra(tmp_path: Path) -> None:
    config = make_config(tmp_path, extra_cmdlines=["rd.debug"], single_efi_cmdlines=["Debug: rd.debug"])
    variants = finalize_cmdline_variants(config)

    assert [v.file_stem for v in variants] == ["artifact", "artifact_rd.debug"]
    assert variants[1].title == config.loader.boot_branding


def test_cmdline_variants_single_efi_titles_do_not_name_files(tmp_path: Path) -> None:
    config = make_config(tmp_path, single_efi_cmdlines=["A: foo", "a: bar", "rd.debug: foo"])
    variants = finalize_cmdline_variants(config)

    assert [(v.title, v.file_stem) for v in variants[1:]] == [("A", "artifact_foo"), ("a", "artifact_bar")]


def test_cmdline_variants_collision(tmp_path: Path) -> None:
    config = make_config(tmp_path, extra_cmdlines=["foo_bar"], single_efi_cmdlines=["Foo: foo bar"])
    with pytest.raises(SystemExit):
        finalize_cmdline_variants(config)


def test_loader_entry_minimal(tmp_path: Path) -> None:
    variant = CmdlineVariant("Kairos", f"{BASE_CMDLINE} rd.debug", "artifact_rd.debug", "rd.debug")
    conf = write_loader_entry(variant, tmp_path, LoaderConfig(), "v3.0.0")

    assert conf == tmp_path / "artifact_rd.debug.conf"
    assert conf.read_text() == "title Kairos\nefi /EFI/kairos/artifact_rd.debug.efi\n"


def test_loader_entry_version_and_cmdline(tmp_path: Path) -> None:
    variant = CmdlineVariant("Kairos", f"{BASE_CMDLINE} rd.debug", "artifact_rd.debug", "rd.debug")
    loader = LoaderConfig(boot_branding="Acme", include_version=True, include_cmdline=True)
    conf = write_loader_entry(variant, tmp_path, loader, "v3.0.0")

    assert conf.read_text() == (
        "title Kairos\n"
        "efi /EFI/kairos/artifact_rd.debug.efi\n"
        "version v3.0.0\n"
        "cmdline rd.debug\n"
    )
    assert BASE_CMDLINE not in conf.read_text()


def test_loader_entry_install_cmdline_is_blank(tmp_path: Path) -> None:
    variant = CmdlineVariant("Kairos", f"{BASE_CMDLINE} {INSTALL_MODE}", "artifact")
    conf = write_loader_entry(variant, tmp_path, LoaderConfig(include_cmdline=True))

    assert conf.read_text().splitlines()[-1] == "cmdline "


def test_loader_conf_default(tmp_path: Path) -> None:
    variants = [CmdlineVariant("Kairos", f"{BASE_CMDLINE} {INSTALL_MODE}", "artifact")]
    conf = write_loader_conf(tmp_path, LoaderConfig(), variants)

    assert conf.read_text() == (
        "default artifact.conf\n"
        "timeout 5\n"
        "console-mode max\n"
        "editor no\n"
        "secure-boot-enroll if-safe\n"
    )


def test_loader_conf_overrides(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    variants = [
        CmdlineVariant("Kairos", f"{BASE_CMDLINE} {INSTALL_MODE}", "artifact"),
        CmdlineVariant("Kairos", f"{BASE_CMDLINE} rd.debug", "artifact_rd.debug", "rd.debug"),
    ]
    loader = LoaderConfig(secure_boot_enroll=SecureBootEnroll.manual, default_entry="artifact_rd.debug")
    lines = write_loader_conf(tmp_path, loader, variants).read_text().splitlines()

    assert lines[0] == "default artifact_rd.debug.conf"
    assert lines[-1] == "secure-boot-enroll manual"

    with caplog.at_level(logging.WARNING):
        loader = LoaderConfig(default_entry="missing.conf")
        lines = write_loader_conf(tmp_path, loader, variants).read_text().splitlines()

    assert lines[0] == "default missing.conf"
    assert "missing.conf" in caplog.text


def test_find_support_files(tmp_path: Path) -> None:
    make_support_dir(tmp_path, Architecture.arm64)

    stub, boot = find_support_files(tmp_path, Architecture.arm64)
    assert stub.name == "linuxaa64.efi.stub"
    assert boot.name == "systemd-bootaa64.efi"

    with pytest.raises(SystemExit):
        find_support_files(tmp_path, Architecture.x86_64)


def test_check_efi_size(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    efi = tmp_path / "big.efi"
    with efi.open("wb") as f:
        f.truncate(2 * 1024**2 + 1)

    with caplog.at_level(logging.WARNING):
        check_efi_size(efi, 4)
    assert caplog.text == ""

    with caplog.at_level(logging.WARNING):
        check_efi_size(efi, 2)
    assert "big.efi" in caplog.text


def test_build_uki_entries(tmp_path: Path) -> None:
    support = make_support_dir(tmp_path / "support")
    stub, _ = find_support_files(support, Architecture.x86_64)
    staging = tmp_path / "staging"
    staging.mkdir()
    kernel = staging / "vmlinuz"
    kernel.write_bytes(b"kernel")
    initrd = staging / "initrd"
    initrd.write_bytes(b"initrd")
    os_release = staging / "os-release"
    os_release.write_text("ID=kairos\n")

    variants = finalize_cmdline_variants(make_config(tmp_path, extra_cmdlines=["rd.debug"]))
    composer = FakeComposer()

    entries = build_uki_entries(
        variants,
        kernel=kernel,
        initrd=initrd,
        os_release=os_release,
        stub=stub,
        keys=tmp_path / "keys",
        staging=staging,
        composer=composer,
        loader=LoaderConfig(),
    )

    assert [(efi.name, conf.name) for efi, conf in entries] == [
        ("artifact.efi", "artifact.conf"),
        ("artifact_rd.debug.efi", "artifact_rd.debug.conf"),
    ]
    assert [c["cmdline"] for c in composer.calls] == [v.cmdline for v in variants]


def test_build_uki_entries_aborts_on_failure(tmp_path: Path) -> None:
    class FailingComposer(FakeComposer):
        def compose(self, **kwargs: object) -> None:  # type: ignore
            if "rd.debug" in str(kwargs["cmdline"]):
                raise RuntimeError("ukify failed")
            super().compose(**kwargs)  # type: ignore

    for f in ("vmlinuz", "initrd", "os-release", "stub"):
        (tmp_path / f).write_bytes(b"")

    variants = finalize_cmdline_variants(make_config(tmp_path, extra_cmdlines=["rd.debug", "rd.shell"]))
    composer = FailingComposer()

    with pytest.raises(RuntimeError):
        build_uki_entries(
            variants,
            kernel=tmp_path / "vmlinuz",
            initrd=tmp_path / "initrd",
            os_release=tmp_path / "os-release",
            stub=tmp_path / "stub",
            keys=tmp_path,
            staging=tmp_path,
            composer=composer,
            loader=LoaderConfig(),
        )

    assert len(composer.calls) == 1
    assert not (tmp_path / "artifact_rd.shell.efi").exists()


def test_sign_fallback_loader(tmp_path: Path) -> None:
    support = make_support_dir(tmp_path / "support", Architecture.arm64)
    signer = FakeSigner()

    output = sign_fallback_loader(
        signer,
        support / "systemd-bootaa64.efi",
        keys=tmp_path / "keys",
        staging=tmp_path,
        architecture=Architecture.arm64,
    )

    assert output == tmp_path / "BOOTAA64.EFI"
    assert output.read_bytes() == b"systemd-boot"
    assert len(signer.calls) == 1


def test_ukify_arguments(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cmdline_files: dict[str, bytes] = {}

    def inspect(cmd: list[str]) -> None:
        p = cmd[cmd.index("--cmdline") + 1].removeprefix("@")
        cmdline_files[p] = Path(p).read_bytes()

    recorder = RecordingRun(inspect=inspect)
    monkeypatch.setattr(ukiforge.bootloader, "run", recorder)
    monkeypatch.setattr(ukiforge.bootloader, "find_binary", lambda *names, **kwargs: Path("/usr/bin/ukify"))

    keys = tmp_path / "keys"
    output = tmp_path / "artifact_rd.debug.efi"
    cmdline = f"{BASE_CMDLINE} rd.debug"

    Ukify().compose(
        kernel=tmp_path / "vmlinuz",
        initrd=tmp_path / "initrd",
        cmdline=cmdline,
        os_release=tmp_path / "os-release",
        stub=tmp_path / "linuxx64.efi.stub",
        keys=keys,
        output=output,
    )

    cmdline_file = tmp_path / "artifact_rd.debug.cmdline"
    assert recorder.calls == [
        [
            "/usr/bin/ukify",
            "build",
            "--linux", f"{tmp_path}/vmlinuz",
            "--initrd", f"{tmp_path}/initrd",
            "--cmdline", f"@{cmdline_file}",
            "--os-release", f"@{tmp_path}/os-release",
            "--stub", f"{tmp_path}/linuxx64.efi.stub",
            "--secureboot-private-key", f"{keys}/db.key",
            "--secureboot-certificate", f"{keys}/db.pem",
            "--pcr-private-key", f"{keys}/tpm2-pcr-private.pem",
            "--measure",
            "--output", f"{output}",
        ]
    ]  # fmt: skip

    # The stub expects a NUL terminated cmdline, and the file does not outlive the build.
    assert cmdline_files == {f"{cmdline_file}": f"{cmdline}\0".encode()}
    assert not cmdline_file.exists()


def test_ukify_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ukiforge.bootloader, "find_binary", lambda *names, **kwargs: None)

    with pytest.raises(SystemExit):
        Ukify().binary()


def test_sbsign_arguments(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = RecordingRun()
    monkeypatch.setattr(ukiforge.bootloader, "run", recorder)

    SbSign().sign(
        tmp_path / "systemd-bootx64.efi",
        tmp_path / "BOOTX64.EFI",
        key=tmp_path / "db.key",
        cert=tmp_path / "db.pem",
    )

    assert recorder.calls == [
        [
            "sbsign",
            "--key", f"{tmp_path}/db.key",
            "--cert", f"{tmp_path}/db.pem",
            "--output", f"{tmp_path}/BOOTX64.EFI",
            f"{tmp_path}/systemd-bootx64.efi",
        ]
    ]  # fmt: skip
