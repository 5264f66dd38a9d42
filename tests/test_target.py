"""Tests for target triple parsing."""

import sys
from types import SimpleNamespace

import pytest

from aws_lc_fips_sys import target as target_module
from aws_lc_fips_sys.errors import UnparsableTarget
from aws_lc_fips_sys.target import TargetSpec, host_triple, resolve_target


class TestResolveTarget:
    """Recognized triples normalize to a TargetSpec."""

    @pytest.mark.parametrize(
        "triple, os_name, arch, env, width",
        [
            ("x86_64-unknown-linux-gnu", "linux", "x86_64", "gnu", 64),
            ("i686-unknown-linux-gnu", "linux", "x86", "gnu", 32),
            ("aarch64-unknown-linux-musl", "linux", "aarch64", "musl", 64),
            ("armv7-unknown-linux-gnueabihf", "linux", "arm", "gnueabihf", 32),
            ("aarch64-linux-android", "linux", "aarch64", "android", 64),
            ("x86_64-apple-darwin", "macos", "x86_64", "", 64),
            ("arm64-apple-darwin", "macos", "aarch64", "", 64),
            ("x86_64-pc-windows-msvc", "windows", "x86_64", "msvc", 64),
            ("x86_64-pc-windows-gnu", "windows", "x86_64", "gnu", 64),
            ("i686-pc-windows-gnu", "windows", "x86", "gnu", 32),
            ("amd64-unknown-freebsd", "freebsd", "x86_64", "", 64),
            ("x86_64-unknown-linux-gnux32", "linux", "x86_64", "gnux32", 32),
            ("riscv64gc-unknown-linux-gnu", "linux", "riscv64", "gnu", 64),
        ],
    )
    def test_known_triples(self, triple, os_name, arch, env, width):
        spec = resolve_target(triple)
        assert spec.operating_system == os_name
        assert spec.architecture == arch
        assert spec.environment == env
        assert spec.pointer_width == width

    def test_canonical_triple(self):
        """Aliases are spelled canonically and the stem uses underscores."""
        spec = resolve_target("arm64-apple-darwin")
        assert spec.triple == "aarch64-apple-darwin"
        assert spec.binding_stem == "aarch64_apple_darwin"
        assert str(resolve_target("i386-unknown-linux-gnu")) == "i686-unknown-linux-gnu"

    def test_vendor_defaults(self):
        assert resolve_target("x86_64-linux-gnu").vendor == "unknown"
        assert resolve_target("x86_64-linux-gnu") == resolve_target("x86_64-unknown-linux-gnu")

    def test_resolution_is_pure(self):
        assert resolve_target("aarch64-unknown-linux-gnu") == resolve_target(
            "aarch64-unknown-linux-gnu", "x86_64-unknown-linux-gnu"
        )

    def test_gnu_prefix(self):
        assert resolve_target("aarch64-unknown-linux-gnu").gnu_prefix == "aarch64-linux-gnu"
        assert resolve_target("i686-unknown-linux-gnu").gnu_prefix == "i686-linux-gnu"
        assert resolve_target("x86_64-pc-windows-gnu").gnu_prefix == "x86_64-w64-mingw32"

    def test_same_machine_ignores_vendor(self):
        """gcc -dumpmachine often reports the pc vendor for a native build."""
        native = resolve_target("x86_64-unknown-linux-gnu")
        assert resolve_target("x86_64-pc-linux-gnu").same_machine(native)
        assert not resolve_target("x86_64-unknown-linux-musl").same_machine(native)
        assert not resolve_target("x86_64-unknown-linux-gnux32").same_machine(native)
        assert not resolve_target("aarch64-unknown-linux-gnu").same_machine(native)

    def test_cmake_system_name(self):
        assert resolve_target("aarch64-linux-android").cmake_system_name == "Android"
        assert resolve_target("x86_64-apple-darwin").cmake_system_name == "Darwin"

    def test_platform_predicates(self):
        spec = TargetSpec("windows", "x86", "msvc", 32, "pc")
        assert spec.is_windows and spec.is_msvc and not spec.is_apple
        assert resolve_target("aarch64-apple-darwin").is_apple

    def test_host_triple_resolves(self):
        assert resolve_target(host_triple()).pointer_width in (32, 64)

    @pytest.mark.parametrize("python_platform, expected", [("mingw_x86_64", "gnu"), ("win-amd64", "msvc")])
    def test_windows_host_triple(self, monkeypatch, python_platform, expected):
        monkeypatch.setattr(target_module, "sys", SimpleNamespace(platform="win32", maxsize=sys.maxsize))
        monkeypatch.setattr(target_module.platform, "machine", lambda: "AMD64")
        monkeypatch.setattr(target_module.sysconfig, "get_platform", lambda: python_platform)
        assert host_triple() == f"x86_64-pc-windows-{expected}"


class TestUnparsableTarget:
    """Anything outside the recognized combinations is rejected."""

    @pytest.mark.parametrize(
        "triple",
        [
            "",
            "x86_64",
            "sparc64-unknown-linux-gnu",
            "x86_64-unknown-plan9",
            "x86_64-unknown-linux-weird",
            "x86_64-unknown-linux-msvc",
            "x86_64-unknown-linux-gnueabihf",
            "aarch64-unknown-linux-gnux32",
            "x86_64--linux-gnu",
            "x86_64-unknown-linux-gnu-extra",
        ],
    )
    def test_rejected(self, triple):
        with pytest.raises(UnparsableTarget):
            resolve_target(triple)

    def test_invalid_host_is_rejected(self):
        with pytest.raises(UnparsableTarget, match="mips"):
            resolve_target("x86_64-unknown-linux-gnu", "mips-unknown-linux-gnu")

    def test_message_names_the_stage(self):
        with pytest.raises(UnparsableTarget) as excinfo:
            resolve_target("sparc64-unknown-linux-gnu")
        assert str(excinfo.value).startswith("[target]")
        assert "sparc64" in str(excinfo.value)
