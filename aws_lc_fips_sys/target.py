"""Target triple parsing.

Turns strings like ``x86_64-unknown-linux-gnu`` or ``arm64-apple-darwin``
into a normalized :class:`TargetSpec`.
"""

from __future__ import annotations

import platform
import sys
import sysconfig
from dataclasses import dataclass
from typing import Optional

from .errors import UnparsableTarget

__all__ = ["TargetSpec", "resolve_target", "host_triple"]

ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "i386": "x86",
    "i486": "x86",
    "i586": "x86",
    "i686": "x86",
    "x86": "x86",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "arm": "arm",
    "armv6": "arm",
    "armv7": "arm",
    "armv7l": "arm",
    "armv7a": "arm",
    "ppc64le": "ppc64le",
    "powerpc64le": "ppc64le",
    "riscv64": "riscv64",
    "riscv64gc": "riscv64",
    "s390x": "s390x",
}

OS_ALIASES = {
    "linux": "linux",
    "darwin": "macos",
    "macos": "macos",
    "macosx": "macos",
    "windows": "windows",
    "win32": "windows",
    "freebsd": "freebsd",
    "ios": "ios",
}

POINTER_WIDTH = {
    "x86_64": 64,
    "x86": 32,
    "aarch64": 64,
    "arm": 32,
    "ppc64le": 64,
    "riscv64": 64,
    "s390x": 64,
}

# ABI -> (operating systems, architectures) it is valid for; None means any
KNOWN_ENVIRONMENTS = {
    "": (None, None),
    "gnu": ({"linux", "windows"}, None),
    "musl": ({"linux"}, None),
    "android": ({"linux"}, {"x86_64", "x86", "aarch64", "arm"}),
    "gnueabihf": ({"linux"}, {"arm"}),
    "musleabihf": ({"linux"}, {"arm"}),
    "androideabi": ({"linux"}, {"arm"}),
    "gnux32": ({"linux"}, {"x86_64"}),
    "msvc": ({"windows"}, {"x86_64", "x86", "aarch64"}),
}

DEFAULT_VENDOR = {
    "linux": "unknown",
    "macos": "apple",
    "ios": "apple",
    "windows": "pc",
    "freebsd": "unknown",
}

# Canonical triple spelling of each architecture
TRIPLE_ARCH = {"x86": "i686", "arm": "armv7"}

GNU_ARCH = {"x86": "i686", "arm": "arm"}

CMAKE_SYSTEM_NAME = {
    "linux": "Linux",
    "macos": "Darwin",
    "ios": "iOS",
    "windows": "Windows",
    "freebsd": "FreeBSD",
}


@dataclass(frozen=True)
class TargetSpec:
    """Normalized description of the machine a build is compiled for."""

    operating_system: str
    architecture: str
    environment: str
    pointer_width: int
    vendor: str = "unknown"

    @property
    def triple(self) -> str:
        arch = TRIPLE_ARCH.get(self.architecture, self.architecture)
        parts = [arch, self.vendor, "darwin" if self.operating_system == "macos" else self.operating_system]
        if self.environment:
            parts.append(self.environment)
        return "-".join(parts)

    @property
    def binding_stem(self) -> str:
        """File stem of the declaration sets for this target."""
        return self.triple.replace("-", "_")

    @property
    def gnu_prefix(self) -> str:
        """Prefix of GNU cross tools, e.g. ``aarch64-linux-gnu``."""
        arch = GNU_ARCH.get(self.architecture, self.architecture)
        if self.is_windows:
            return f"{arch}-w64-mingw32"
        if self.operating_system == "linux" and self.environment:
            return f"{arch}-linux-{self.environment}"
        return f"{arch}-{self.operating_system}"

    @property
    def cmake_system_name(self) -> str:
        if self.environment.startswith("android"):
            return "Android"
        return CMAKE_SYSTEM_NAME[self.operating_system]

    @property
    def is_windows(self) -> bool:
        return self.operating_system == "windows"

    @property
    def is_msvc(self) -> bool:
        return self.environment == "msvc"

    @property
    def is_apple(self) -> bool:
        return self.operating_system in ("macos", "ios")

    def same_machine(self, other: "TargetSpec") -> bool:
        """True when both describe the same ABI, whatever the vendor field says."""
        return (
            self.operating_system,
            self.architecture,
            self.environment,
            self.pointer_width,
        ) == (
            other.operating_system,
            other.architecture,
            other.environment,
            other.pointer_width,
        )

    def __str__(self) -> str:
        return self.triple


def resolve_target(target: str, host: Optional[str] = None) -> TargetSpec:
    """Parse ``target`` into a :class:`TargetSpec`.

    ``host`` is accepted so callers resolve both strings through the same
    grammar; it is validated but does not influence the result.
    """
    if host is not None:
        _parse(host)
    return _parse(target)


def _parse(triple: str) -> TargetSpec:
    if not triple or not isinstance(triple, str):
        raise UnparsableTarget(str(triple), "empty target")
    parts = triple.strip().lower().split("-")
    if len(parts) < 2 or len(parts) > 4 or not all(parts):
        raise UnparsableTarget(triple)

    arch = ARCH_ALIASES.get(parts[0])
    if arch is None:
        raise UnparsableTarget(triple, f"unknown architecture {parts[0]!r}")

    # arch-os, arch-os-env, arch-vendor-os, arch-vendor-os-env
    rest = parts[1:]
    vendor = None
    if rest[0] not in OS_ALIASES and len(rest) >= 2:
        vendor, rest = rest[0], rest[1:]
    os_name = OS_ALIASES.get(rest[0])
    if os_name is None:
        raise UnparsableTarget(triple, f"unknown operating system {rest[0]!r}")
    env = rest[1] if len(rest) > 1 else ""
    if len(rest) > 2:
        raise UnparsableTarget(triple)

    if env not in KNOWN_ENVIRONMENTS:
        raise UnparsableTarget(triple, f"unknown environment {env!r}")
    systems, archs = KNOWN_ENVIRONMENTS[env]
    if systems is not None and os_name not in systems:
        raise UnparsableTarget(triple, f"environment {env!r} is not valid on {os_name}")
    if archs is not None and arch not in archs:
        raise UnparsableTarget(triple, f"environment {env!r} is not valid for {arch}")

    width = 32 if env == "gnux32" else POINTER_WIDTH[arch]
    return TargetSpec(
        operating_system=os_name,
        architecture=arch,
        environment=env,
        pointer_width=width,
        vendor=vendor or DEFAULT_VENDOR[os_name],
    )


def host_triple() -> str:
    """Return the target triple of the running interpreter."""
    machine = platform.machine().lower() or "unknown"
    arch = ARCH_ALIASES.get(machine, machine)
    # 32-bit interpreter on a 64-bit kernel
    if arch == "x86_64" and sys.maxsize <= 2**32:
        arch = "x86"
    if arch == "aarch64" and sys.maxsize <= 2**32:
        arch = "arm"
    triple_arch = TRIPLE_ARCH.get(arch, arch)

    if sys.platform == "darwin":
        return f"{triple_arch}-apple-darwin"
    if sys.platform == "win32":
        env = "gnu" if sysconfig.get_platform().startswith("mingw") else "msvc"
        return f"{triple_arch}-pc-windows-{env}"
    if sys.platform.startswith("freebsd"):
        return f"{triple_arch}-unknown-freebsd"
    libc, _ = platform.libc_ver()
    env = "gnu" if libc == "glibc" else "musl"
    if arch == "arm":
        env += "eabihf"
    return f"{triple_arch}-unknown-linux-{env}"
