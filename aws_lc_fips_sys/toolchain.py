"""Toolchain discovery and prerequisite checks for the native build."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from packaging.version import Version

from .config import BuildSettings
from .errors import MissingPrerequisite
from .process import Runner, run_command
from .target import TargetSpec

logger = logging.getLogger(__name__)

__all__ = [
    "ToolchainInventory",
    "CompilerInfo",
    "probe_toolchain",
    "check_prerequisites",
    "identify_compiler",
    "needs_assembler",
    "target_compiler_flags",
]

Which = Callable[[str], Optional[str]]

MIN_COMPILER_VERSIONS = {
    "gcc": Version("4.8"),
    "clang": Version("5.0"),
    "msvc": Version("19.20"),
}
MIN_CMAKE_VERSION = Version("3.15")

# Architectures with hand-written assembly kernels in the native source tree
ASSEMBLY_ARCHITECTURES = frozenset({"x86", "x86_64", "aarch64", "arm", "ppc64le"})

CXX_FOR_CC = {"gcc": "g++", "clang": "clang++", "cc": "c++", "cl": "cl"}


@dataclass(frozen=True)
class ToolchainInventory:
    compiler: Optional[Path] = None
    generator: Optional[Path] = None
    scripting_runtime: Optional[Path] = None
    go: Optional[Path] = None
    assembler: Optional[Path] = None
    ninja: Optional[Path] = None
    host_assembler_fallback: bool = False

    @property
    def cxx_compiler(self) -> Optional[Path]:
        """C++ driver living next to the C compiler, if there is one."""
        if self.compiler is None:
            return None
        name = self.compiler.name
        stem, suffix = (name[:-4], ".exe") if name.lower().endswith(".exe") else (name, "")
        for cc, cxx in CXX_FOR_CC.items():
            if stem == cc or stem.endswith("-" + cc):
                candidate = self.compiler.with_name(stem[: len(stem) - len(cc)] + cxx + suffix)
                if candidate.exists():
                    return candidate
        return None


@dataclass(frozen=True)
class CompilerInfo:
    family: str
    version: Version


def needs_assembler(target: TargetSpec) -> bool:
    return target.architecture in ASSEMBLY_ARCHITECTURES


def _assembler_names(target: TargetSpec, cross: bool) -> list[str]:
    if target.is_windows and target.architecture in ("x86", "x86_64"):
        return ["nasm"]
    if target.is_apple or not cross:
        return ["as"]
    return [f"{target.gnu_prefix}-as"]


def _compiler_names(target: TargetSpec, cross: bool) -> list[str]:
    if target.is_msvc:
        return ["cl", "clang-cl"]
    if cross and not target.is_apple:
        return [f"{target.gnu_prefix}-gcc", f"{target.gnu_prefix}-cc", "clang"]
    return ["cc", "gcc", "clang"]


def _resolve(name: str, which: Which) -> Optional[Path]:
    found = which(name)
    return Path(found) if found else None


def _first(names, which: Which) -> Optional[Path]:
    for name in names:
        path = _resolve(name, which)
        if path is not None:
            return path
    return None


def probe_toolchain(
    settings: BuildSettings,
    target: TargetSpec,
    host: TargetSpec,
    which: Which = shutil.which,
) -> ToolchainInventory:
    """Locate the tools the native build needs.

    Tools are chosen for the target. For a cross build the host assembler is
    only used when ``settings.allow_host_assembler`` is set.
    """
    cross = not target.same_machine(host)

    def pick(key: str, names) -> Optional[Path]:
        override = settings.tool(key)
        if override:
            return _resolve(override, which)
        return _first(names, which)

    assembler = None
    fallback = False
    if needs_assembler(target):
        assembler = pick("ASM", _assembler_names(target, cross))
        if assembler is None and cross and settings.allow_host_assembler:
            assembler = _first(_assembler_names(target, cross=False), which)
            if assembler is not None:
                fallback = True
                logger.warning(
                    "no %s assembler found; using host assembler %s as requested",
                    target.triple,
                    assembler,
                )

    return ToolchainInventory(
        compiler=pick("CC", _compiler_names(target, cross)),
        generator=pick("CMAKE", ["cmake"]),
        scripting_runtime=pick("PERL", ["perl"]),
        go=pick("GO", ["go"]),
        assembler=assembler,
        ninja=pick("NINJA", ["ninja", "ninja-build"]),
        host_assembler_fallback=fallback,
    )


def identify_compiler(output: str) -> Optional[CompilerInfo]:
    """Work out compiler family and version from its ``--version`` banner."""
    for family, pattern in (
        ("msvc", r"Compiler Version (\d+\.\d+(?:\.\d+)?)"),
        ("clang", r"clang version (\d+\.\d+(?:\.\d+)?)"),
    ):
        match = re.search(pattern, output)
        if match:
            return CompilerInfo(family, Version(match.group(1)))

    lines = output.strip().splitlines()
    if lines and ("gcc" in lines[0].lower() or "Free Software Foundation" in output):
        # "gcc (Ubuntu 11.4.0-1ubuntu1~22.04) 11.4.0", "cc (GCC) 13.2.1 20231011"
        match = re.search(r"\)\s+(\d+\.\d+(?:\.\d+)?)", lines[0]) or re.search(
            r"(\d+\.\d+(?:\.\d+)?)", lines[0]
        )
        if match:
            return CompilerInfo("gcc", Version(match.group(1)))
    return None


def _cmake_version(output: str) -> Optional[Version]:
    match = re.search(r"cmake version (\d+\.\d+(?:\.\d+)?)", output)
    return Version(match.group(1)) if match else None


def check_prerequisites(
    inventory: ToolchainInventory,
    target: TargetSpec,
    runner: Runner = run_command,
) -> CompilerInfo:
    """Verify the toolchain can run the native build.

    Checks run in a fixed order and the first failure raises
    :class:`MissingPrerequisite`. Returns the identified compiler.
    """
    triple = target.triple

    if inventory.compiler is None:
        raise MissingPrerequisite("C compiler", target=triple)
    cmd = [inventory.compiler] if target.is_msvc else [inventory.compiler, "--version"]
    result = runner(cmd)
    info = identify_compiler(result.stdout)
    if info is None:
        raise MissingPrerequisite(
            "C compiler", f"cannot identify {inventory.compiler}", target=triple
        )
    minimum = MIN_COMPILER_VERSIONS[info.family]
    if info.version < minimum:
        raise MissingPrerequisite(
            "C compiler",
            f"{info.family} {info.version} is older than {minimum}",
            target=triple,
        )
    logger.info("compiler: %s (%s %s)", inventory.compiler, info.family, info.version)

    if inventory.generator is None:
        raise MissingPrerequisite("cmake", target=triple)
    version = _cmake_version(runner([inventory.generator, "--version"]).stdout)
    if version is None or version < MIN_CMAKE_VERSION:
        raise MissingPrerequisite(
            "cmake", f"need {MIN_CMAKE_VERSION} or newer, found {version}", target=triple
        )
    logger.info("cmake: %s (%s)", inventory.generator, version)

    if inventory.scripting_runtime is None:
        raise MissingPrerequisite(
            "perl", "needed by the native code generation steps", target=triple
        )
    if inventory.go is None:
        raise MissingPrerequisite("go", "needed by FIPS builds", target=triple)

    if needs_assembler(target) and inventory.assembler is None:
        names = _assembler_names(target, cross=True)
        raise MissingPrerequisite(
            "assembler", f"{' or '.join(names)} for {target.architecture}", target=triple
        )
    if target.is_windows and inventory.ninja is None:
        raise MissingPrerequisite("ninja", "required on Windows", target=triple)
    return info


def target_compiler_flags(
    target: TargetSpec, host: TargetSpec, compiler: CompilerInfo
) -> list[str]:
    """Extra compiler flags that select the target's ABI and data model."""
    if target.same_machine(host) or compiler.family == "msvc":
        return []
    if compiler.family == "clang":
        return [f"--target={target.triple}"]
    if target.environment == "gnux32":
        return ["-mx32"]
    if (
        target.operating_system == host.operating_system
        and target.pointer_width == 32
        and host.pointer_width == 64
        and {target.architecture, host.architecture} == {"x86", "x86_64"}
    ):
        return ["-m32"]
    # Cross gcc drivers are already configured for their target
    return []
