"""Drive the CMake build of the FIPS source tree.

The rest of the pipeline sees one operation: :meth:`NativeBuildInvoker.build`
returns a :class:`NativeArtifact` or raises :class:`NativeBuildFailure`.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .config import BuildConfig, BuildSettings
from .errors import FilesystemError, NativeBuildFailure
from .process import Runner, run_command
from .symbols import PREFIX
from .target import TargetSpec
from .toolchain import CompilerInfo, ToolchainInventory, target_compiler_flags

logger = logging.getLogger(__name__)

__all__ = [
    "NativeArtifact",
    "NativeBuildInvoker",
    "feature_flags",
    "configure_flags",
    "archive_filename",
]

OSX_ARCHITECTURES = {"x86_64": "x86_64", "aarch64": "arm64"}


@dataclass(frozen=True)
class NativeArtifact:
    archive_paths: tuple[Path, ...]
    output_directory: Path
    include_directory: Path


def archive_filename(library: str, target: TargetSpec) -> str:
    if target.is_msvc:
        return f"{library}.lib"
    return f"lib{library}.a"


def feature_flags(config: BuildConfig) -> list[str]:
    flags = ["-DFIPS=1"]
    if config.sanitizer_enabled:
        flags.append("-DASAN=1")
    flags.append(f"-DBUILD_LIBSSL={'ON' if config.secure_transport_enabled else 'OFF'}")
    return flags


def configure_flags(target: TargetSpec, config: BuildConfig) -> list[str]:
    """CMake options fixed by the target and the feature set.

    The same inputs always produce the same list, in the same order.
    """
    flags = []
    if target.is_windows:
        flags += ["-G", "Ninja"]
    flags += [
        "-DCMAKE_BUILD_TYPE=Release",
        "-DBUILD_SHARED_LIBS=OFF",
        "-DBUILD_TESTING=OFF",
        "-DCMAKE_POSITION_INDEPENDENT_CODE=ON",
        f"-DBORINGSSL_PREFIX={PREFIX}",
    ]
    flags += feature_flags(config)
    if target.is_apple and target.architecture in OSX_ARCHITECTURES:
        flags.append(f"-DCMAKE_OSX_ARCHITECTURES={OSX_ARCHITECTURES[target.architecture]}")
    return flags


class NativeBuildInvoker:
    """Configure, build and install the native library for one target."""

    def __init__(
        self,
        settings: BuildSettings,
        target: TargetSpec,
        host: TargetSpec,
        inventory: ToolchainInventory,
        compiler: CompilerInfo,
        runner: Runner = run_command,
    ):
        self.settings = settings
        self.target = target
        self.host = host
        self.inventory = inventory
        self.compiler = compiler
        self.runner = runner

        self.out_dir = Path(settings.out_dir)
        self.build_dir = self.out_dir / "build"
        self.install_dir = self.out_dir / "install"
        self.artifacts_dir = self.out_dir / "artifacts"

    @property
    def prefix_headers(self) -> Path:
        return Path(self.settings.source_dir) / "generated-include"

    def toolchain_definitions(self) -> list[str]:
        """CMake options that point the build at the probed tools.

        Only NASM is passed as an assembler. The ``.S`` sources need the C
        preprocessor, so CMake assembles them through ``CMAKE_C_COMPILER``,
        and that driver runs the GNU ``as`` found during the prerequisite
        check (``<gnu-prefix>-as`` for a cross gcc).
        """
        inv = self.inventory
        defs = [f"-DCMAKE_C_COMPILER={inv.compiler}"]
        if inv.cxx_compiler is not None:
            defs.append(f"-DCMAKE_CXX_COMPILER={inv.cxx_compiler}")
        defs += [
            f"-DPERL_EXECUTABLE={inv.scripting_runtime}",
            f"-DGO_EXECUTABLE={inv.go}",
        ]
        if inv.assembler is not None and inv.assembler.stem.lower() == "nasm":
            defs.append(f"-DCMAKE_ASM_NASM_COMPILER={inv.assembler}")
        if self.target.is_windows and inv.ninja is not None:
            defs.append(f"-DCMAKE_MAKE_PROGRAM={inv.ninja}")

        cflags = target_compiler_flags(self.target, self.host, self.compiler)
        if cflags:
            joined = " ".join(cflags)
            defs += [f"-DCMAKE_C_FLAGS={joined}", f"-DCMAKE_CXX_FLAGS={joined}"]
            defs.append(f"-DCMAKE_ASM_FLAGS={joined}")
        if not self.target.same_machine(self.host):
            defs += [
                f"-DCMAKE_SYSTEM_NAME={self.target.cmake_system_name}",
                f"-DCMAKE_SYSTEM_PROCESSOR={self.target.architecture}",
            ]
        defs.append(f"-DBORINGSSL_PREFIX_HEADERS={self.prefix_headers}")
        defs.append(f"-DCMAKE_INSTALL_PREFIX={self.install_dir}")
        return defs

    def commands(self) -> list[list]:
        cmake = self.inventory.generator
        return [
            [
                cmake,
                "-S",
                self.settings.source_dir,
                "-B",
                self.build_dir,
                *configure_flags(self.target, self.settings.config),
                *self.toolchain_definitions(),
            ],
            [cmake, "--build", self.build_dir, "--config", "Release"],
            [cmake, "--install", self.build_dir, "--config", "Release"],
        ]

    def build(self) -> NativeArtifact:
        self._check_source()
        try:
            self.build_dir.mkdir(parents=True, exist_ok=True)
            self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                f"cannot create output directory {self.out_dir}: {e}",
                target=self.target.triple,
            ) from e

        logger.info("building AWS-LC (FIPS) for %s in %s", self.target, self.out_dir)
        for cmd in self.commands():
            self._run(cmd)
        artifact = self._collect()
        logger.info(
            "built %s", ", ".join(path.name for path in artifact.archive_paths)
        )
        return artifact

    def _check_source(self) -> None:
        source = Path(self.settings.source_dir)
        if not (source / "CMakeLists.txt").exists():
            raise FilesystemError(
                f"AWS-LC source tree not found at {source}", target=self.target.triple
            )
        if not self.prefix_headers.is_dir():
            raise FilesystemError(
                f"symbol prefix headers not found at {self.prefix_headers}",
                target=self.target.triple,
            )

    def _run(self, cmd: Sequence) -> None:
        logger.info("> %s", " ".join(str(arg) for arg in cmd))
        result = self.runner(cmd, cwd=self.out_dir)
        if result.returncode != 0:
            raise NativeBuildFailure(
                result.returncode,
                result.stdout or "",
                command=[str(arg) for arg in cmd],
                target=self.target.triple,
            )

    def _installed_archive(self, component: str) -> Optional[Path]:
        for libdir in ("lib", "lib64"):
            for name in (f"lib{component}.a", f"{component}.lib"):
                path = self.install_dir / libdir / name
                if path.exists():
                    return path
        return None

    def _collect(self) -> NativeArtifact:
        components = ["crypto"]
        if self.settings.config.secure_transport_enabled:
            components.append("ssl")

        archives = []
        for component in components:
            source = self._installed_archive(component)
            if source is None:
                raise FilesystemError(
                    f"native build did not produce the {component} archive "
                    f"under {self.install_dir}",
                    target=self.target.triple,
                )
            dest = self.artifacts_dir / archive_filename(
                PREFIX.library(component), self.target
            )
            try:
                shutil.copy2(source, dest)
            except OSError as e:
                raise FilesystemError(
                    f"cannot stage {source} as {dest}: {e}", target=self.target.triple
                ) from e
            archives.append(dest)

        include_dir = self.install_dir / "include"
        if not include_dir.is_dir():
            raise FilesystemError(
                f"native build did not install headers to {include_dir}",
                target=self.target.triple,
            )
        return NativeArtifact(
            archive_paths=tuple(archives),
            output_directory=self.artifacts_dir,
            include_directory=include_dir,
        )
