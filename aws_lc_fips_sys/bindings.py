"""Selection and validation of the cffi declaration set.

A binding set is either :class:`Pregenerated` (shipped with this package and
validated offline) or :class:`Generated` (produced for this build). Each
variant validates itself, and only the generated one has to be checked
against the symbols of the archives that were just built.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .config import BuildConfig
from .errors import FilesystemError, SymbolPrefixMismatch, UnsupportedPlatform
from .native_build import NativeArtifact
from .symbols import PREFIX, SymbolPrefix, declared_functions, exported_symbols
from .target import TargetSpec

logger = logging.getLogger(__name__)

__all__ = [
    "PREGENERATED_TARGETS",
    "BINDINGS_DIR",
    "Pregenerated",
    "Generated",
    "GenerationRequest",
    "BindingSet",
    "choose",
    "pregenerated_path",
    "verify_prefix",
    "verify_exports",
]

BINDINGS_DIR = Path(__file__).parent / "bindings"

# (operating system, architecture) -> pointer width the shipped set assumes
PREGENERATED_TARGETS = {
    ("linux", "x86"): 32,
    ("linux", "x86_64"): 64,
    ("linux", "aarch64"): 64,
    ("macos", "x86_64"): 64,
    ("macos", "aarch64"): 64,
}

CANONICAL_STEMS = {
    ("linux", "x86"): "i686_unknown_linux_gnu",
    ("linux", "x86_64"): "x86_64_unknown_linux_gnu",
    ("linux", "aarch64"): "aarch64_unknown_linux_gnu",
    ("macos", "x86_64"): "x86_64_apple_darwin",
    ("macos", "aarch64"): "aarch64_apple_darwin",
}


def _read(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise FilesystemError(f"cannot read declarations {path}: {e}") from e


def verify_prefix(cdef: str, target: TargetSpec, prefix: SymbolPrefix = PREFIX) -> list[str]:
    """Check every declared function carries the symbol prefix.

    Returns the declared function names.
    """
    names = declared_functions(cdef)
    if not names:
        raise SymbolPrefixMismatch("declaration set declares no functions", target=target.triple)
    unprefixed = [name for name in names if not prefix.matches(name)]
    if unprefixed:
        raise SymbolPrefixMismatch(
            f"declarations not under prefix {prefix}", unprefixed, target=target.triple
        )
    return names


def verify_exports(
    cdef: str, artifact: NativeArtifact, target: TargetSpec, prefix: SymbolPrefix = PREFIX
) -> None:
    """Check every declared function is exported by the built archives."""
    names = verify_prefix(cdef, target, prefix)
    exported = exported_symbols(artifact.archive_paths, target)
    missing = [name for name in names if name not in exported]
    if missing:
        raise SymbolPrefixMismatch(
            "declared functions not exported by the native archives",
            missing,
            target=target.triple,
        )


@dataclass(frozen=True)
class Pregenerated:
    """Declarations shipped with the package; symbol match was checked offline."""

    path: Path

    origin = "pregenerated"

    def read(self) -> str:
        return _read(self.path)

    def validate(self, artifact: NativeArtifact, target: TargetSpec) -> None:
        verify_prefix(self.read(), target)


@dataclass(frozen=True)
class Generated:
    """Declarations synthesized for this build from the installed headers."""

    path: Path

    origin = "generated"

    def read(self) -> str:
        return _read(self.path)

    def validate(self, artifact: NativeArtifact, target: TargetSpec) -> None:
        verify_exports(self.read(), artifact, target)


BindingSet = Union[Pregenerated, Generated]


@dataclass(frozen=True)
class GenerationRequest:
    """Selection outcome: the declarations must be generated after the build."""

    reason: str


def pregenerated_path(target: TargetSpec, secure_transport: bool) -> Path:
    key = (target.operating_system, target.architecture)
    suffix = "crypto_ssl" if secure_transport else "crypto"
    return BINDINGS_DIR / f"{CANONICAL_STEMS[key]}_{suffix}.h"


def has_pregenerated(target: TargetSpec) -> bool:
    width = PREGENERATED_TARGETS.get((target.operating_system, target.architecture))
    return width is not None and width == target.pointer_width


def choose(target: TargetSpec, config: BuildConfig) -> Union[Pregenerated, GenerationRequest]:
    """Pick the declaration source for ``target``.

    Pure table lookup; runs before any tool is probed so that unsupported
    targets fail without spawning anything.
    """
    if has_pregenerated(target) and not config.force_generation:
        path = pregenerated_path(target, config.secure_transport_enabled)
        if not path.is_file():
            raise FilesystemError(
                f"pregenerated declarations missing: {path}", target=target.triple
            )
        logger.info("using pregenerated bindings %s", path.name)
        return Pregenerated(path)

    reason = "generation forced" if config.force_generation else "no pregenerated bindings"
    if not config.generation_enabled:
        raise UnsupportedPlatform(
            f"{reason} for this platform and binding generation is not enabled "
            "(set AWS_LC_FIPS_SYS_BINDGEN=1)",
            target=target.triple,
        )
    logger.info("bindings will be generated: %s", reason)
    return GenerationRequest(reason)
