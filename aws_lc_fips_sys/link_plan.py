"""Link instructions for the enclosing extension build."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from .config import BuildConfig
from .errors import FilesystemError
from .native_build import NativeArtifact
from .symbols import PREFIX
from .target import TargetSpec

logger = logging.getLogger(__name__)

__all__ = ["LinkPlan", "plan_link", "emit_link_plan"]


@dataclass(frozen=True)
class LinkPlan:
    search_paths: tuple[str, ...]
    library_names: tuple[str, ...]
    extra_flags: tuple[str, ...] = ()

    def extension_kwargs(self) -> dict:
        """Keyword arguments for ``setuptools.Extension`` / ``FFI.set_source``."""
        return {
            "library_dirs": list(self.search_paths),
            "libraries": list(self.library_names),
            "extra_link_args": list(self.extra_flags),
        }

    def to_dict(self) -> dict:
        return {
            "search_paths": list(self.search_paths),
            "library_names": list(self.library_names),
            "extra_flags": list(self.extra_flags),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LinkPlan":
        return cls(
            search_paths=tuple(data["search_paths"]),
            library_names=tuple(data["library_names"]),
            extra_flags=tuple(data.get("extra_flags", ())),
        )


def plan_link(artifact: NativeArtifact, config: BuildConfig, target: TargetSpec) -> LinkPlan:
    """Order the libraries for single-pass linkers.

    libssl references libcrypto symbols, so it has to come first.
    """
    libraries = []
    if config.secure_transport_enabled:
        libraries.append(PREFIX.library("ssl"))
    libraries.append(PREFIX.library("crypto"))

    flags = []
    if target.operating_system in ("linux", "freebsd") and not target.environment.startswith("android"):
        flags.append("-pthread")
    if config.sanitizer_enabled and not target.is_msvc:
        flags.append("-fsanitize=address")

    return LinkPlan(
        search_paths=(str(artifact.output_directory),),
        library_names=tuple(libraries),
        extra_flags=tuple(flags),
    )


def emit_link_plan(outputs, path: Path) -> Path:
    """Write the build outputs to a JSON manifest at ``path``."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(outputs.to_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise FilesystemError(f"cannot write link plan {path}: {e}") from e
    logger.info("link plan written to %s", path)
    return path
