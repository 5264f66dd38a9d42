"""The end-to-end build: target -> toolchain -> native build -> bindings -> link plan."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .bindings import BindingSet, Generated, GenerationRequest, Pregenerated, choose
from .config import BuildSettings
from .errors import AwsLcFipsError, FilesystemError
from .generate import BindingGenerator, CompilerPreprocessor
from .link_plan import LinkPlan, emit_link_plan, plan_link
from .native_build import NativeArtifact, NativeBuildInvoker
from .process import Runner, run_command
from .target import TargetSpec, resolve_target
from .toolchain import check_prerequisites, probe_toolchain, target_compiler_flags

logger = logging.getLogger(__name__)

__all__ = ["BuildOutputs", "run_pipeline", "MANIFEST_NAME"]

MANIFEST_NAME = "link-plan.json"


@dataclass(frozen=True)
class BuildOutputs:
    """Everything the enclosing build needs from one invocation."""

    target: TargetSpec
    artifact: NativeArtifact
    bindings: BindingSet
    link_plan: LinkPlan

    def to_dict(self) -> dict:
        return {
            "target": self.target.triple,
            "bindings": {
                "origin": self.bindings.origin,
                "path": str(self.bindings.path),
            },
            "include_directory": str(self.artifact.include_directory),
            "output_directory": str(self.artifact.output_directory),
            "archives": [str(p) for p in self.artifact.archive_paths],
            **self.link_plan.to_dict(),
        }

    @classmethod
    def load(cls, path: Path) -> "BuildOutputs":
        """Read a manifest written by :func:`emit_link_plan`."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            bindings = data["bindings"]
            variant = Generated if bindings["origin"] == "generated" else Pregenerated
            return cls(
                target=resolve_target(data["target"]),
                artifact=NativeArtifact(
                    archive_paths=tuple(Path(p) for p in data["archives"]),
                    output_directory=Path(data["output_directory"]),
                    include_directory=Path(data["include_directory"]),
                ),
                bindings=variant(Path(bindings["path"])),
                link_plan=LinkPlan.from_dict(data),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise FilesystemError(f"cannot read link plan {path}: {e}") from e


def run_pipeline(
    settings: BuildSettings,
    *,
    runner: Runner = run_command,
    which: Callable[[str], Optional[str]] = shutil.which,
    preprocessor=None,
) -> BuildOutputs:
    """Run every stage once, in order. Any failure aborts the build."""
    try:
        return _run(settings, runner, which, preprocessor)
    except AwsLcFipsError:
        raise
    except OSError as e:
        raise FilesystemError(str(e), target=settings.target) from e


def _run(settings, runner, which, preprocessor) -> BuildOutputs:
    config = settings.config
    target = resolve_target(settings.target, settings.host)
    host = resolve_target(settings.host)
    logger.info(
        "target %s (host %s), fips=%s asan=%s ssl=%s bindgen=%s",
        target,
        host,
        config.fips,
        config.sanitizer_enabled,
        config.secure_transport_enabled,
        config.generation_enabled,
    )

    choice = choose(target, config)

    inventory = probe_toolchain(settings, target, host, which)
    compiler = check_prerequisites(inventory, target, runner)

    artifact = NativeBuildInvoker(
        settings, target, host, inventory, compiler, runner
    ).build()

    if isinstance(choice, GenerationRequest):
        if preprocessor is None:
            preprocessor = CompilerPreprocessor(
                inventory.compiler,
                target_compiler_flags(target, host, compiler),
                msvc=compiler.family == "msvc",
                runner=runner,
            )
        bindings = BindingGenerator(
            target,
            artifact.include_directory,
            preprocessor,
            secure_transport=config.secure_transport_enabled,
        ).generate(Path(settings.out_dir) / "bindings")
    else:
        bindings = choice
    bindings.validate(artifact, target)

    outputs = BuildOutputs(
        target=target,
        artifact=artifact,
        bindings=bindings,
        link_plan=plan_link(artifact, config, target),
    )
    emit_link_plan(outputs, Path(settings.out_dir) / MANIFEST_NAME)
    return outputs
