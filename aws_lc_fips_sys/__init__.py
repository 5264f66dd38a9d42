"""Build-time orchestrator for AWS-LC in FIPS mode.

Compiles the FIPS-validated AWS-LC source tree with CMake and provides cffi
declarations and link instructions matching the resulting static archives.
"""

from .config import BuildConfig, BuildSettings, load_settings
from .errors import (
    AwsLcFipsError,
    BindingGenerationFailure,
    ConfigurationError,
    FilesystemError,
    MissingPrerequisite,
    NativeBuildFailure,
    SymbolPrefixMismatch,
    UnparsableTarget,
    UnsupportedPlatform,
)
from .link_plan import LinkPlan
from .pipeline import BuildOutputs, run_pipeline
from .symbols import PREFIX
from .target import TargetSpec, resolve_target

__version__ = "0.6.0"

__all__ = [
    "AwsLcFipsError",
    "BindingGenerationFailure",
    "BuildConfig",
    "BuildOutputs",
    "BuildSettings",
    "ConfigurationError",
    "FilesystemError",
    "LinkPlan",
    "MissingPrerequisite",
    "NativeBuildFailure",
    "PREFIX",
    "SymbolPrefixMismatch",
    "TargetSpec",
    "UnparsableTarget",
    "UnsupportedPlatform",
    "load_settings",
    "resolve_target",
    "run_pipeline",
]
