"""PEP 517 backend that builds AWS-LC (FIPS) before building the Python package.

Downstream projects select it with::

    [build-system]
    requires = ["aws-lc-fips-sys", "cffi", "setuptools"]
    build-backend = "aws_lc_fips_sys.build_meta"

The native build runs once per wheel or editable build; its manifest is
exported through ``AWS_LC_FIPS_SYS_MANIFEST`` so that
:func:`~aws_lc_fips_sys.ffi_builder.make_ffibuilder` reuses it.
"""

import os
from pathlib import Path

from setuptools import build_meta as _orig

from .config import load_settings
from .ffi_builder import MANIFEST_ENV
from .log import setup_logging
from .pipeline import MANIFEST_NAME, run_pipeline

# Hooks that need no native build are passed through unchanged
get_requires_for_build_wheel = _orig.get_requires_for_build_wheel
get_requires_for_build_sdist = _orig.get_requires_for_build_sdist
get_requires_for_build_editable = _orig.get_requires_for_build_editable
prepare_metadata_for_build_wheel = _orig.prepare_metadata_for_build_wheel
prepare_metadata_for_build_editable = _orig.prepare_metadata_for_build_editable
build_sdist = _orig.build_sdist


def _build_aws_lc(config_settings=None):
    """Run the native pipeline and export the manifest location."""
    setup_logging()
    settings = load_settings(config_settings=config_settings, root=Path.cwd())
    run_pipeline(settings)
    os.environ[MANIFEST_ENV] = str(Path(settings.out_dir) / MANIFEST_NAME)


def build_wheel(wheel_directory, config_settings=None, metadata_directory=None):
    """Build wheel with AWS-LC built first."""
    _build_aws_lc(config_settings)
    return _orig.build_wheel(wheel_directory, config_settings, metadata_directory)


def build_editable(wheel_directory, config_settings=None, metadata_directory=None):
    """Build editable install with AWS-LC built first."""
    _build_aws_lc(config_settings)
    return _orig.build_editable(wheel_directory, config_settings, metadata_directory)
