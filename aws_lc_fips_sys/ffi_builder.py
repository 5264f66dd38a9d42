"""cffi builder for extensions linking the FIPS archives statically.

Use from a downstream ``setup.py``::

    from aws_lc_fips_sys.ffi_builder import make_ffibuilder

    ffibuilder = make_ffibuilder("mypkg._awslc")

    setup(cffi_modules=["setup.py:ffibuilder"])
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from cffi import FFI

from .config import load_settings
from .generate import PUBLIC_HEADERS
from .pipeline import BuildOutputs, run_pipeline
from .symbols import PREFIX

logger = logging.getLogger(__name__)

__all__ = ["make_ffibuilder", "MANIFEST_ENV", "outputs_from_environment"]

MANIFEST_ENV = "AWS_LC_FIPS_SYS_MANIFEST"


def outputs_from_environment(environ=None) -> Optional[BuildOutputs]:
    """Outputs of a build that already ran in this process tree, if any."""
    env = os.environ if environ is None else environ
    manifest = env.get(MANIFEST_ENV)
    if not manifest:
        return None
    logger.info("reusing native build from %s", manifest)
    return BuildOutputs.load(Path(manifest))


def make_ffibuilder(
    module_name: str, outputs: Optional[BuildOutputs] = None, **kwargs
) -> FFI:
    """Return an :class:`FFI` ready for ``cffi_modules``.

    Without ``outputs`` the manifest named by ``AWS_LC_FIPS_SYS_MANIFEST`` is
    used, and failing that the whole build runs here. Extra keyword arguments
    go to ``set_source``.
    """
    if outputs is None:
        outputs = outputs_from_environment() or run_pipeline(load_settings())

    ffibuilder = FFI()
    ffibuilder.cdef(outputs.bindings.read())

    components = ["crypto"]
    if PREFIX.library("ssl") in outputs.link_plan.library_names:
        components.append("ssl")
    source = "".join(
        f"#include <{header}>\n" for c in components for header in PUBLIC_HEADERS[c]
    )

    options = outputs.link_plan.extension_kwargs()
    options["include_dirs"] = [str(outputs.artifact.include_directory)]
    options["define_macros"] = [("BORINGSSL_PREFIX", str(PREFIX))]
    for key, value in kwargs.items():
        if isinstance(value, list) and isinstance(options.get(key), list):
            options[key] = options[key] + value
        else:
            options[key] = value

    ffibuilder.set_source(module_name, source, **options)
    return ffibuilder
