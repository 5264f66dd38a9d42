"""Command line entry point: ``python -m aws_lc_fips_sys``."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .bindings import has_pregenerated
from .config import load_settings
from .errors import AwsLcFipsError
from .log import setup_logging
from .pipeline import run_pipeline
from .target import resolve_target
from .toolchain import check_prerequisites, probe_toolchain

logger = logging.getLogger("aws_lc_fips_sys")


def _config_settings(args) -> dict:
    settings = {}
    for key in ("asan", "ssl", "bindgen", "force_bindgen"):
        if getattr(args, key):
            settings[key.replace("_", "-")] = True
    if args.target:
        settings["target"] = args.target
    if args.source_dir:
        settings["source-dir"] = args.source_dir
    if args.out_dir:
        settings["out-dir"] = args.out_dir
    return settings


def cmd_target(args) -> dict:
    settings = load_settings(config_settings=_config_settings(args))
    target = resolve_target(settings.target, settings.host)
    return {
        "triple": target.triple,
        "operating_system": target.operating_system,
        "architecture": target.architecture,
        "environment": target.environment,
        "pointer_width": target.pointer_width,
        "cross": not target.same_machine(resolve_target(settings.host)),
        "pregenerated": has_pregenerated(target),
    }


def cmd_check(args) -> dict:
    settings = load_settings(config_settings=_config_settings(args))
    target = resolve_target(settings.target, settings.host)
    host = resolve_target(settings.host)
    inventory = probe_toolchain(settings, target, host)
    compiler = check_prerequisites(inventory, target)
    tools = {
        "compiler": inventory.compiler,
        "cmake": inventory.generator,
        "perl": inventory.scripting_runtime,
        "go": inventory.go,
        "assembler": inventory.assembler,
        "ninja": inventory.ninja,
    }
    return {
        "target": target.triple,
        "compiler": f"{compiler.family} {compiler.version}",
        "tools": {name: str(path) if path else None for name, path in tools.items()},
    }


def cmd_build(args) -> dict:
    return run_pipeline(load_settings(config_settings=_config_settings(args))).to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m aws_lc_fips_sys",
        description="Build AWS-LC in FIPS mode and select matching cffi declarations.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--target", help="target triple (default: host)")
    common.add_argument("--source-dir", help="AWS-LC source tree")
    common.add_argument("--out-dir", help="build output directory")
    common.add_argument("--asan", action="store_true", help="build with AddressSanitizer")
    common.add_argument("--ssl", action="store_true", help="also build libssl")
    common.add_argument(
        "--bindgen", action="store_true", help="generate declarations when none are shipped"
    )
    common.add_argument(
        "--force-bindgen", action="store_true", help="always generate declarations"
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("target", parents=[common], help="show the resolved target").set_defaults(
        func=cmd_target
    )
    sub.add_parser("check", parents=[common], help="check build prerequisites").set_defaults(
        func=cmd_check
    )
    sub.add_parser("build", parents=[common], help="run the full build").set_defaults(
        func=cmd_build
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        result = args.func(args)
    except AwsLcFipsError as e:
        logger.error("%s", e)
        return 1
    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
