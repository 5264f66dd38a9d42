"""Regenerate the shipped cffi declaration sets from an AWS-LC build.

Builds AWS-LC for the host target, generates the crypto and crypto+ssl
declaration sets from the installed headers and copies them into
aws_lc_fips_sys/bindings/. With --check nothing is written; the shipped sets
are verified against the archives of the fresh build instead.
"""

import argparse
import dataclasses
import pathlib
import sys

from aws_lc_fips_sys.bindings import BINDINGS_DIR, has_pregenerated, pregenerated_path, verify_exports
from aws_lc_fips_sys.config import load_settings
from aws_lc_fips_sys.errors import AwsLcFipsError
from aws_lc_fips_sys.log import setup_logging
from aws_lc_fips_sys.pipeline import run_pipeline
from aws_lc_fips_sys.target import resolve_target


def build_variant(root: pathlib.Path, ssl: bool):
    settings = load_settings(
        config_settings={"ssl": ssl, "bindgen": True, "force-bindgen": True}, root=root
    )
    # Separate output trees so the two variants never share a CMake cache
    variant = "crypto_ssl" if ssl else "crypto"
    settings = dataclasses.replace(settings, out_dir=pathlib.Path(settings.out_dir) / variant)
    return run_pipeline(settings)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--check", action="store_true", help="verify shipped sets instead of updating them"
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    root = pathlib.Path(__file__).parent.parent
    target = resolve_target(load_settings(root=root).target)
    if not has_pregenerated(target):
        print(f"No pregenerated declarations are shipped for {target}", file=sys.stderr)
        return 1

    updated = []
    unchanged = []
    for step, ssl in enumerate((False, True), start=1):
        label = "crypto+ssl" if ssl else "crypto"
        print(f"Step {step}: Building {label} for {target}...", file=sys.stderr)
        try:
            outputs = build_variant(root, ssl)
            shipped = pregenerated_path(target, ssl)
            if args.check:
                verify_exports(shipped.read_text(encoding="utf-8"), outputs.artifact, target)
                print(f"  - {shipped.name} matches the archives", file=sys.stderr)
                continue
            content = outputs.bindings.read()
            if shipped.exists() and shipped.read_text(encoding="utf-8") == content:
                unchanged.append(shipped)
            else:
                BINDINGS_DIR.mkdir(exist_ok=True)
                shipped.write_text(content, encoding="utf-8", newline="\n")
                updated.append(shipped)
        except (AwsLcFipsError, OSError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    for p in updated:
        print(f"  - {p.relative_to(root)}", file=sys.stderr)
    if unchanged:
        print(
            "  - No changes to",
            f"{len(unchanged)} files" if len(unchanged) > 1 else unchanged[0].name,
            file=sys.stderr,
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
