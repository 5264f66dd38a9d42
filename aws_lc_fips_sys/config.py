"""Build configuration read once at the start of an invocation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError
from .target import host_triple

__all__ = ["BuildConfig", "BuildSettings", "load_settings", "parse_flag"]

ENV_PREFIX = "AWS_LC_FIPS_SYS_"

# PEP 517 config_settings key -> environment variable suffix
FLAG_KEYS = {
    "asan": "ASAN",
    "bindgen": "BINDGEN",
    "force-bindgen": "FORCE_BINDGEN",
    "ssl": "SSL",
}

TOOL_KEYS = ("CC", "CMAKE", "PERL", "GO", "ASM", "NINJA")

TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})


@dataclass(frozen=True)
class BuildConfig:
    """Feature flags for one build. FIPS mode cannot be turned off."""

    sanitizer_enabled: bool = False
    secure_transport_enabled: bool = False
    generation_enabled: bool = False
    force_generation: bool = False

    @property
    def fips(self) -> bool:
        return True


@dataclass(frozen=True)
class BuildSettings:
    config: BuildConfig
    target: str
    host: str
    source_dir: Path
    out_dir: Path
    tools: Mapping[str, str] = field(default_factory=dict)
    allow_host_assembler: bool = False

    def tool(self, name: str) -> Optional[str]:
        """Return the explicit override for tool ``name`` (e.g. ``"CC"``)."""
        return self.tools.get(name)


def parse_flag(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ConfigurationError(f"invalid boolean for {name}: {value!r}")


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config_settings: Optional[Mapping[str, object]] = None,
    root: Optional[Path] = None,
) -> BuildSettings:
    """Collect settings from PEP 517 ``config_settings`` and the environment.

    ``config_settings`` takes precedence over environment variables.
    """
    env = os.environ if environ is None else environ
    settings = dict(config_settings or {})
    root = Path.cwd() if root is None else Path(root)

    def lookup(key: str, *env_names: str) -> Optional[object]:
        if key and settings.get(key) is not None:
            return settings[key]
        for name in env_names:
            if env.get(name):
                return env[name]
        return None

    flags = {}
    for key, suffix in FLAG_KEYS.items():
        raw = lookup(key, ENV_PREFIX + suffix)
        flags[key] = parse_flag(key, raw) if raw is not None else False

    config = BuildConfig(
        sanitizer_enabled=flags["asan"],
        secure_transport_enabled=flags["ssl"],
        generation_enabled=flags["bindgen"],
        force_generation=flags["force-bindgen"],
    )

    host = str(lookup("", ENV_PREFIX + "HOST", "HOST") or host_triple())
    target = str(lookup("target", ENV_PREFIX + "TARGET", "TARGET") or host)

    source_dir = Path(str(lookup("source-dir", ENV_PREFIX + "SOURCE_DIR") or root / "aws-lc"))
    out_dir = lookup("out-dir", ENV_PREFIX + "OUT_DIR")
    out_dir = Path(str(out_dir)) if out_dir else root / "build" / "aws-lc-fips" / target

    tools = {}
    for name in TOOL_KEYS:
        value = env.get(ENV_PREFIX + name)
        if not value and name == "CC":
            value = env.get("CC")
        if value:
            tools[name] = value

    fallback = env.get(ENV_PREFIX + "ASM_HOST_FALLBACK")
    return BuildSettings(
        config=config,
        target=target,
        host=host,
        source_dir=source_dir,
        out_dir=out_dir,
        tools=tools,
        allow_host_assembler=parse_flag("ASM_HOST_FALLBACK", fallback) if fallback else False,
    )
