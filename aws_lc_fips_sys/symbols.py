"""Symbol prefixing and static archive symbol tables.

The native build compiles every exported symbol under a private prefix so
this library can share a process with other OpenSSL-like builds. The same
prefix names the archives and every function declaration.
"""

from __future__ import annotations

import re
import struct
from pathlib import Path
from typing import Iterable

from .errors import FilesystemError

__all__ = [
    "SymbolPrefix",
    "PREFIX",
    "read_archive_symbols",
    "normalize_symbol",
    "declared_functions",
]

AR_MAGIC = b"!<arch>\n"
AR_HEADER = struct.Struct("16s12s6s6s8s10s2s")

FUNCTION_RE = re.compile(r"\b([A-Za-z_]\w*)\s*\([^;{}]*\)\s*;")


class SymbolPrefix:
    """Prefix rewrite applied uniformly to symbols and library names."""

    def __init__(self, prefix: str):
        if not re.fullmatch(r"[A-Za-z_]\w*", prefix):
            raise ValueError(f"invalid symbol prefix: {prefix!r}")
        self.prefix = prefix

    def apply(self, name: str) -> str:
        return f"{self.prefix}_{name}"

    def matches(self, name: str) -> bool:
        return name.startswith(self.prefix + "_")

    def strip(self, name: str) -> str:
        if not self.matches(name):
            raise ValueError(f"{name!r} does not carry prefix {self.prefix!r}")
        return name[len(self.prefix) + 1 :]

    def library(self, component: str) -> str:
        """Name of the prefixed library for ``component`` (crypto or ssl)."""
        return self.apply(component)

    def __str__(self) -> str:
        return self.prefix

    def __repr__(self) -> str:
        return f"SymbolPrefix({self.prefix!r})"


PREFIX = SymbolPrefix("aws_lc_fips_0_6_0")


def normalize_symbol(name: str, target) -> str:
    """Strip the C-level leading underscore added on Mach-O and Win32 x86."""
    if name.startswith("_") and (
        target.is_apple or (target.is_windows and target.architecture == "x86")
    ):
        return name[1:]
    return name


def declared_functions(cdef: str) -> list[str]:
    """Names of functions declared in a cdef text, in declaration order."""
    body = re.sub(r"/\*.*?\*/", " ", cdef, flags=re.DOTALL)
    body = re.sub(r"^\s*#.*$", "", body, flags=re.MULTILINE)
    # struct/enum bodies never declare functions
    body = re.sub(r"\{[^{}]*\}", "{}", body)
    names = []
    for match in FUNCTION_RE.finditer(body):
        name = match.group(1)
        if name not in names:
            names.append(name)
    return names


def _members(data: bytes):
    pos = len(AR_MAGIC)
    while pos + AR_HEADER.size <= len(data):
        name, _, _, _, _, size, fmag = AR_HEADER.unpack_from(data, pos)
        if fmag != b"`\n":
            raise ValueError(f"corrupt archive member header at offset {pos}")
        size = int(size.decode("ascii").strip())
        start = pos + AR_HEADER.size
        name = name.decode("ascii", errors="replace").rstrip()
        payload = data[start : start + size]
        # BSD long names: "#1/<len>" with the name prefixed to the payload
        if name.startswith("#1/"):
            name_len = int(name[3:])
            name = payload[:name_len].rstrip(b"\0").decode("ascii", errors="replace")
            payload = payload[name_len:]
        yield name, payload
        pos = start + size + (size & 1)


def _strings(table: bytes) -> list[str]:
    return [s.decode("ascii", errors="replace") for s in table.split(b"\0") if s]


def _gnu_index(payload: bytes, width: int) -> set[str]:
    fmt = ">I" if width == 4 else ">Q"
    (count,) = struct.unpack_from(fmt, payload, 0)
    names = _strings(payload[width + count * width :])
    return set(names[:count])


def _bsd_index(payload: bytes, width: int) -> set[str]:
    fmt = "<I" if width == 4 else "<Q"
    (ranlib_size,) = struct.unpack_from(fmt, payload, 0)
    strtab_at = width + ranlib_size
    (strtab_size,) = struct.unpack_from(fmt, payload, strtab_at)
    strtab = payload[strtab_at + width : strtab_at + width + strtab_size]
    symbols = set()
    for i in range(ranlib_size // (2 * width)):
        (offset,) = struct.unpack_from(fmt, payload, width + i * 2 * width)
        end = strtab.find(b"\0", offset)
        symbols.add(strtab[offset : end if end >= 0 else None].decode("ascii", errors="replace"))
    return symbols


def read_archive_symbols(path: Path) -> set[str]:
    """Return the names in the symbol index of a static archive.

    Understands GNU/SysV (``/`` and ``/SYM64/``), BSD (``__.SYMDEF``) and
    COFF import-library style archives.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise FilesystemError(f"cannot read archive {path}: {e}") from e
    if not data.startswith(AR_MAGIC):
        raise FilesystemError(f"{path} is not a static archive")

    try:
        for name, payload in _members(data):
            if name == "/":
                # COFF archives carry a second linker member; the first suffices
                return _gnu_index(payload, 4)
            if name == "/SYM64/":
                return _gnu_index(payload, 8)
            if name in ("__.SYMDEF", "__.SYMDEF SORTED"):
                return _bsd_index(payload, 4)
            if name in ("__.SYMDEF_64", "__.SYMDEF_64 SORTED"):
                return _bsd_index(payload, 8)
            break
    except (ValueError, struct.error) as e:
        raise FilesystemError(f"cannot parse archive {path}: {e}") from e
    raise FilesystemError(f"{path} has no symbol index")


def exported_symbols(paths: Iterable[Path], target) -> set[str]:
    symbols = set()
    for path in paths:
        symbols.update(normalize_symbol(name, target) for name in read_archive_symbols(path))
    return symbols
