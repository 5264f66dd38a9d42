"""Generate a cffi cdef from the installed AWS-LC headers.

The public headers are run through the active compiler's preprocessor for
the target, and function declarations, opaque types and enums are extracted
from the parts that came from the library's own include tree. Integer macro
constants come from the same compiler's macro dump, so conditional defines
resolve for the target. Function names are emitted under the symbol prefix.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Optional, Sequence

from cffi import FFI, CDefError, FFIError

from .bindings import Generated
from .errors import BindingGenerationFailure
from .process import Runner, run_command
from .symbols import PREFIX, SymbolPrefix
from .target import TargetSpec

logger = logging.getLogger(__name__)

__all__ = [
    "BindingGenerator",
    "CompilerPreprocessor",
    "PUBLIC_HEADERS",
    "REQUIRED_FUNCTIONS",
    "active_macros",
    "generate_cdef",
    "size_t_type",
]

PUBLIC_HEADERS = {
    "crypto": [
        "openssl/base.h",
        "openssl/crypto.h",
        "openssl/err.h",
        "openssl/rand.h",
        "openssl/aes.h",
        "openssl/digest.h",
        "openssl/sha.h",
        "openssl/hmac.h",
        "openssl/aead.h",
    ],
    "ssl": ["openssl/ssl.h"],
}

REQUIRED_FUNCTIONS = {
    "crypto": [
        "CRYPTO_library_init",
        "FIPS_mode",
        "ERR_get_error",
        "ERR_error_string_n",
        "RAND_bytes",
        "AES_set_encrypt_key",
        "AES_set_decrypt_key",
        "AES_encrypt",
        "AES_ctr128_encrypt",
        "AES_cbc_encrypt",
        "EVP_sha256",
        "EVP_MD_CTX_new",
        "EVP_MD_CTX_free",
        "EVP_DigestInit_ex",
        "EVP_DigestUpdate",
        "EVP_DigestFinal_ex",
        "HMAC",
        "EVP_aead_aes_256_gcm",
        "EVP_AEAD_CTX_new",
        "EVP_AEAD_CTX_free",
        "EVP_AEAD_CTX_seal",
        "EVP_AEAD_CTX_open",
    ],
    "ssl": [
        "TLS_method",
        "SSL_CTX_new",
        "SSL_CTX_free",
        "SSL_new",
        "SSL_free",
    ],
}

C_KEYWORDS = frozenset(
    """
    const volatile restrict signed unsigned short long int char float double
    void struct union enum _Bool static inline extern
    """.split()
)

# Types cffi understands without a declaration
KNOWN_TYPES = frozenset(
    """
    int8_t uint8_t int16_t uint16_t int32_t uint32_t int64_t uint64_t
    intptr_t uintptr_t size_t ssize_t ptrdiff_t wchar_t bool FILE
    """.split()
)

LINE_MARKER_RE = re.compile(r'^#(?:line)?\s*\d+\s+"([^"]*)".*$', re.MULTILINE)
OPAQUE_TYPEDEF_RE = re.compile(r"\btypedef\s+(struct|union)\s+(\w+)\s+(\w+)\s*;")
TYPEDEF_BODY_RE = re.compile(r"\btypedef\s+(struct|union)\s+(\w+)\s*\{[^{}]*\}\s*(\w+)\s*;")
SCALAR_TYPEDEF_RE = re.compile(r"\btypedef\s+([A-Za-z_][\w\s]*?)\s+(\w+)\s*;")
STRUCT_BODY_RE = re.compile(r"(?<!typedef )\b(struct|union)\s+(\w+)\s*\{[^{}]*\}\s*;")
ENUM_RE = re.compile(r"\b(typedef\s+)?enum\s+(\w+)?\s*\{([^{}]*)\}\s*(\w+)?\s*;")
MACRO_RE = re.compile(
    r"^\s*#\s*define\s+([A-Za-z]\w*)\s+\(?\s*(-?(?:0[xX][0-9A-Fa-f]+|\d+))[uUlL]*\s*\)?\s*$",
    re.MULTILINE,
)
DEFINE_NAME_RE = re.compile(r"^\s*#\s*define\s+([A-Za-z]\w*)\b(?!\()", re.MULTILINE)
UNDEF_RE = re.compile(r"^\s*#\s*undef\s+(\w+)")


def size_t_type(target: TargetSpec) -> str:
    """C spelling of ``size_t`` for the target data model."""
    if target.pointer_width == 32:
        return "unsigned int"
    if target.is_windows:
        return "unsigned long long"
    return "unsigned long"


def preprocess_content(content: str) -> str:
    """Remove comments and preprocessor directives."""
    content = re.sub(r"/\*.*?\*/", " ", content, flags=re.DOTALL)
    content = re.sub(r"//.*$", "", content, flags=re.MULTILINE)
    content = re.sub(r"^\s*#.*$", "", content, flags=re.MULTILINE)
    return content


def _strip_balanced(text: str, keyword: str) -> str:
    """Remove every ``keyword(...)`` including nested parentheses."""
    start = text.find(keyword)
    while start >= 0:
        pos = start + len(keyword)
        while pos < len(text) and text[pos].isspace():
            pos += 1
        if pos >= len(text) or text[pos] != "(":
            start = text.find(keyword, start + 1)
            continue
        depth = 0
        for end in range(pos, len(text)):
            if text[end] == "(":
                depth += 1
            elif text[end] == ")":
                depth -= 1
                if depth == 0:
                    break
        else:
            return text
        text = text[:start] + text[end + 1 :]
        start = text.find(keyword, start)
    return text


def clean_declaration(text: str) -> str:
    """Clean up a C declaration for cffi consumption."""
    for keyword in ("__attribute__", "__declspec", "__asm__", "__asm"):
        text = _strip_balanced(text, keyword)
    text = re.sub(
        r"\b(?:extern|__inline__|__inline|__restrict__|__restrict|restrict|__extension__|__cdecl)\b",
        "",
        text,
    )

    lines = []
    for line in text.split("\n"):
        line = re.sub(r"\s+", " ", line).strip()
        if line:
            lines.append(line)

    return " ".join(lines)


def format_declaration(decl: str, max_width: int = 100) -> str:
    """Format a declaration for readability, with intelligent line breaking."""
    if len(decl) <= max_width:
        return decl

    if "(" in decl and ")" in decl:
        if match := re.match(r"(.*?\s+\**\w+\s*)\((.*)\)(.*)", decl):
            prefix, params, suffix = match.groups()
            if len(prefix) + len(params) + 2 > max_width:
                param_list = [p.strip() for p in params.split(",")]
                if len(param_list) > 1:
                    formatted_params = (",\n" + " " * (len(prefix) + 1)).join(
                        param_list
                    )
                    return f"{prefix}({formatted_params}){suffix}"

    return decl


def split_by_header(expanded: str, include_dir: Path) -> dict[str, str]:
    """Group preprocessor output by the library header it came from.

    Text from headers outside ``include_dir`` (system headers) is dropped.
    Keys are include-relative paths in order of first appearance.
    """
    root = str(Path(include_dir).resolve()).replace("\\", "/").rstrip("/") + "/"
    resolved_cache: dict[str, Optional[str]] = {}

    def relative(path: str) -> Optional[str]:
        if path not in resolved_cache:
            normalized = path.replace("\\\\", "/").replace("\\", "/")
            resolved = str(Path(normalized).resolve()).replace("\\", "/")
            resolved_cache[path] = resolved[len(root) :] if resolved.startswith(root) else None
        return resolved_cache[path]

    sections: dict[str, list[str]] = {}
    current: Optional[str] = None
    pos = 0
    for marker in LINE_MARKER_RE.finditer(expanded):
        if current is not None:
            sections[current].append(expanded[pos : marker.start()])
        current = relative(marker.group(1))
        if current is not None:
            sections.setdefault(current, [])
        pos = marker.end()
    if current is not None:
        sections[current].append(expanded[pos:])
    return {name: "".join(chunks) for name, chunks in sections.items()}


def _type_names(text: str) -> list[str]:
    """Identifiers naming types in a return type or parameter type."""
    text = re.sub(r"\[[^\]]*\]", "", text)
    names = []
    after_tag = False
    for word in re.findall(r"[A-Za-z_]\w*", text):
        if word in ("struct", "union", "enum"):
            after_tag = True
        elif after_tag:
            # tagged types may stay incomplete
            after_tag = False
        elif word not in C_KEYWORDS:
            names.append(word)
    return names


def _param_types(params: str) -> Optional[list[str]]:
    """Type names used by a parameter list, or None if cffi can't express it."""
    if "(" in params:
        return None
    types = []
    for param in params.split(","):
        param = re.sub(r"\[[^\]]*\]", "", param).strip()
        if param in ("", "void", "..."):
            continue
        words = re.findall(r"[A-Za-z_]\w*|\*", param)
        # a trailing identifier after the type is the parameter name
        if (
            len(words) >= 2
            and words[-1] not in C_KEYWORDS
            and words[-1] != "*"
            and words[-2] not in ("struct", "union", "enum")
        ):
            param = param[: param.rfind(words[-1])]
        types.extend(_type_names(param))
    return types


def _strip_bodies(text: str) -> str:
    """Replace brace-enclosed bodies, innermost first, with statement ends."""
    previous = None
    while previous != text:
        previous = text
        text = re.sub(r"\{[^{}]*\}", ";", text)
    return text


class _Surface:
    """Declarations collected from the preprocessed library headers."""

    def __init__(self, prefix: SymbolPrefix):
        self.prefix = prefix
        self.sections: dict[str, list[str]] = {}
        self.types: set[str] = set(KNOWN_TYPES)
        self.enumerators: set[str] = set()
        self.functions: dict[str, str] = {}
        self.skipped: list[str] = []
        self._seen: set[str] = set()

    def _emit(self, header: str, decl: str) -> None:
        if decl not in self._seen:
            self._seen.add(decl)
            self.sections.setdefault(header, []).append(decl)

    def add_header(self, header: str, text: str) -> None:
        text = clean_declaration(preprocess_content(text))
        self._add_types(header, text)
        for statement in _strip_bodies(text).split(";"):
            self._add_function(header, statement.strip())

    def _add_types(self, header: str, text: str) -> None:
        for match in OPAQUE_TYPEDEF_RE.finditer(text):
            kind, tag, name = match.groups()
            self.types.add(name)
            self._emit(header, f"typedef {kind} {tag} {name};")
        for match in TYPEDEF_BODY_RE.finditer(text):
            kind, tag, name = match.groups()
            self.types.add(name)
            # layout comes from the real headers when the module is compiled
            self._emit(header, f"typedef {kind} {tag} {{ ...; }} {name};")
        for match in STRUCT_BODY_RE.finditer(text):
            kind, tag = match.groups()
            self._emit(header, f"{kind} {tag} {{ ...; }};")
        for match in ENUM_RE.finditer(text):
            is_typedef, tag, body, name = match.groups()
            body = " ".join(body.split()).rstrip(", ")
            self.enumerators.update(
                item.split("=")[0].strip() for item in body.split(",") if item.strip()
            )
            if is_typedef and name:
                self.types.add(name)
                tag = f"{tag} " if tag else ""
                self._emit(header, f"typedef enum {tag}{{ {body} }} {name};")
            elif tag:
                self._emit(header, f"enum {tag} {{ {body} }};")
        for match in SCALAR_TYPEDEF_RE.finditer(text):
            base, name = match.groups()
            if base.split()[0] in ("struct", "union", "enum"):
                continue
            if all(t in self.types for t in _type_names(base)):
                self.types.add(name)
                self._emit(header, f"typedef {base} {name};")

    def _add_function(self, header: str, statement: str) -> None:
        if not statement.endswith(")") or statement.startswith("typedef") or "=" in statement:
            return
        paren = statement.find("(")
        if paren < 0:
            return
        head = statement[:paren].rstrip()
        match = re.search(r"([A-Za-z_]\w*)$", head)
        if match is None:
            return
        name = match.group(1)
        ret = head[: match.start()].strip()
        words = set(re.findall(r"\w+", ret))
        if not ret or "(" in ret or words & {"static", "inline"} or name in self.functions:
            return
        params = " ".join(statement[paren + 1 : -1].split()) or "void"

        param_types = _param_types(params)
        if param_types is None or not all(
            t in self.types for t in _type_names(ret) + param_types
        ):
            self.skipped.append(name)
            logger.debug("skipping %s: uses types cffi cannot declare here", name)
            return

        stars = "*" * ret.count("*")
        base = " ".join(ret.replace("*", " ").split())
        decl = f"{base} {stars}{self.prefix.apply(name)}({params});"
        self.functions[name] = decl
        self._emit(header, decl)


def _int_literal(value: str) -> int:
    if re.fullmatch(r"-?0\d+", value):
        return int(value, 8)
    return int(value, 0)


def active_macros(dump: str) -> dict[str, int]:
    """Integer-valued macros still defined at the end of a macro dump.

    ``dump`` is ``cc -E -dM`` output, or ``cl /E /d1PP`` output where
    ``#undef`` and redefinitions appear in source order.
    """
    values = {}
    for line in dump.splitlines():
        undef = UNDEF_RE.match(line)
        if undef:
            values.pop(undef.group(1), None)
            continue
        match = MACRO_RE.match(line)
        if match:
            values[match.group(1)] = _int_literal(match.group(2))
            continue
        define = DEFINE_NAME_RE.match(line)
        if define:
            values.pop(define.group(1), None)
    return values


def _macro_constants(
    include_dir: Path, headers: Iterable[str], macros: str, exclude: set
) -> list[str]:
    names = {}
    for header in headers:
        text = (Path(include_dir) / header).read_text(encoding="utf-8", errors="replace")
        for name in DEFINE_NAME_RE.findall(text):
            names.setdefault(name, None)
    values = active_macros(macros)
    return [
        f"#define {name} {values[name]}"
        for name in names
        if name in values and name not in exclude
    ]


def generate_cdef(
    target: TargetSpec,
    include_dir: Path,
    expanded: str,
    headers: Sequence[str],
    required: Sequence[str] = (),
    prefix: SymbolPrefix = PREFIX,
    macros: str = "",
) -> str:
    """Build the cdef text from preprocessor output ``expanded``.

    ``macros`` is the compiler's macro dump for the same source; only names
    defined in ``headers`` are taken from it.
    """
    surface = _Surface(prefix)
    for header, text in split_by_header(expanded, include_dir).items():
        surface.add_header(header, text)

    missing = [name for name in required if name not in surface.functions]
    if missing:
        raise BindingGenerationFailure(
            "required symbols absent from the header surface: " + ", ".join(missing),
            target=target.triple,
        )

    lines = [
        "/* This file is generated with tools/generate.py. Do not edit. */",
        f"/* target: {target.triple} ({target.pointer_width}-bit), prefix: {prefix} */",
        "",
        "typedef unsigned char uint8_t;",
        f"typedef {size_t_type(target)} size_t;",
        "",
    ]
    for header, decls in surface.sections.items():
        lines.append(f"/* {header} */")
        lines.extend(format_declaration(decl) for decl in decls)
        lines.append("")

    declared = surface.types | surface.enumerators | set(surface.functions)
    constants = _macro_constants(include_dir, headers, macros, declared)
    if constants:
        lines.append("/* constants */")
        lines.extend(constants)
        lines.append("")
    return "\n".join(lines)


class CompilerPreprocessor:
    """Runs the target compiler's preprocessor over a source file."""

    def __init__(self, compiler: Path, flags: Sequence[str] = (), msvc: bool = False,
                 runner: Runner = run_command):
        self.compiler = compiler
        self.flags = list(flags)
        self.msvc = msvc
        self.runner = runner

    def expand(self, source: Path, include_dirs: Sequence[Path]) -> str:
        if self.msvc:
            return self._run([self.compiler, "/nologo", "/E"], source, include_dirs)
        return self._run([self.compiler, "-E", "-xc"], source, include_dirs)

    def macros(self, source: Path, include_dirs: Sequence[Path]) -> str:
        """Dump the macro definitions active after preprocessing ``source``."""
        if self.msvc:
            return self._run([self.compiler, "/nologo", "/E", "/d1PP"], source, include_dirs)
        return self._run([self.compiler, "-E", "-dM", "-xc"], source, include_dirs)

    def _run(self, cmd: list, source: Path, include_dirs: Sequence[Path]) -> str:
        include = "/I" if self.msvc else "-I"
        cmd = [*cmd, *self.flags, *(f"{include}{path}" for path in include_dirs)]
        result = self.runner([*cmd, source])
        if result.returncode != 0:
            raise BindingGenerationFailure(
                f"preprocessing {source.name} failed:\n{result.stdout}"
            )
        return result.stdout


class BindingGenerator:
    """Produces a :class:`~aws_lc_fips_sys.bindings.Generated` binding set."""

    def __init__(
        self,
        target: TargetSpec,
        include_dir: Path,
        preprocessor,
        secure_transport: bool = False,
        prefix: SymbolPrefix = PREFIX,
    ):
        self.target = target
        self.include_dir = Path(include_dir)
        self.preprocessor = preprocessor
        self.secure_transport = secure_transport
        self.prefix = prefix

    @property
    def components(self) -> list[str]:
        return ["crypto", "ssl"] if self.secure_transport else ["crypto"]

    @property
    def headers(self) -> list[str]:
        return [h for c in self.components for h in PUBLIC_HEADERS[c]]

    @property
    def required(self) -> list[str]:
        return [f for c in self.components for f in REQUIRED_FUNCTIONS[c]]

    def output_name(self) -> str:
        return f"{self.target.binding_stem}_{'_'.join(self.components)}.h"

    def generate(self, out_dir: Path) -> Generated:
        for header in self.headers:
            if not (self.include_dir / header).is_file():
                raise BindingGenerationFailure(
                    f"public header {header} not found in {self.include_dir}",
                    target=self.target.triple,
                )

        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        umbrella = out_dir / f"{self.target.binding_stem}_umbrella.c"
        _write_if_changed(umbrella, "".join(f"#include <{h}>\n" for h in self.headers))

        logger.info("generating bindings for %s from %s", self.target, self.include_dir)
        try:
            expanded = self.preprocessor.expand(umbrella, [self.include_dir])
            macros = self.preprocessor.macros(umbrella, [self.include_dir])
        except BindingGenerationFailure as e:
            e.target = e.target or self.target.triple
            raise
        cdef = generate_cdef(
            self.target,
            self.include_dir,
            expanded,
            self.headers,
            self.required,
            self.prefix,
            macros,
        )
        try:
            FFI().cdef(cdef)
        except (CDefError, FFIError) as e:
            raise BindingGenerationFailure(
                f"generated declarations do not parse: {e}", target=self.target.triple
            ) from e

        path = out_dir / self.output_name()
        if _write_if_changed(path, cdef):
            logger.info("updated %s", path)
        else:
            logger.info("no changes to %s", path)
        return Generated(path)


def _write_if_changed(path: Path, content: str) -> bool:
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return False
    path.write_text(content, encoding="utf-8", newline="\n")
    return True
