"""Shared fixtures: fake subprocesses, fake tool lookup and synthetic archives."""

import re
import struct
import subprocess
from pathlib import Path

import pytest

from aws_lc_fips_sys.config import BuildConfig, BuildSettings
from aws_lc_fips_sys.symbols import PREFIX

HOST = "x86_64-unknown-linux-gnu"

CONDITIONAL_RE = re.compile(r"#\s*(ifdef|ifndef|if)\s+(?:defined\s*\(\s*)?(\w+)")

FIXTURE_HEADERS = {
    "openssl/base.h": """
#ifndef OPENSSL_HEADER_BASE_H
#define OPENSSL_HEADER_BASE_H
#include <stdint.h>
#define OPENSSL_VERSION_NUMBER 0x1010107f
typedef struct aes_key_st AES_KEY;
typedef struct engine_st ENGINE;
typedef struct env_md_ctx_st EVP_MD_CTX;
typedef struct env_md_st EVP_MD;
typedef struct evp_aead_ctx_st EVP_AEAD_CTX;
typedef struct evp_aead_st EVP_AEAD;
typedef struct ssl_ctx_st SSL_CTX;
typedef struct ssl_method_st SSL_METHOD;
typedef struct ssl_st SSL;
#endif
""",
    "openssl/crypto.h": """
#include <openssl/base.h>
/* CRYPTO_library_init initializes the library. */
void CRYPTO_library_init(void);
int FIPS_mode(void);
static inline int crypto_helper(void) { return 1; }
""",
    "openssl/err.h": """
uint32_t ERR_get_error(void);
void ERR_error_string_n(uint32_t packed_error, char *buf, size_t len);
void ERR_print_errors_cb(int (*callback)(const char *str, size_t len, void *ctx), void *ctx);
""",
    "openssl/rand.h": """
int RAND_bytes(uint8_t *buf, size_t len);
""",
    "openssl/aes.h": """
#define AES_ENCRYPT 1
#define AES_DECRYPT 0
#define AES_MAXNR 14
#define AES_BLOCK_SIZE 16
struct aes_key_st {
  uint32_t rd_key[60];
  unsigned rounds;
};
int AES_set_encrypt_key(const uint8_t *key, unsigned bits, AES_KEY *aeskey);
int AES_set_decrypt_key(const uint8_t *key, unsigned bits, AES_KEY *aeskey);
void AES_encrypt(const uint8_t *in, uint8_t *out, const AES_KEY *key);
void AES_ctr128_encrypt(const uint8_t *in, uint8_t *out, size_t len,
                        const AES_KEY *key, uint8_t ivec[16],
                        uint8_t ecount_buf[16], unsigned int *num);
void AES_cbc_encrypt(const uint8_t *in, uint8_t *out, size_t len,
                     const AES_KEY *key, uint8_t *ivec, const int enc);
""",
    "openssl/digest.h": """
#define EVP_MAX_MD_SIZE 64
const EVP_MD *EVP_sha256(void);
EVP_MD_CTX *EVP_MD_CTX_new(void);
void EVP_MD_CTX_free(EVP_MD_CTX *ctx);
int EVP_DigestInit_ex(EVP_MD_CTX *ctx, const EVP_MD *type, ENGINE *engine);
int EVP_DigestUpdate(EVP_MD_CTX *ctx, const void *data, size_t len);
int EVP_DigestFinal_ex(EVP_MD_CTX *ctx, uint8_t *md_out, unsigned int *out_size);
""",
    "openssl/sha.h": """
#define SHA256_DIGEST_LENGTH 32
uint8_t *SHA256(const uint8_t *data, size_t len, uint8_t out[32]);
""",
    "openssl/hmac.h": """
uint8_t *HMAC(const EVP_MD *evp_md, const void *key, size_t key_len,
              const uint8_t *data, size_t data_len, uint8_t *out,
              unsigned int *out_len);
""",
    "openssl/aead.h": """
#define EVP_AEAD_DEFAULT_TAG_LENGTH 0
enum evp_aead_direction_t {
  evp_aead_open,
  evp_aead_seal,
};
const EVP_AEAD *EVP_aead_aes_256_gcm(void);
EVP_AEAD_CTX *EVP_AEAD_CTX_new(const EVP_AEAD *aead, const uint8_t *key,
                               size_t key_len, size_t tag_len);
void EVP_AEAD_CTX_free(EVP_AEAD_CTX *ctx);
int EVP_AEAD_CTX_seal(const EVP_AEAD_CTX *ctx, uint8_t *out, size_t *out_len,
                      size_t max_out_len, const uint8_t *nonce, size_t nonce_len,
                      const uint8_t *in, size_t in_len, const uint8_t *ad,
                      size_t ad_len);
int EVP_AEAD_CTX_open(const EVP_AEAD_CTX *ctx, uint8_t *out, size_t *out_len,
                      size_t max_out_len, const uint8_t *nonce, size_t nonce_len,
                      const uint8_t *in, size_t in_len, const uint8_t *ad,
                      size_t ad_len);
""",
    "openssl/ssl.h": """
#define SSL_ERROR_NONE 0
#define TLS1_3_VERSION 0x0304
const SSL_METHOD *TLS_method(void);
SSL_CTX *SSL_CTX_new(const SSL_METHOD *method);
void SSL_CTX_free(SSL_CTX *ctx);
SSL *SSL_new(SSL_CTX *ctx);
void SSL_free(SSL *ssl);
""",
}

CRYPTO_EXPORTS = [
    "CRYPTO_library_init",
    "FIPS_mode",
    "ERR_get_error",
    "ERR_error_string_n",
    "ERR_print_errors_cb",
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
    "SHA256",
    "HMAC",
    "EVP_aead_aes_256_gcm",
    "EVP_AEAD_CTX_new",
    "EVP_AEAD_CTX_free",
    "EVP_AEAD_CTX_seal",
    "EVP_AEAD_CTX_open",
]

SSL_EXPORTS = ["TLS_method", "SSL_CTX_new", "SSL_CTX_free", "SSL_new", "SSL_free"]

# Every function the shipped declaration sets name, as a FIPS build exports them
SHIPPED_CRYPTO_EXPORTS = """
CRYPTO_library_init CRYPTO_is_confidential_build FIPS_mode FIPS_mode_set
awslc_version_string ERR_get_error ERR_peek_error ERR_peek_last_error
ERR_error_string_n ERR_reason_error_string ERR_clear_error RAND_bytes
RAND_priv_bytes AES_set_encrypt_key AES_set_decrypt_key AES_encrypt AES_decrypt
AES_ctr128_encrypt AES_ecb_encrypt AES_cbc_encrypt EVP_sha1 EVP_sha224
EVP_sha256 EVP_sha384 EVP_sha512 EVP_MD_CTX_new EVP_MD_CTX_free
EVP_DigestInit_ex EVP_DigestUpdate EVP_DigestFinal_ex EVP_Digest EVP_MD_size
EVP_MD_block_size SHA256 HMAC HMAC_CTX_new HMAC_CTX_free HMAC_Init_ex
HMAC_Update HMAC_Final EVP_aead_aes_128_gcm EVP_aead_aes_256_gcm
EVP_AEAD_key_length EVP_AEAD_nonce_length EVP_AEAD_max_overhead
EVP_AEAD_max_tag_len EVP_AEAD_CTX_new EVP_AEAD_CTX_free EVP_AEAD_CTX_seal
EVP_AEAD_CTX_open
""".split()

SHIPPED_SSL_EXPORTS = """
TLS_method TLS_client_method TLS_server_method SSL_CTX_new SSL_CTX_free
SSL_CTX_set_min_proto_version SSL_CTX_set_max_proto_version SSL_new SSL_free
SSL_set_fd SSL_connect SSL_accept SSL_read SSL_write SSL_shutdown SSL_get_error
""".split()


def _ar_header(name: str, size: int) -> bytes:
    return (
        name.ljust(16).encode("ascii")
        + b"0".ljust(12)
        + b"0".ljust(6)
        + b"0".ljust(6)
        + b"644".ljust(8)
        + str(size).encode("ascii").ljust(10)
        + b"`\n"
    )


def _ar_member(name: str, payload: bytes) -> bytes:
    data = _ar_header(name, len(payload)) + payload
    if len(payload) % 2:
        data += b"\n"
    return data


def make_gnu_archive(path: Path, symbols, sym64=False) -> Path:
    """Write a GNU ar archive whose symbol index lists ``symbols``."""
    fmt, name = (">Q", "/SYM64/") if sym64 else (">I", "/")
    index = struct.pack(fmt, len(symbols))
    index += b"".join(struct.pack(fmt, 0) for _ in symbols)
    index += b"".join(s.encode("ascii") + b"\0" for s in symbols)
    data = b"!<arch>\n" + _ar_member(name, index) + _ar_member("crypto.o/", b"\x7fELF")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def make_bsd_archive(path: Path, symbols) -> Path:
    """Write a BSD (Mach-O style) archive with a ``__.SYMDEF SORTED`` index."""
    strtab = b""
    entries = b""
    for symbol in symbols:
        entries += struct.pack("<II", len(strtab), 0)
        strtab += symbol.encode("ascii") + b"\0"
    payload = struct.pack("<I", len(entries)) + entries
    payload += struct.pack("<I", len(strtab)) + strtab
    data = b"!<arch>\n" + _ar_member("__.SYMDEF SORTED", payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def write_headers(include_dir: Path, omit=()) -> Path:
    for name, text in FIXTURE_HEADERS.items():
        if name in omit:
            continue
        path = include_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return include_dir


class FakeRunner:
    """Stands in for ``run_command``; records every command.

    CMake steps succeed unless named in ``fail``; ``--install`` lays out
    archives and headers the way the real install does.
    """

    def __init__(
        self,
        compiler_banner="gcc (GCC) 12.2.0\nCopyright (C) 2022 Free Software Foundation, Inc.",
        cmake_banner="cmake version 3.27.4",
        fail=None,
        omit_headers=(),
        crypto_exports=None,
    ):
        self.compiler_banner = compiler_banner
        self.cmake_banner = cmake_banner
        self.fail = fail or {}
        self.omit_headers = omit_headers
        self.crypto_exports = CRYPTO_EXPORTS if crypto_exports is None else crypto_exports
        self.calls = []
        self.install_dir = None
        self.libssl = False

    @property
    def cmake_steps(self):
        steps = []
        for cmd in self.calls:
            if Path(cmd[0]).name == "cmake" and "--version" not in cmd:
                steps.append("configure" if "-S" in cmd else cmd[1])
        return steps

    def _result(self, cmd, code=0, out=""):
        return subprocess.CompletedProcess(cmd, code, stdout=out)

    def __call__(self, cmd, cwd=None, env=None):
        cmd = [str(arg) for arg in cmd]
        self.calls.append(cmd)
        tool = Path(cmd[0]).name

        if tool != "cmake":
            return self._result(cmd, out=self.compiler_banner)
        if "--version" in cmd:
            return self._result(cmd, out=self.cmake_banner)

        step = "configure" if "-S" in cmd else cmd[1]
        if step in self.fail:
            code, output = self.fail[step]
            return self._result(cmd, code, output)
        if step == "configure":
            for arg in cmd:
                if arg.startswith("-DCMAKE_INSTALL_PREFIX="):
                    self.install_dir = Path(arg.split("=", 1)[1])
            self.libssl = "-DBUILD_LIBSSL=ON" in cmd
        elif step == "--install":
            self._install()
        return self._result(cmd, out=f"-- {step} done\n")

    def _install(self):
        lib = self.install_dir / "lib"
        make_gnu_archive(
            lib / "libcrypto.a",
            [PREFIX.apply(n) for n in self.crypto_exports] + ["aws_lc_fips_0_6_0_internal_helper"],
        )
        if self.libssl:
            make_gnu_archive(lib / "libssl.a", [PREFIX.apply(n) for n in SSL_EXPORTS])
        write_headers(self.install_dir / "include", omit=self.omit_headers)


class FakeWhich:
    """``shutil.which`` over a fixed set of tool names."""

    def __init__(self, bin_dir: Path, names):
        self.bin_dir = bin_dir
        self.names = set(names)
        self.queries = []

    def __call__(self, name):
        self.queries.append(name)
        if name in self.names or Path(name).name in self.names:
            return str(self.bin_dir / Path(name).name)
        return None


class FakePreprocessor:
    """Expands the umbrella source by concatenating headers with line markers.

    ``macros`` evaluates ``#ifdef``/``#ifndef``/``#if defined()``/``#else``
    and ``#undef`` over the same headers, starting from ``predefined``, and
    returns a ``-dM`` style dump.
    """

    def __init__(self, predefined=None):
        self.calls = 0
        self.macro_calls = 0
        self.predefined = {"__x86_64__": "1", "__SIZEOF_POINTER__": "8"} if predefined is None else predefined

    def _headers(self, source, include_dirs):
        include_dir = Path(include_dirs[0])
        for line in Path(source).read_text(encoding="utf-8").splitlines():
            yield include_dir / line.strip()[len("#include <") : -1]

    def expand(self, source, include_dirs):
        self.calls += 1
        chunks = ['# 1 "/usr/include/stdint.h"\ntypedef unsigned long uint64_t;\nint not_ours(void);\n']
        for path in self._headers(source, include_dirs):
            chunks.append(f'# 1 "{path}"\n{path.read_text(encoding="utf-8")}\n')
        return "".join(chunks)

    def macros(self, source, include_dirs):
        self.macro_calls += 1
        defined = dict(self.predefined)
        stack = []
        for path in self._headers(source, include_dirs):
            for line in path.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                cond = CONDITIONAL_RE.match(line)
                if cond:
                    kind, name = cond.groups()
                    stack.append((name in defined) != (kind == "ifndef"))
                elif line.startswith("#else"):
                    stack[-1] = not stack[-1]
                elif line.startswith("#endif"):
                    stack.pop()
                elif all(stack):
                    define = re.match(r"#\s*define\s+(\w+)\s*(.*)", line)
                    undef = re.match(r"#\s*undef\s+(\w+)", line)
                    if define:
                        defined[define.group(1)] = define.group(2)
                    elif undef:
                        defined.pop(undef.group(1), None)
        return "".join(f"#define {name} {value}\n" for name, value in defined.items())


NATIVE_TOOLS = ["cc", "gcc", "cmake", "perl", "go", "as", "ninja"]


@pytest.fixture
def fake_which(tmp_path):
    return FakeWhich(tmp_path / "bin", NATIVE_TOOLS)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def source_tree(tmp_path):
    source = tmp_path / "aws-lc"
    (source / "generated-include").mkdir(parents=True)
    (source / "CMakeLists.txt").write_text("project(AWSLC C CXX ASM)\n", encoding="utf-8")
    return source


@pytest.fixture
def fixture_headers(tmp_path):
    return write_headers(tmp_path / "include")


@pytest.fixture
def make_settings(tmp_path, source_tree):
    def make(target=HOST, host=HOST, tools=None, allow_host_assembler=False, **flags):
        return BuildSettings(
            config=BuildConfig(**flags),
            target=target,
            host=host,
            source_dir=source_tree,
            out_dir=tmp_path / "out",
            tools=tools or {},
            allow_host_assembler=allow_host_assembler,
        )

    return make
