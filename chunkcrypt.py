#!/usr/bin/env python3
# chunkcrypt.py
#
# Chunked file encryptor/decryptor for a single secp256k1 (Ethereum-style) keypair.
# Artifact format: header-less concatenation of per-chunk ECIES envelopes
# (eciespy / eciesjs: secp256k1 + HKDF-SHA256 + AES-256-GCM), one envelope per chunk.
# The chunk size used is recorded in the artifact name: <file>.<chunk_size>.eip5630
#
# Dependencies: stdlib + cryptography + pycryptodome + eciespy

from __future__ import annotations

import logging
import os
import secrets
import string
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from getpass import getpass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import ecies
from Crypto.Hash import keccak
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

log = logging.getLogger("chunkcrypt")


# =========================
# Constants / Limits
# =========================

EXTENSION = ".eip5630"

# "Unspecified" chunk size; realised as DEFAULT_CHUNK_SIZE (whole file as one chunk).
CHUNK_SIZE_UNSPECIFIED = 0
DEFAULT_CHUNK_SIZE = 2_000_000_000

PRIVATE_KEY_HEX_LEN = 64
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

PUBLIC_KEY_LEN = 65  # uncompressed SEC1 point, 0x04 || X || Y
NONCE_LEN = 16
TAG_LEN = 16
ENVELOPE_OVERHEAD = PUBLIC_KEY_LEN + NONCE_LEN + TAG_LEN  # 97

KEY_PROMPT = "Enter your private key (press enter to abort): "

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_JOB_FAILED = 2
EXIT_INTERRUPTED = 130


# =========================
# Errors
# =========================

class ChunkCryptError(Exception):
    pass


class UsageError(ChunkCryptError):
    def __init__(self, message: str, show_help: bool = False) -> None:
        super().__init__(message)
        self.show_help = show_help


class InvalidKeyError(ChunkCryptError):
    pass


class KeyEntryAborted(ChunkCryptError):
    pass


class CipherError(ChunkCryptError):
    pass


class FormatError(ChunkCryptError):
    pass


# =========================
# Configuration
# =========================

@dataclass(frozen=True)
class Settings:
    jobs: int = 1
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        raw_jobs = env.get("CHUNKCRYPT_JOBS", "").strip()
        jobs = defaults.jobs
        if raw_jobs:
            try:
                jobs = int(raw_jobs)
            except ValueError as ex:
                raise UsageError(f"CHUNKCRYPT_JOBS must be an integer, got {raw_jobs!r}") from ex
            if jobs < 1:
                raise UsageError(f"CHUNKCRYPT_JOBS must be at least 1, got {jobs}")

        level = env.get("CHUNKCRYPT_LOG_LEVEL", "").strip().upper() or defaults.log_level
        if not isinstance(logging.getLevelName(level), int):
            raise UsageError(f"CHUNKCRYPT_LOG_LEVEL is not a logging level: {level!r}")

        return cls(jobs=jobs, log_level=level)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")
    log.setLevel(level)


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def show_available_commands() -> None:
    print("Available commands:")
    print("    encrypt [--chunk-size <size_in_bytes>] <file1> <file2> ...")
    print("    decrypt [--chunk-size <size_in_bytes>] <file1> <file2> ...")


def read_exact(f: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = f.read(n - len(buf))
        if not chunk:
            raise FormatError("Unexpected EOF: the file changed while it was being read.")
        buf += chunk
    return bytes(buf)


def _fsync_fileobj_best_effort(f: BinaryIO) -> None:
    f.flush()
    try:
        os.fsync(f.fileno())
    except OSError:
        pass


def _fsync_dir_best_effort(dir_path: Path) -> None:
    if os.name != "posix":
        return
    try:
        fd = os.open(str(dir_path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except OSError:
        pass


def _create_tmp_file(parent_dir: Path, base_name: str) -> Tuple[Path, BinaryIO]:
    for _ in range(128):
        tmp_path = parent_dir / f".{base_name}.{secrets.token_hex(8)}.part"
        try:
            fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            continue
        return tmp_path, os.fdopen(fd, "wb", closefd=True)

    raise ChunkCryptError(f"Failed to create a unique temporary file in {parent_dir} (too many collisions).")


def _atomic_replace_file(tmp_path: Path, final_path: Path) -> None:
    os.replace(tmp_path, final_path)
    _fsync_dir_best_effort(final_path.parent)


# =========================
# Keypair
# =========================

def is_valid_private_key(private_key: str) -> bool:
    if len(private_key) != PRIVATE_KEY_HEX_LEN:
        return False
    if not all(c in string.hexdigits for c in private_key):
        return False
    return 0 < int(private_key, 16) < SECP256K1_ORDER


def _load_private_key(private_key: str) -> ec.EllipticCurvePrivateKey:
    return ec.derive_private_key(int(private_key, 16), ec.SECP256K1())


def public_key_to_address(public_key: bytes) -> str:
    """Ethereum address: last 20 bytes of keccak256 over the point without its 0x04 prefix."""
    digest = keccak.new(digest_bits=256, data=public_key[1:]).digest()
    return "0x" + digest[-20:].hex()


@dataclass(frozen=True)
class Keypair:
    private_key: str = field(repr=False)
    public_key: bytes
    address: str

    @classmethod
    def from_hex(cls, private_key: str) -> "Keypair":
        if private_key[:2].lower() == "0x":
            private_key = private_key[2:]
        if not is_valid_private_key(private_key):
            raise InvalidKeyError("You entered an invalid private key.")
        public_key = _load_private_key(private_key).public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        )
        return cls(
            private_key=private_key.lower(),
            public_key=public_key,
            address=public_key_to_address(public_key),
        )


def prompt_private_key(prompt: Callable[[str], str] = getpass) -> Keypair:
    """
    Ask for the private key until a valid one is entered.
    Empty input aborts with KeyEntryAborted.
    """
    while True:
        entered = prompt(KEY_PROMPT).strip()
        if entered == "":
            raise KeyEntryAborted("Key entry aborted.")
        try:
            return Keypair.from_hex(entered)
        except InvalidKeyError as ex:
            eprint(str(ex))


# =========================
# Cipher
# =========================

class ChunkCipher(Protocol):
    overhead: int

    def encrypt(self, public_key: bytes, plaintext: bytes) -> bytes:
        ...

    def decrypt(self, private_key: str, envelope: bytes) -> bytes:
        ...


class Eip5630Cipher:
    """
    ECIES over secp256k1, as written by eciespy and eciesjs.

    Envelope: ephemeral_pubkey(65) || nonce(16) || tag(16) || ciphertext, with the
    AES-256-GCM key derived by HKDF-SHA256 over the ephemeral key and the full
    uncompressed shared point. Every envelope is exactly ``overhead`` bytes longer
    than its plaintext.
    """

    overhead = ENVELOPE_OVERHEAD

    def encrypt(self, public_key: bytes, plaintext: bytes) -> bytes:
        try:
            ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
        except ValueError as ex:
            raise CipherError(f"Invalid recipient public key: {ex}") from ex

        envelope = ecies.encrypt(public_key.hex(), plaintext)
        if len(envelope) != len(plaintext) + self.overhead:
            raise CipherError(
                f"Internal: envelope is {len(envelope) - len(plaintext)} bytes larger than its "
                f"plaintext, expected {self.overhead}."
            )
        return envelope

    def decrypt(self, private_key: str, envelope: bytes) -> bytes:
        if len(envelope) < self.overhead:
            raise CipherError(
                f"Envelope too short: {len(envelope)} bytes, need at least {self.overhead}."
            )
        try:
            ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), envelope[:PUBLIC_KEY_LEN])
        except ValueError as ex:
            raise CipherError("Malformed envelope: invalid ephemeral public key.") from ex

        try:
            return ecies.decrypt(private_key, envelope)
        except (ValueError, TypeError) as ex:
            raise CipherError(f"Decryption failed: wrong private key or corrupted file ({ex}).") from ex


# =========================
# Argument interpreter
# =========================

class Mode(Enum):
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"

    def progress_verb(self) -> str:
        return "Encrypting" if self is Mode.ENCRYPT else "Decrypting"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Collecting:
    mode: Mode


@dataclass(frozen=True)
class ChoosingChunkSize:
    resume: Collecting


ParseState = Union[Idle, Collecting, ChoosingChunkSize]


@dataclass(frozen=True)
class AddFile:
    path: Path


@dataclass(frozen=True)
class SetChunkSize:
    value: int
    token: str


Effect = Optional[Union[AddFile, SetChunkSize]]


def parse_chunk_size(token: str) -> int:
    """Lenient parse: anything that is not a positive integer becomes the unspecified sentinel."""
    try:
        value = int(token.strip())
    except ValueError:
        return CHUNK_SIZE_UNSPECIFIED
    return value if value > 0 else CHUNK_SIZE_UNSPECIFIED


def step(
    state: ParseState,
    token: str,
    exists: Callable[[Path], bool] = Path.exists,
) -> Tuple[ParseState, Effect]:
    if isinstance(state, Idle):
        if token == Mode.ENCRYPT.value:
            return Collecting(Mode.ENCRYPT), None
        if token == Mode.DECRYPT.value:
            return Collecting(Mode.DECRYPT), None
        raise UsageError(f'"{token}" is not a valid command.', show_help=True)

    if isinstance(state, ChoosingChunkSize):
        return state.resume, SetChunkSize(parse_chunk_size(token), token)

    if token == "--chunk-size":
        return ChoosingChunkSize(resume=state), None

    if state.mode is Mode.DECRYPT and not token.endswith(EXTENSION):
        raise UsageError(
            f'"{token}" is not a valid encrypted file. Encrypted files must '
            f'end with the "{EXTENSION}" extension.'
        )

    full_path = Path(os.path.abspath(token))
    if not exists(full_path):
        raise UsageError(f'"{token}" is not a valid file path.')
    return state, AddFile(full_path)


@dataclass(frozen=True)
class FileJob:
    source_path: Path
    mode: Mode
    chunk_size: int


@dataclass(frozen=True)
class Invocation:
    mode: Mode
    chunk_size: int
    files: Tuple[Path, ...]

    def jobs(self) -> List[FileJob]:
        return [FileJob(path, self.mode, self.chunk_size) for path in self.files]


def parse_args(
    tokens: Sequence[str],
    exists: Callable[[Path], bool] = Path.exists,
) -> Invocation:
    state: ParseState = Idle()
    chunk_size = CHUNK_SIZE_UNSPECIFIED
    files: List[Path] = []

    for token in tokens:
        state, effect = step(state, token, exists)
        if isinstance(effect, AddFile):
            files.append(effect.path)
        elif isinstance(effect, SetChunkSize):
            if effect.value == CHUNK_SIZE_UNSPECIFIED and effect.token.strip() != "0":
                log.warning(
                    'Chunk size "%s" is not a positive integer; each file is processed as one chunk.',
                    effect.token,
                )
            chunk_size = effect.value

    if isinstance(state, Idle):
        raise UsageError("No command given.", show_help=True)
    if isinstance(state, ChoosingChunkSize):
        raise UsageError("--chunk-size requires a value.")
    if not files:
        raise UsageError("No input files given.", show_help=True)

    return Invocation(mode=state.mode, chunk_size=chunk_size, files=tuple(files))


# =========================
# Chunked pipeline
# =========================

def effective_chunk_size(chunk_size: int) -> int:
    return chunk_size if chunk_size > 0 else DEFAULT_CHUNK_SIZE


def chunk_count(file_size: int, window: int) -> int:
    if window <= 0:
        raise ValueError("Internal: window must be positive.")
    return (file_size + window - 1) // window


def encrypted_path(source_path: Path, chunk_size: int) -> Path:
    return source_path.with_name(f"{source_path.name}.{chunk_size}{EXTENSION}")


def _split_encrypted_name(name: str) -> Tuple[str, Optional[int]]:
    # "<original>.<chunk_size>.eip5630" -> ("<original>", chunk_size)
    stem = name[: -len(EXTENSION)] if name.endswith(EXTENSION) else name
    original, dot, literal = stem.rpartition(".")
    if dot and original and literal.isascii() and literal.isdigit():
        return original, int(literal)
    return stem, None


def decrypted_path(source_path: Path) -> Path:
    original, _ = _split_encrypted_name(source_path.name)
    if not original:
        raise FormatError(f"Cannot derive an output name from {source_path.name!r}.")
    return source_path.with_name(original)


def chunk_size_from_name(source_path: Path) -> Optional[int]:
    _, chunk_size = _split_encrypted_name(source_path.name)
    return chunk_size if chunk_size else None


def resolve_decrypt_chunk_size(job: FileJob) -> int:
    recorded = chunk_size_from_name(job.source_path)
    if job.chunk_size > 0:
        if recorded is not None and recorded != job.chunk_size:
            log.warning(
                "%s records chunk size %d but --chunk-size %d was given; using %d.",
                job.source_path.name, recorded, job.chunk_size, job.chunk_size,
            )
        return job.chunk_size
    if recorded is not None:
        return recorded
    log.warning(
        "%s does not record a chunk size; assuming %d.", job.source_path.name, DEFAULT_CHUNK_SIZE
    )
    return DEFAULT_CHUNK_SIZE


def iter_chunks(f: BinaryIO, file_size: int, window: int) -> Iterator[bytes]:
    """Yield consecutive windows of ``f``; the last one is clamped to the file end."""
    for index in range(chunk_count(file_size, window)):
        offset = index * window
        f.seek(offset)
        yield read_exact(f, min(window, file_size - offset))


@dataclass(frozen=True)
class JobResult:
    job: FileJob
    output_path: Optional[Path] = None
    error: Optional[ChunkCryptError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_job(job: FileJob, keypair: Keypair, cipher: Optional[ChunkCipher] = None) -> Path:
    """
    Transform one file chunk by chunk and write the results, in order, to its output path.

    Output goes to a temporary file beside the destination and is renamed into place
    only once every chunk has been written; on failure nothing is left behind.
    """
    cipher = cipher or Eip5630Cipher()
    source = job.source_path

    if job.mode is Mode.ENCRYPT:
        chunk_size = effective_chunk_size(job.chunk_size)
        window = chunk_size
        out_path = encrypted_path(source, chunk_size)
        transform = partial(cipher.encrypt, keypair.public_key)
    else:
        chunk_size = resolve_decrypt_chunk_size(job)
        window = chunk_size + cipher.overhead
        out_path = decrypted_path(source)
        transform = partial(cipher.decrypt, keypair.private_key)

    log.info("    %s -> %s", source, out_path)

    try:
        file_size = source.stat().st_size
        num_chunks = chunk_count(file_size, window)
        log.info("numChunks: %d", num_chunks)

        if job.mode is Mode.DECRYPT and num_chunks and file_size - (num_chunks - 1) * window <= cipher.overhead:
            raise FormatError(
                f"{source.name} is truncated or was not encrypted with chunk size {chunk_size}."
            )

        tmp_path, tmp_f = _create_tmp_file(out_path.parent, out_path.name)
        try:
            with tmp_f, open(source, "rb") as in_f:
                for index, chunk in enumerate(iter_chunks(in_f, file_size, window)):
                    log.debug("reading chunk %d...", index)
                    try:
                        result = transform(chunk)
                    except ChunkCryptError:
                        raise
                    except Exception as ex:
                        raise CipherError(
                            f"Chunk {index} of {source.name} failed: {type(ex).__name__}: {ex}"
                        ) from ex
                    if job.mode is Mode.DECRYPT and index < num_chunks - 1 and len(result) != chunk_size:
                        raise FormatError(
                            f"Chunk {index} of {source.name} decrypted to {len(result)} bytes, "
                            f"expected {chunk_size}."
                        )
                    tmp_f.write(result)
                _fsync_fileobj_best_effort(tmp_f)
            _atomic_replace_file(tmp_path, out_path)
        except Exception:
            _unlink_best_effort(tmp_path)
            raise

    except OSError as ex:
        raise ChunkCryptError(f"I/O error while processing {source}: {ex}") from ex

    return out_path


def run_jobs(
    jobs: Sequence[FileJob],
    keypair: Keypair,
    cipher: Optional[ChunkCipher] = None,
    workers: int = 1,
) -> List[JobResult]:
    """Run every job and wait for all of them; a failing job does not stop its siblings."""
    cipher = cipher or Eip5630Cipher()
    results: List[JobResult] = []

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = [executor.submit(run_job, job, keypair, cipher) for job in jobs]
        for job, future in zip(jobs, futures):
            try:
                results.append(JobResult(job, output_path=future.result()))
            except ChunkCryptError as ex:
                log.error("FAIL %s | %s", job.source_path, ex)
                results.append(JobResult(job, error=ex))

    return results


# =========================
# CLI
# =========================

def main(
    argv: Optional[Sequence[str]] = None,
    prompt: Callable[[str], str] = getpass,
    settings: Optional[Settings] = None,
) -> int:
    tokens = list(sys.argv[1:] if argv is None else argv)
    if not tokens:
        show_available_commands()
        return EXIT_OK

    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    try:
        invocation = parse_args(tokens)
    except UsageError as ex:
        eprint(str(ex))
        if ex.show_help:
            show_available_commands()
        return EXIT_USAGE

    try:
        keypair = prompt_private_key(prompt)
    except KeyEntryAborted:
        return EXIT_USAGE

    log.info("%s all files for %s:", invocation.mode.progress_verb(), keypair.address)
    results = run_jobs(invocation.jobs(), keypair, workers=settings.jobs)

    failed = [r for r in results if not r.ok]
    for r in failed:
        eprint(f"Failed: {r.job.source_path}: {r.error}")
    return EXIT_JOB_FAILED if failed else EXIT_OK


def run() -> None:
    try:
        raise SystemExit(main())
    except UsageError as ex:
        eprint(f"Error: {ex}")
        raise SystemExit(EXIT_USAGE)
    except ChunkCryptError as ex:
        eprint(f"Error: {ex}")
        raise SystemExit(EXIT_JOB_FAILED)
    except KeyboardInterrupt:
        eprint("Interrupted.")
        raise SystemExit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    run()
