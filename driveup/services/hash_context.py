"""
Resumable SHA-1 state for the ``X-Oss-Hash-Ctx`` part header.

The object store verifies every part after the first against the SHA-1
state of all bytes before it. ``hashlib`` does not expose that state, so
this module drives libcrypto's ``SHA_CTX`` directly, whose chaining words,
bit counters and partial block map one to one onto the header. A pure
Python ``Sha1Accumulator`` with the same state is kept as the reference
and is used when libcrypto cannot be loaded.

Usage:
    acc = new_accumulator()
    acc.update(part_one)
    state = capture(acc, bytes_hashed=len(part_one))
    header = encode_hash_ctx(state)        # sent with part two

    # after a crash
    acc = restore(state)
    acc.update(part_two)
"""
import base64
import binascii
import ctypes
import ctypes.util
import hashlib
import json
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MASK32 = 0xFFFFFFFF
BLOCK_SIZE = 64

_INITIAL_WORDS = (0x67452301, 0xEFCDAB89, 0x98BADCFE, 0x10325476, 0xC3D2E1F0)
_BLOCK = struct.Struct(">16I")


def _rotl(value: int, count: int) -> int:
    return ((value << count) | (value >> (32 - count))) & MASK32


def _compress(h: List[int], data, offset: int) -> List[int]:
    w = list(_BLOCK.unpack_from(data, offset))
    for i in range(16, 80):
        x = w[i - 3] ^ w[i - 8] ^ w[i - 14] ^ w[i - 16]
        w.append(((x << 1) | (x >> 31)) & MASK32)

    a, b, c, d, e = h
    for i in range(0, 20):
        t = (_rotl(a, 5) + ((b & c) | (~b & d)) + e + 0x5A827999 + w[i]) & MASK32
        a, b, c, d, e = t, a, _rotl(b, 30), c, d
    for i in range(20, 40):
        t = (_rotl(a, 5) + (b ^ c ^ d) + e + 0x6ED9EBA1 + w[i]) & MASK32
        a, b, c, d, e = t, a, _rotl(b, 30), c, d
    for i in range(40, 60):
        t = (_rotl(a, 5) + ((b & c) | (b & d) | (c & d)) + e + 0x8F1BBCDC + w[i]) & MASK32
        a, b, c, d, e = t, a, _rotl(b, 30), c, d
    for i in range(60, 80):
        t = (_rotl(a, 5) + (b ^ c ^ d) + e + 0xCA62C1D6 + w[i]) & MASK32
        a, b, c, d, e = t, a, _rotl(b, 30), c, d

    return [
        (h[0] + a) & MASK32,
        (h[1] + b) & MASK32,
        (h[2] + c) & MASK32,
        (h[3] + d) & MASK32,
        (h[4] + e) & MASK32,
    ]


class Sha1Accumulator:
    """Streaming SHA-1 with an inspectable internal state."""

    name = "sha1"
    digest_size = 20
    block_size = BLOCK_SIZE

    def __init__(self, words=None, byte_count: int = 0, buffer: bytes = b""):
        self._h = list(words) if words is not None else list(_INITIAL_WORDS)
        self._count = byte_count
        self._buffer = bytes(buffer)

    @property
    def words(self) -> tuple:
        return tuple(self._h)

    @property
    def byte_count(self) -> int:
        return self._count

    @property
    def buffer(self) -> bytes:
        return self._buffer

    def update(self, data) -> None:
        view = memoryview(data).cast("B")
        size = len(view)
        if not size:
            return
        self._count += size

        offset = 0
        if self._buffer:
            need = BLOCK_SIZE - len(self._buffer)
            if size < need:
                self._buffer += view.tobytes()
                return
            self._h = _compress(self._h, self._buffer + view[:need].tobytes(), 0)
            self._buffer = b""
            offset = need

        h = self._h
        end = offset + (size - offset) // BLOCK_SIZE * BLOCK_SIZE
        for pos in range(offset, end, BLOCK_SIZE):
            h = _compress(h, view, pos)
        self._h = h
        self._buffer = view[end:].tobytes()

    def copy(self) -> "Sha1Accumulator":
        return Sha1Accumulator(self._h, self._count, self._buffer)

    def digest(self) -> bytes:
        bit_length = (self._count * 8) & 0xFFFFFFFFFFFFFFFF
        tail = self._buffer + b"\x80"
        tail += b"\x00" * ((56 - len(tail)) % BLOCK_SIZE)
        tail += struct.pack(">Q", bit_length)

        h = self._h
        for pos in range(0, len(tail), BLOCK_SIZE):
            h = _compress(h, tail, pos)
        return struct.pack(">5I", *h)

    def hexdigest(self) -> str:
        return self.digest().hex()


class _ShaCtx(ctypes.Structure):
    # OpenSSL SHA_CTX: h0..h4, Nl, Nh, data[16] (used as raw bytes), num
    _fields_ = [
        ("h", ctypes.c_uint32 * 5),
        ("Nl", ctypes.c_uint32),
        ("Nh", ctypes.c_uint32),
        ("data", ctypes.c_uint8 * BLOCK_SIZE),
        ("num", ctypes.c_uint),
    ]


def _libcrypto_candidates() -> List[str]:
    names = []
    found = ctypes.util.find_library("crypto")
    # the unversioned macOS system stub aborts the process when loaded
    if found and not found.endswith("libcrypto.dylib"):
        names.append(found)
    names.extend([
        "libcrypto.so.3",
        "libcrypto.so.1.1",
        "libcrypto.3.dylib",
        "libcrypto-3-x64.dll",
        "libcrypto-3.dll",
        "libcrypto-1_1-x64.dll",
    ])
    return names


def _load_libcrypto():
    """
    Open the libcrypto ``hashlib`` is linked against and check its SHA_CTX layout.

    Returns None when no usable library is found.
    """
    for name in _libcrypto_candidates():
        try:
            lib = ctypes.CDLL(name)
            init, update, final = lib.SHA1_Init, lib.SHA1_Update, lib.SHA1_Final
        except (OSError, AttributeError):
            continue

        ctx_pointer = ctypes.POINTER(_ShaCtx)
        init.argtypes = [ctx_pointer]
        update.argtypes = [ctx_pointer, ctypes.c_char_p, ctypes.c_size_t]
        final.argtypes = [ctypes.c_char_p, ctx_pointer]
        init.restype = update.restype = final.restype = ctypes.c_int

        ctx = _ShaCtx()
        init(ctypes.byref(ctx))
        update(ctypes.byref(ctx), b"abc", 3)
        if ctx.num != 3 or ctx.Nl != 24 or bytes(ctx.data[:3]) != b"abc":
            logger.debug("Ignoring %s: unexpected SHA_CTX layout", name)
            continue
        out = ctypes.create_string_buffer(20)
        final(out, ctypes.byref(ctx))
        if out.raw != hashlib.sha1(b"abc").digest():
            logger.debug("Ignoring %s: SHA1 self-check failed", name)
            continue

        logger.debug("Using %s for SHA-1 state", name)
        return lib
    return None


_libcrypto = _load_libcrypto()


class OpenSSLSha1Accumulator:
    """``Sha1Accumulator`` backed by libcrypto's ``SHA_CTX``, whose fields are the header's fields."""

    name = "sha1"
    digest_size = 20
    block_size = BLOCK_SIZE

    def __init__(self, words=None, byte_count: int = 0, buffer: bytes = b""):
        if _libcrypto is None:
            raise RuntimeError("libcrypto SHA-1 is not available")
        self._ctx = _ShaCtx()
        _libcrypto.SHA1_Init(ctypes.byref(self._ctx))
        if words is not None:
            self._ctx.h[:] = list(words)
        bits = byte_count * 8
        self._ctx.Nl = bits & MASK32
        self._ctx.Nh = (bits >> 32) & MASK32
        buffer = bytes(buffer)
        ctypes.memmove(self._ctx.data, buffer, len(buffer))
        self._ctx.num = len(buffer)

    @property
    def words(self) -> tuple:
        return tuple(self._ctx.h)

    @property
    def byte_count(self) -> int:
        return ((self._ctx.Nh << 32) | self._ctx.Nl) // 8

    @property
    def buffer(self) -> bytes:
        return bytes(self._ctx.data[:self._ctx.num])

    def update(self, data) -> None:
        data = bytes(data)
        if data:
            _libcrypto.SHA1_Update(ctypes.byref(self._ctx), data, len(data))

    def copy(self) -> "OpenSSLSha1Accumulator":
        clone = OpenSSLSha1Accumulator.__new__(OpenSSLSha1Accumulator)
        clone._ctx = _ShaCtx.from_buffer_copy(self._ctx)
        return clone

    def digest(self) -> bytes:
        ctx = _ShaCtx.from_buffer_copy(self._ctx)
        out = ctypes.create_string_buffer(self.digest_size)
        _libcrypto.SHA1_Final(out, ctypes.byref(ctx))
        return out.raw

    def hexdigest(self) -> str:
        return self.digest().hex()


def native_sha1_available() -> bool:
    return _libcrypto is not None


def new_accumulator(words=None, byte_count: int = 0, buffer: bytes = b""):
    """
    Accumulator for transfer work: libcrypto's when it loaded, else the Python one.

    Both expose the same ``words``/``byte_count``/``buffer`` state and agree byte for byte.
    """
    if _libcrypto is not None:
        return OpenSSLSha1Accumulator(words, byte_count, buffer)
    return Sha1Accumulator(words, byte_count, buffer)


@dataclass(frozen=True)
class HashState:
    """
    Snapshot of a SHA-1 accumulator.

    ``nl``/``nh`` are the low/high halves of the processed length in bits,
    the layout OpenSSL's ``SHA_CTX`` uses and the header expects. ``data``
    holds the unconsumed partial block and ``num`` its length.
    """
    h0: int
    h1: int
    h2: int
    h3: int
    h4: int
    nl: int = 0
    nh: int = 0
    data: bytes = b""
    num: int = 0

    @property
    def bit_count(self) -> int:
        return (self.nh << 32) | self.nl

    @property
    def byte_count(self) -> int:
        return self.bit_count // 8

    def to_dict(self) -> Dict[str, Any]:
        return {
            "h0": self.h0,
            "h1": self.h1,
            "h2": self.h2,
            "h3": self.h3,
            "h4": self.h4,
            "nl": self.nl,
            "nh": self.nh,
            "data": base64.b64encode(self.data).decode("ascii"),
            "num": self.num,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "HashState":
        try:
            data = base64.b64decode(raw.get("data") or "", validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid hash state buffer: {exc}") from exc
        return cls(
            h0=int(raw["h0"]),
            h1=int(raw["h1"]),
            h2=int(raw["h2"]),
            h3=int(raw["h3"]),
            h4=int(raw["h4"]),
            nl=int(raw.get("nl", 0)),
            nh=int(raw.get("nh", 0)),
            data=data,
            num=int(raw.get("num", 0)),
        )


def capture(accumulator, bytes_hashed: Optional[int] = None) -> HashState:
    """
    Snapshot an accumulator.

    Args:
        accumulator: Accumulator to snapshot (left untouched)
        bytes_hashed: If given, the number of bytes the caller believes were fed in

    Raises:
        ValueError: if ``bytes_hashed`` disagrees with the accumulator
    """
    if bytes_hashed is not None and bytes_hashed != accumulator.byte_count:
        raise ValueError(
            f"accumulator has seen {accumulator.byte_count} bytes, expected {bytes_hashed}"
        )

    bits = accumulator.byte_count * 8
    h0, h1, h2, h3, h4 = accumulator.words
    buffer = accumulator.buffer
    return HashState(
        h0=h0,
        h1=h1,
        h2=h2,
        h3=h3,
        h4=h4,
        nl=bits & MASK32,
        nh=(bits >> 32) & MASK32,
        data=buffer,
        num=len(buffer),
    )


def restore(state: HashState):
    """Rebuild an accumulator that continues exactly where ``state`` stopped."""
    words = (state.h0, state.h1, state.h2, state.h3, state.h4)
    if any(not 0 <= w <= MASK32 for w in words):
        raise ValueError("hash state chaining word out of range")
    if not (0 <= state.nl <= MASK32 and 0 <= state.nh <= MASK32):
        raise ValueError("hash state bit counter out of range")
    if state.num != len(state.data) or state.num >= BLOCK_SIZE:
        raise ValueError(f"hash state buffer length {len(state.data)} does not match num={state.num}")
    if state.bit_count % 8:
        raise ValueError("hash state bit counter is not a whole number of bytes")
    if (state.byte_count - state.num) % BLOCK_SIZE:
        raise ValueError("hash state byte count does not line up with its partial block")

    return new_accumulator(words, state.byte_count, state.data)


def encode_hash_ctx(state: HashState) -> str:
    """Render a state as the base64 JSON value of the ``X-Oss-Hash-Ctx`` header."""
    payload = {
        "hash_type": "sha1",
        "h0": str(state.h0),
        "h1": str(state.h1),
        "h2": str(state.h2),
        "h3": str(state.h3),
        "h4": str(state.h4),
        "Nl": str(state.nl),
        "Nh": str(state.nh),
        "data": base64.b64encode(state.data).decode("ascii") if state.data else "",
        "num": str(state.num),
    }
    raw = json.dumps(payload, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_hash_ctx(value: str) -> HashState:
    """Parse an ``X-Oss-Hash-Ctx`` header value."""
    try:
        payload = json.loads(base64.b64decode(value, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"malformed hash context header: {exc}") from exc

    if payload.get("hash_type") != "sha1":
        raise ValueError(f"unsupported hash type: {payload.get('hash_type')!r}")

    return HashState.from_dict({
        "h0": payload["h0"],
        "h1": payload["h1"],
        "h2": payload["h2"],
        "h3": payload["h3"],
        "h4": payload["h4"],
        "nl": payload.get("Nl", 0),
        "nh": payload.get("Nh", 0),
        "data": payload.get("data", ""),
        "num": payload.get("num", 0),
    })
