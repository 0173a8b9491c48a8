"""Content identifiers and blocks.

Identifiers are CIDv1 over the ``raw`` codec with a sha2-256 multihash,
rendered as lowercase base32 multibase (the ``b...`` form). The identifier
is a pure function of the block bytes, so hashing the same payload twice
always yields the same CID.
"""

from __future__ import annotations

import base64
import hashlib
import os
import random
from dataclasses import dataclass, field

from blockswap_bench.errors import ConfigurationError

CID_VERSION = 1
RAW_CODEC = 0x55
SHA2_256 = 0x12
SHA2_256_LENGTH = 32
MULTIBASE_BASE32 = "b"


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, offset: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while offset < len(data):
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7
        if shift > 63:
            break
    raise ValueError("truncated or oversized varint")


@dataclass(frozen=True)
class ContentIdentifier:
    """A self-describing, content-derived block identifier."""

    digest: bytes
    codec: int = RAW_CODEC
    version: int = CID_VERSION

    @classmethod
    def for_data(cls, data: bytes) -> ContentIdentifier:
        """Compute the identifier for a payload."""
        return cls(digest=hashlib.sha256(data).digest())

    @classmethod
    def parse(cls, text: str) -> ContentIdentifier:
        """Parse the base32 multibase string form.

        Raises:
            ValueError: If the string is not a CIDv1 sha2-256 identifier.
        """
        if not isinstance(text, str) or not text.startswith(MULTIBASE_BASE32):
            raise ValueError(f"unsupported multibase in {text!r}")
        body = text[1:].upper()
        body += "=" * (-len(body) % 8)
        try:
            raw = base64.b32decode(body)
        except (ValueError, TypeError) as e:
            raise ValueError(f"invalid base32 in {text!r}") from e

        version, offset = _decode_varint(raw, 0)
        if version != CID_VERSION:
            raise ValueError(f"unsupported CID version {version}")
        codec, offset = _decode_varint(raw, offset)
        hash_code, offset = _decode_varint(raw, offset)
        if hash_code != SHA2_256:
            raise ValueError(f"unsupported multihash code 0x{hash_code:x}")
        length, offset = _decode_varint(raw, offset)
        digest = raw[offset:]
        if length != SHA2_256_LENGTH or len(digest) != length:
            raise ValueError("digest length mismatch")
        return cls(digest=digest, codec=codec, version=version)

    def to_bytes(self) -> bytes:
        return (
            _encode_varint(self.version)
            + _encode_varint(self.codec)
            + _encode_varint(SHA2_256)
            + _encode_varint(len(self.digest))
            + self.digest
        )

    def matches(self, data: bytes) -> bool:
        """Check whether ``data`` hashes to this identifier."""
        return hashlib.sha256(data).digest() == self.digest

    def __str__(self) -> str:
        encoded = base64.b32encode(self.to_bytes()).decode("ascii")
        return MULTIBASE_BASE32 + encoded.rstrip("=").lower()


@dataclass(frozen=True)
class Block:
    """An opaque payload addressed by its content identifier."""

    cid: ContentIdentifier
    data: bytes = field(repr=False)

    @classmethod
    def from_data(cls, data: bytes) -> Block:
        return cls(cid=ContentIdentifier.for_data(data), data=data)

    @property
    def size(self) -> int:
        return len(self.data)


class PayloadSource:
    """Random byte generator used to synthesize test blocks.

    With a seed the output is reproducible per instance; without one it
    draws from ``os.urandom``.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed) if seed is not None else None

    def generate(self, size: int) -> bytes:
        if size < 0:
            raise ConfigurationError(f"block size must be non-negative, got {size}")
        if self._rng is None:
            return os.urandom(size)
        return self._rng.randbytes(size)
