from __future__ import annotations

import base64
import binascii
from typing import List

from .identity import CipherError, canonicalize, keccak256


# Not producible by a canonical identity (0x + lower-case hex)
SEPARATOR = "|"
DIGEST_SIZE = 32


class InvalidEncoding(CipherError):
    """Ciphertext is not valid base64, or the recovered bytes are not UTF-8."""


def derive_key(id1: str, id2: str, id3: str) -> bytes:
    """Derive the 32-byte CipherKey from three identities.

    Each identity is canonicalized first; the order is significant, so
    (a, b, c) and (b, a, c) yield different keys.

    Raises:
    - InvalidIdentity if any input is malformed.
    """
    joined = SEPARATOR.join(canonicalize(i) for i in (id1, id2, id3))
    return keccak256(joined.encode("utf-8"))


def keystream(key: bytes, length: int) -> bytes:
    """Return exactly `length` bytes of keccak256(key || counter) blocks.

    The counter is a single byte starting at 0 and wraps modulo 256.
    """
    if length < 0:
        raise ValueError("length must be >= 0")
    blocks: List[bytes] = []
    produced = 0
    counter = 0
    while produced < length:
        block = keccak256(key + bytes([counter]))
        blocks.append(block)
        produced += len(block)
        counter = (counter + 1) & 0xFF
    return b"".join(blocks)[:length]


def _xor(data: bytes, mask: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(data, mask))


def encrypt(plaintext: str, id1: str, id2: str, id3: str) -> str:
    """Encrypt text under three ordered identities; returns base64.

    Deterministic by construction: equal inputs give equal ciphertexts, and
    two texts under the same identities leak their XOR. There is no
    integrity tag.
    """
    key = derive_key(id1, id2, id3)
    data = plaintext.encode("utf-8")
    out = _xor(data, keystream(key, len(data)))
    return base64.b64encode(out).decode("ascii")


def decrypt(ciphertext: str, id1: str, id2: str, id3: str) -> str:
    """Recover text encrypted by `encrypt` with the same identities.

    Wrong identities (or the right ones in the wrong order) are not detected:
    the result is whatever the XOR produces, and fails only if that happens
    not to be valid UTF-8. Treat the output as unauthenticated.

    Raises:
    - InvalidIdentity if any identity is malformed.
    - InvalidEncoding if `ciphertext` is not base64 or the result is not UTF-8.
    """
    key = derive_key(id1, id2, id3)
    try:
        data = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError) as ex:
        raise InvalidEncoding("ciphertext is not valid base64") from ex

    out = _xor(data, keystream(key, len(data)))
    try:
        return out.decode("utf-8")
    except UnicodeDecodeError as ex:
        raise InvalidEncoding("decrypted bytes are not valid UTF-8") from ex
