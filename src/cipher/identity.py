from __future__ import annotations

import re
from typing import Any

from Crypto.Hash import keccak


ZERO_IDENTITY = "0x" + "0" * 40

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class CipherError(ValueError):
    """Base error for address-keyed encryption."""


class InvalidIdentity(CipherError):
    """Input does not parse as a 0x-prefixed 20-byte hex address."""


def keccak256(data: bytes) -> bytes:
    """Ethereum Keccak-256 (original Keccak padding, not NIST SHA3-256)."""
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def canonicalize(value: Any) -> str:
    """Return the canonical (lower-case) form of an address.

    Mixed-case spellings are normalized even when their EIP-55 checksum does
    not verify. Surrounding whitespace is ignored.
    """
    if not isinstance(value, str):
        raise InvalidIdentity(f"identity must be a string, got {type(value).__name__}")
    s = value.strip()
    if not _ADDRESS_RE.match(s):
        raise InvalidIdentity(f"malformed identity: {value!r}")
    return s.lower()


def is_identity(value: Any) -> bool:
    try:
        canonicalize(value)
    except InvalidIdentity:
        return False
    return True


def to_checksum_address(value: Any) -> str:
    """EIP-55 mixed-case form, for display only."""
    addr = canonicalize(value)[2:]
    digest = keccak256(addr.encode("ascii")).hex()
    out = []
    for ch, nibble in zip(addr, digest):
        out.append(ch.upper() if ch.isalpha() and int(nibble, 16) >= 8 else ch)
    return "0x" + "".join(out)
