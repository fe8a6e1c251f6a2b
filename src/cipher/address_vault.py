from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, hmac

from .identity import canonicalize


ENV_VAULT_KEY = "WILL_VAULT_KEY"
ENV_VAULT_PROOF_KEY = "WILL_VAULT_PROOF_KEY"

# Raw Fernet token size for a 20-byte payload:
# version(1) + timestamp(8) + iv(16) + ciphertext padded to two AES blocks(32) + hmac(32)
HANDLE_SIZE = 89


class VaultError(RuntimeError):
    """Base error for the address vault."""


class InvalidProof(VaultError):
    """Proof blob does not authenticate the handles for this submitter."""


class InvalidHandle(VaultError):
    """Handle cannot be decrypted by this vault."""


@dataclass(frozen=True)
class EncryptedAddresses:
    handles: Tuple[bytes, bytes, bytes]
    proof: bytes


class AddressVault(Protocol):
    """Opaque encryption of the three addresses guarding a will.

    The will store only ever sees the handles; nothing about their content
    is assumed beyond "round-trips an identity, authenticated by the proof".
    """

    def encrypt_addresses(self, identities: Sequence[str], submitter: str) -> EncryptedAddresses: ...

    def verify(self, encrypted: EncryptedAddresses, submitter: str) -> None: ...

    def decrypt_handle(self, handle: bytes) -> str: ...


def key_bytes(key: str | bytes) -> bytes:
    """Accept a key as str or bytes, as returned by `Fernet.generate_key()`."""
    return key.encode("utf-8") if isinstance(key, str) else key


class FernetAddressVault:
    """
    Local AddressVault backed by Fernet.

    - Each handle is the raw (base64-decoded) Fernet token of the 20-byte
      address, so all handles have the same width (`HANDLE_SIZE`).
    - The proof is HMAC-SHA256 over the canonical submitter and the three
      handles in order.

    Environment variables (optional)
    - `WILL_VAULT_KEY`:       urlsafe base64-encoded key for Fernet
    - `WILL_VAULT_PROOF_KEY`: HMAC key for proofs (defaults to the Fernet key)
    """

    def __init__(self, fernet_key: str | bytes, *, proof_key: Optional[str | bytes] = None) -> None:
        self._fernet = Fernet(key_bytes(fernet_key))
        self._proof_key = key_bytes(proof_key if proof_key is not None else fernet_key)

    @classmethod
    def from_env(cls) -> "FernetAddressVault":
        fkey = os.environ.get(ENV_VAULT_KEY)
        if not fkey:
            raise RuntimeError(f"Missing required environment variables for address vault: {ENV_VAULT_KEY}")
        return cls(fkey, proof_key=os.environ.get(ENV_VAULT_PROOF_KEY) or None)

    def _mac(self, handles: Sequence[bytes], submitter: str) -> hmac.HMAC:
        h = hmac.HMAC(self._proof_key, hashes.SHA256())
        h.update(canonicalize(submitter).encode("ascii"))
        for handle in handles:
            h.update(handle)
        return h

    def encrypt_addresses(self, identities: Sequence[str], submitter: str) -> EncryptedAddresses:
        if len(identities) != 3:
            raise ValueError(f"exactly three identities are required, got {len(identities)}")
        handles = []
        for ident in identities:
            raw = bytes.fromhex(canonicalize(ident)[2:])
            handles.append(base64.urlsafe_b64decode(self._fernet.encrypt(raw)))
        triple = (handles[0], handles[1], handles[2])
        return EncryptedAddresses(handles=triple, proof=self._mac(triple, submitter).finalize())

    def verify(self, encrypted: EncryptedAddresses, submitter: str) -> None:
        """Raise InvalidProof unless `encrypted.proof` matches the handles and submitter."""
        try:
            self._mac(encrypted.handles, submitter).verify(encrypted.proof)
        except InvalidSignature as ex:
            raise InvalidProof("proof does not match handles for submitter") from ex

    def decrypt_handle(self, handle: bytes) -> str:
        try:
            raw = self._fernet.decrypt(base64.urlsafe_b64encode(handle))
        except (InvalidToken, binascii.Error, TypeError) as ex:
            raise InvalidHandle("handle cannot be decrypted") from ex
        if len(raw) != 20:
            raise InvalidHandle(f"handle decrypted to {len(raw)} bytes, expected 20")
        return "0x" + raw.hex()
