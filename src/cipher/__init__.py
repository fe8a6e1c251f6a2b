"""
Address-keyed text encryption.

Modules:
- identity: address canonicalization and EIP-55 display form
- stream: Keccak-based stream cipher keyed by three ordered addresses
- address_vault: opaque encryption of the addresses themselves
"""

__all__ = [
    "identity",
    "stream",
    "address_vault",
]
