"""
Will records: one per owner, with a live counter.

The store keeps ciphertext produced by `cipher.stream` and opaque address
handles produced by an address vault; it never decrypts either.
"""

from .models import WillBook, WillMetadata, WillRecord
from .store import EmptyContent, RecordAlreadyExists, RecordNotFound, WillStore, WillStoreError

__all__ = [
    "WillBook",
    "WillMetadata",
    "WillRecord",
    "WillStore",
    "WillStoreError",
    "EmptyContent",
    "RecordNotFound",
    "RecordAlreadyExists",
]
