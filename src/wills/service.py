from __future__ import annotations

import logging
from typing import Callable, Sequence, Tuple, TypeVar

from cipher import stream
from cipher.address_vault import AddressVault, EncryptedAddresses

from .models import WillMetadata
from .s3_store import S3WillStore
from .store import WillStore


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _three(addresses: Sequence[str]) -> Tuple[str, str, str]:
    if len(addresses) != 3:
        raise ValueError(f"exactly three addresses are required, got {len(addresses)}")
    return (addresses[0], addresses[1], addresses[2])


class WillService:
    """
    Caller-side flow around a WillStore.

    Writing: text -> stream.encrypt(text, a1, a2, a3) -> store, with the
    addresses themselves passed through the vault and kept only as handles.
    Reading: handles -> vault -> addresses -> stream.decrypt(content, ...).

    Plaintext returned by `read_will` is unauthenticated: a wrong handle or
    tampered content yields different text, not an error.
    """

    def __init__(self, store: WillStore, vault: AddressVault) -> None:
        self._store = store
        self._vault = vault

    @property
    def store(self) -> WillStore:
        return self._store

    def _seal(self, owner: str, text: str, addresses: Sequence[str]) -> Tuple[str, EncryptedAddresses]:
        a1, a2, a3 = _three(addresses)
        content = stream.encrypt(text, a1, a2, a3)
        encrypted = self._vault.encrypt_addresses([a1, a2, a3], owner)
        self._vault.verify(encrypted, owner)
        return content, encrypted

    def write_will(self, owner: str, text: str, addresses: Sequence[str], *, replace: bool = False) -> None:
        """Encrypt `text` under `addresses` and store it for `owner`.

        `replace=False` creates (RecordAlreadyExists if present);
        `replace=True` updates (RecordNotFound if absent).
        """
        content, encrypted = self._seal(owner, text, addresses)
        if replace:
            self._store.update(owner, content, encrypted.handles)
        else:
            self._store.create(owner, content, encrypted.handles)

    def _open(self, handles: Sequence[bytes]) -> Tuple[str, str, str]:
        h1, h2, h3 = handles
        return (
            self._vault.decrypt_handle(h1),
            self._vault.decrypt_handle(h2),
            self._vault.decrypt_handle(h3),
        )

    def reveal_addresses(self, owner: str) -> Tuple[str, str, str]:
        return self._open(self._store.read_handles(owner))

    def read_will(self, owner: str) -> str:
        # Content and handles must come from one snapshot of the record
        content, handles = self._store.read_sealed(owner)
        a1, a2, a3 = self._open(handles)
        return stream.decrypt(content, a1, a2, a3)

    def delete_will(self, owner: str) -> None:
        self._store.delete(owner)

    def metadata(self, owner: str) -> WillMetadata:
        return self._store.read_metadata(owner)

    def has_will(self, target: str) -> bool:
        return self._store.has_record(target)

    def total_wills(self) -> int:
        return self._store.total_records()


def sync_with_s3(s3_store: S3WillStore, fn: Callable[[WillStore], T]) -> T:
    """Run `fn` against the persisted will book and write the result back.

    The write uses the ETag from the read as an optimistic lock, so a
    concurrent writer makes this raise `OptimisticLockError` rather than
    losing either update. Errors raised by `fn` leave S3 untouched, and so
    does an `fn` that changes nothing.
    """
    book, etag = s3_store.read()
    store = WillStore(book=book)
    result = fn(store)
    after = store.snapshot()
    if after == book:
        return result
    s3_store.write(after, if_match=etag)
    logger.info("will book persisted (%d live)", store.total_records())
    return result
