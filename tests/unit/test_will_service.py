from __future__ import annotations

from typing import List, Optional

import pytest
from cryptography.fernet import Fernet

from cipher import stream
from cipher.address_vault import EncryptedAddresses, FernetAddressVault, InvalidProof
from wills.models import WillBook
from wills.s3_store import OptimisticLockError
from wills.service import WillService, sync_with_s3
from wills.store import RecordAlreadyExists, RecordNotFound, WillStore


A = "0x1234567890123456789012345678901234567890"
B = "0x2345678901234567890123456789012345678901"
C = "0x3456789012345678901234567890123456789012"
A2 = "0x4567890123456789012345678901234567890123"
OWNER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OTHER = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"

TEXT = "This is my encrypted will content"


@pytest.fixture
def service() -> WillService:
    return WillService(WillStore(), FernetAddressVault(Fernet.generate_key()))


def test_write_then_read(service: WillService):
    service.write_will(OWNER, TEXT, [A, B, C])
    assert service.total_wills() == 1
    assert service.has_will(OWNER) is True
    assert service.read_will(OWNER) == TEXT
    assert service.reveal_addresses(OWNER) == (A, B, C)


def test_store_holds_ciphertext_only(service: WillService):
    service.write_will(OWNER, TEXT, [A, B, C])
    content = service.store.read_content(OWNER)
    assert content != TEXT
    assert content == stream.encrypt(TEXT, A, B, C)
    assert stream.decrypt(content, A, B, C) == TEXT


def test_update_with_new_address(service: WillService):
    service.write_will(OWNER, TEXT, [A, B, C])
    service.write_will(OWNER, "This is my updated will content", [A2, B, C], replace=True)
    assert service.total_wills() == 1
    assert service.read_will(OWNER) == "This is my updated will content"
    assert service.reveal_addresses(OWNER) == (A2, B, C)


def test_create_twice_and_update_missing(service: WillService):
    with pytest.raises(RecordNotFound):
        service.write_will(OWNER, TEXT, [A, B, C], replace=True)
    service.write_will(OWNER, TEXT, [A, B, C])
    with pytest.raises(RecordAlreadyExists):
        service.write_will(OWNER, "again", [A, B, C])
    assert service.read_will(OWNER) == TEXT


def test_delete(service: WillService):
    service.write_will(OWNER, TEXT, [A, B, C])
    service.delete_will(OWNER)
    assert service.total_wills() == 0
    assert service.metadata(OWNER).exists is False
    with pytest.raises(RecordNotFound):
        service.read_will(OWNER)


def test_other_owner_cannot_read(service: WillService):
    service.write_will(OWNER, TEXT, [A, B, C])
    assert service.has_will(OWNER) is True
    with pytest.raises(RecordNotFound):
        service.read_will(OTHER)
    assert service.metadata(OTHER).exists is False


def test_rejects_wrong_address_count(service: WillService):
    with pytest.raises(ValueError):
        service.write_will(OWNER, TEXT, [A, B])
    assert service.total_wills() == 0


def test_bad_proof_blocks_write():
    class _BadProofVault(FernetAddressVault):
        def encrypt_addresses(self, identities, submitter) -> EncryptedAddresses:
            enc = super().encrypt_addresses(identities, submitter)
            return EncryptedAddresses(handles=enc.handles, proof=b"\x00" * 32)

    svc = WillService(WillStore(), _BadProofVault(Fernet.generate_key()))
    with pytest.raises(InvalidProof):
        svc.write_will(OWNER, TEXT, [A, B, C])
    assert svc.total_wills() == 0


class _FakeS3WillStore:
    def __init__(self, book: Optional[WillBook] = None, etag: Optional[str] = None) -> None:
        self._book = book or WillBook.empty()
        self._etag = etag
        self.writes: List[WillBook] = []
        self.conflict = False

    def read(self):
        return self._book, self._etag

    def write(self, book, *, if_match=None):
        if self.conflict or if_match != self._etag:
            raise OptimisticLockError("stale")
        self.writes.append(book)
        self._book = book
        self._etag = f"etag-{len(self.writes)}"
        return self._etag


def test_sync_with_s3_persists_changes():
    vault = FernetAddressVault(Fernet.generate_key())
    s3_store = _FakeS3WillStore()

    sync_with_s3(s3_store, lambda st: WillService(st, vault).write_will(OWNER, TEXT, [A, B, C]))
    assert len(s3_store.writes) == 1
    assert s3_store.writes[0].total == 1

    text = sync_with_s3(s3_store, lambda st: WillService(st, vault).read_will(OWNER))
    assert text == TEXT
    # Reads leave the persisted object alone
    assert len(s3_store.writes) == 1


def test_sync_with_s3_skips_write_on_error():
    s3_store = _FakeS3WillStore()

    def boom(st: WillStore) -> None:
        st.delete(OWNER)

    with pytest.raises(RecordNotFound):
        sync_with_s3(s3_store, boom)
    assert s3_store.writes == []


def test_sync_with_s3_surfaces_conflict():
    s3_store = _FakeS3WillStore(etag="etag-0")
    s3_store.conflict = True
    with pytest.raises(OptimisticLockError):
        sync_with_s3(s3_store, lambda st: st.create(OWNER, "C1", [b"\x01" * 89] * 3))


def test_read_will_is_not_torn_by_concurrent_update():
    class _InterleavingVault(FernetAddressVault):
        """Runs a writer for the same owner during the first handle decryption."""

        def __init__(self, key: bytes) -> None:
            super().__init__(key)
            self.on_first_decrypt = None

        def decrypt_handle(self, handle: bytes) -> str:
            hook, self.on_first_decrypt = self.on_first_decrypt, None
            if hook is not None:
                hook()
            return super().decrypt_handle(handle)

    vault = _InterleavingVault(Fernet.generate_key())
    svc = WillService(WillStore(), vault)
    svc.write_will(OWNER, "original will text", [A, B, C])
    vault.on_first_decrypt = lambda: svc.write_will(OWNER, "replacement text", [A2, C, B], replace=True)

    assert svc.read_will(OWNER) in ("original will text", "replacement text")
    assert svc.read_will(OWNER) == "replacement text"
