from __future__ import annotations

import logging
import threading
from datetime import datetime, UTC
from typing import Callable, Optional, Sequence, Tuple

from cipher.identity import canonicalize

from .models import WillBook, WillMetadata, WillRecord


logger = logging.getLogger(__name__)


class WillStoreError(RuntimeError):
    """Base error for will record lifecycle operations."""


class EmptyContent(WillStoreError):
    """create/update called with an empty ciphertext."""


class RecordNotFound(WillStoreError):
    """Operation requires an existing will and the owner has none."""


class RecordAlreadyExists(WillStoreError):
    """create called while the owner already has a will."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WillStore:
    """
    One will per owner, plus a live counter of existing wills.

    - Keys are canonical owner identities; there is no separate record id.
    - Per owner: ABSENT --create--> PRESENT --update--> PRESENT --delete--> ABSENT.
    - Content and handle reads are scoped to the requester's own record.
    - A single lock covers the record map and the counter, so each
      transition and its counter change happen together.

    The store treats content and handles as opaque; encryption happens in
    the caller (see `wills.service`).
    """

    def __init__(self, *, book: Optional[WillBook] = None, clock: Callable[[], datetime] = _utcnow) -> None:
        self._book = book.model_copy(deep=True) if book is not None else WillBook.empty()
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, owner: str) -> Optional[WillRecord]:
        rec = self._book.records.get(owner)
        return rec if rec is not None and rec.exists else None

    # -------- Mutations --------
    def create(self, owner: str, content: str, handles: Sequence[bytes]) -> None:
        """Create the owner's will.

        Raises:
        - EmptyContent if `content` is empty.
        - RecordAlreadyExists if the owner already has a will.
        - ValueError if there are not exactly three handles.
        """
        key = canonicalize(owner)
        if not content:
            logger.debug("create rejected for %s: empty content", key)
            raise EmptyContent("Will content cannot be empty")
        with self._lock:
            if self._live(key) is not None:
                logger.debug("create rejected for %s: will exists", key)
                raise RecordAlreadyExists("Will already exists")
            record = WillRecord(owner=key, content=content, handles=list(handles), updated_at=self._clock(), exists=True)
            self._book.records[key] = record
            self._book.total += 1
        logger.info("will created for %s", key)

    def update(self, owner: str, content: str, handles: Sequence[bytes]) -> None:
        """Replace the owner's content and handles; the counter is unchanged.

        Raises:
        - EmptyContent if `content` is empty.
        - RecordNotFound if the owner has no will.
        - ValueError if there are not exactly three handles.
        """
        key = canonicalize(owner)
        if not content:
            logger.debug("update rejected for %s: empty content", key)
            raise EmptyContent("Will content cannot be empty")
        with self._lock:
            if self._live(key) is None:
                logger.debug("update rejected for %s: no will", key)
                raise RecordNotFound("No existing will found")
            self._book.records[key] = WillRecord(
                owner=key, content=content, handles=list(handles), updated_at=self._clock(), exists=True
            )
        logger.info("will updated for %s", key)

    def delete(self, owner: str) -> None:
        """Delete the owner's will, clearing content and handles."""
        key = canonicalize(owner)
        with self._lock:
            rec = self._live(key)
            if rec is None:
                logger.debug("delete rejected for %s: no will", key)
                raise RecordNotFound("No will found")
            rec.exists = False
            rec.content = ""
            rec.handles = []
            self._book.total -= 1
        logger.info("will deleted for %s", key)

    # -------- Owner-scoped reads --------
    def read_content(self, requester: str) -> str:
        """Return the requester's own ciphertext; RecordNotFound if none."""
        key = canonicalize(requester)
        with self._lock:
            rec = self._live(key)
            if rec is None:
                raise RecordNotFound("No will found")
            return rec.content

    def read_handles(self, requester: str) -> Tuple[bytes, bytes, bytes]:
        """Return the requester's own three address handles, in stored order."""
        key = canonicalize(requester)
        with self._lock:
            rec = self._live(key)
            if rec is None:
                raise RecordNotFound("No will found")
            h1, h2, h3 = rec.handles
            return (h1, h2, h3)

    def read_sealed(self, requester: str) -> Tuple[str, Tuple[bytes, bytes, bytes]]:
        """Return the requester's content and handles from the same write."""
        key = canonicalize(requester)
        with self._lock:
            rec = self._live(key)
            if rec is None:
                raise RecordNotFound("No will found")
            h1, h2, h3 = rec.handles
            return rec.content, (h1, h2, h3)

    def read_metadata(self, requester: str) -> WillMetadata:
        """Return owner/timestamp/exists for the requester, zeroed if absent."""
        key = canonicalize(requester)
        with self._lock:
            rec = self._live(key)
            if rec is None:
                return WillMetadata.absent()
            return WillMetadata(owner=rec.owner, timestamp=rec.updated_at, exists=True)

    # -------- Public probes --------
    def has_record(self, target: str) -> bool:
        """True if `target` has a will. Reveals existence only."""
        key = canonicalize(target)
        with self._lock:
            return self._live(key) is not None

    def total_records(self) -> int:
        with self._lock:
            return self._book.total

    def snapshot(self) -> WillBook:
        """Deep copy of the current state, suitable for persistence."""
        with self._lock:
            return self._book.model_copy(deep=True)
