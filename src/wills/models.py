from __future__ import annotations

from datetime import datetime, UTC
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from cipher.identity import ZERO_IDENTITY, canonicalize


EPOCH = datetime.fromtimestamp(0, UTC)


class WillRecord(BaseModel):
    """
    One owner's will, keyed in the store by `owner`.

    Fields
    - owner: canonical identity of the record owner.
    - content: base64 ciphertext produced by `cipher.stream.encrypt`. Never
      inspected by the store; empty only once the record is deleted.
    - handles: the three opaque address handles from the address vault, in
      the order the addresses were given; empty once deleted.
    - updated_at: UTC time of the last create or update.
    - exists: False after delete.

    Notes
    - Handles are raw bytes in memory and hex strings in JSON; all three
      share one non-zero width.
    """

    owner: str
    content: str = ""
    handles: List[bytes] = Field(default_factory=list)
    updated_at: datetime = Field(default=EPOCH)
    exists: bool = False

    @field_validator("owner", mode="before")
    @classmethod
    def canonical_owner(cls, value: Any) -> str:
        # InvalidIdentity is a ValueError, so pydantic reports it as a validation error
        return canonicalize(value)

    @field_validator("handles", mode="before")
    @classmethod
    def decode_handles(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [bytes.fromhex(h) if isinstance(h, str) else h for h in value]
        return value

    @field_validator("handles")
    @classmethod
    def three_fixed_width(cls, value: List[bytes]) -> List[bytes]:
        if len(value) not in (0, 3):
            raise ValueError(f"a will carries exactly three address handles, got {len(value)}")
        widths = {len(h) for h in value}
        if value and (len(widths) != 1 or 0 in widths):
            raise ValueError(f"address handles must share one non-zero width, got {[len(h) for h in value]}")
        return value

    @field_serializer("handles", when_used="json")
    def encode_handles(self, value: List[bytes]) -> List[str]:
        return [h.hex() for h in value]


class WillMetadata(BaseModel):
    """Side-effect-free view of a record; zeroed when there is no will."""

    owner: str = ZERO_IDENTITY
    timestamp: datetime = Field(default=EPOCH)
    exists: bool = False

    @classmethod
    def absent(cls) -> "WillMetadata":
        return cls()


class WillBook(BaseModel):
    """
    Snapshot of a WillStore: every record keyed by owner identity, plus the
    live counter. This is the document persisted by `S3WillStore`.
    """

    records: Dict[str, WillRecord] = Field(default_factory=dict)
    total: int = Field(default=0, ge=0, description="Number of records with exists=True")

    @model_validator(mode="after")
    def consistent(self) -> "WillBook":
        for key, rec in self.records.items():
            if key != rec.owner:
                raise ValueError(f"record for {rec.owner} filed under {key}")
        live = sum(1 for rec in self.records.values() if rec.exists)
        if live != self.total:
            raise ValueError(f"total={self.total} but {live} wills exist")
        return self

    @classmethod
    def empty(cls) -> "WillBook":
        return cls()
