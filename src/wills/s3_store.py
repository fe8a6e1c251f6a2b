from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from cipher.address_vault import key_bytes

from .models import WillBook


logger = logging.getLogger(__name__)

# Environment variable names for convenience configuration
ENV_BUCKET = "WILL_STATE_BUCKET"
ENV_KEY = "WILL_STATE_KEY"
ENV_FERNET_KEY = "WILL_FERNET_KEY"
ENV_REGION = "AWS_REGION"

DEFAULT_KEY = "wills.json"


class OptimisticLockError(Exception):
    """Raised when an ETag precondition fails during a conditional write."""


def _dump_book_json(book: WillBook) -> bytes:
    # Stable key order, no extra whitespace
    return json.dumps(
        book.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _load_book_json(data: bytes) -> WillBook:
    raw = json.loads(data.decode("utf-8"))
    return WillBook.model_validate(raw)


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3WillStore:
    """
    S3-backed persistence for `WillBook`, encrypted at rest using Fernet.

    Usage
    - `read()` returns a `(book, etag)` pair. If the object does not exist,
      it returns `(WillBook.empty(), None)`.
    - `write(book, if_match=None)` writes the encrypted bytes and returns the new ETag.
      When `if_match` is provided, uses a copy-based conditional update so the write
      succeeds only if the current object ETag matches `if_match`.

    Layout: one JSON object `{"records": {owner: record}, "total": n}`; each
    record holds the base64 ciphertext and three hex-encoded handles.

    Environment variables
    - `WILL_STATE_BUCKET`: S3 bucket for the will book (required)
    - `WILL_STATE_KEY`:    S3 key, default `wills.json`
    - `WILL_FERNET_KEY`:   urlsafe base64-encoded key for Fernet (required)
    - `AWS_REGION`:        optional region for the S3 client
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str = DEFAULT_KEY,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = Fernet(key_bytes(fernet_key))

    @classmethod
    def from_env(cls, *, s3: Optional[object] = None) -> "S3WillStore":
        bucket = os.environ.get(ENV_BUCKET)
        fkey = os.environ.get(ENV_FERNET_KEY)
        if not bucket or not fkey:
            missing = [name for name, val in [(ENV_BUCKET, bucket), (ENV_FERNET_KEY, fkey)] if not val]
            raise RuntimeError(
                f"Missing required environment variables for S3 will store: {', '.join(missing)}"
            )
        key = os.environ.get(ENV_KEY) or DEFAULT_KEY
        return cls(s3=s3, bucket=bucket, key=key, fernet_key=fkey, region_name=os.environ.get(ENV_REGION))

    def read(self) -> Tuple[WillBook, Optional[str]]:
        """Read and decrypt the will book from S3.

        Returns: (book, etag)
        - If object not found, returns (WillBook.empty(), None).
        Raises:
        - ValueError if decryption fails or content is not a valid book.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                logger.info("no will book at s3://%s/%s; starting empty", self._obj.bucket, self._obj.key)
                return (WillBook.empty(), None)
            raise

        body = resp["Body"].read()
        etag = resp.get("ETag")
        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise ValueError("Failed to decrypt will book: invalid Fernet token") from ex

        try:
            book = _load_book_json(decrypted)
        except (ValueError, ValidationError) as ex:
            raise ValueError("Failed to parse decrypted will book JSON") from ex

        return (book, etag)

    def write(self, book: WillBook, *, if_match: Optional[str] = None) -> str:
        """Encrypt and write the will book to S3; returns the new ETag.

        With `if_match`, the write proceeds only if the current object ETag
        matches; otherwise `OptimisticLockError` is raised.
        """
        ciphertext = self._fernet.encrypt(_dump_book_json(book))

        if if_match is None:
            resp = self._s3.put_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
            return str(resp.get("ETag"))

        # PutObject has no If-Match: upload to a temp key, then COPY over the
        # destination with an If-Match precondition.
        temp_key = f"{self._obj.key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._obj.bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )

        try:
            resp = self._s3.copy_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                CopySource={"Bucket": self._obj.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise OptimisticLockError(
                    f"ETag mismatch for s3://{self._obj.bucket}/{self._obj.key}"
                ) from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._obj.bucket, Key=temp_key)
            except ClientError:
                logger.warning("failed to remove temp object s3://%s/%s", self._obj.bucket, temp_key)

        return str(resp.get("ETag"))
