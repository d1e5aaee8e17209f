from __future__ import annotations

import base64
import hashlib
import logging
from collections.abc import Iterable, Iterator
from dataclasses import replace
from typing import Any

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from storeshift.core.path_safety import PathSafetyError, join_key_prefix, strip_key_prefix, validate_object_key
from storeshift.storage.base import CountingHasher, IterableReader, ObjectInfo, ObjectStream, PutResult, StorageBackend
from storeshift.storage.errors import (
    AuthorizationError,
    BackendConfigError,
    ObjectNotFoundError,
    QuotaExceededError,
    StorageError,
    TransientIOError,
    UnsupportedObjectKeyError,
)

logger = logging.getLogger(__name__)

_AUTH_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "InvalidToken",
    "ExpiredToken",
    "SignatureDoesNotMatch",
    "AuthorizationHeaderMalformed",
    "AccountProblem",
    "403",
}
_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_QUOTA_CODES = {"QuotaExceeded", "XMinioStorageFull", "InsufficientStorage", "StorageQuotaExceeded", "507"}

MULTIPART_THRESHOLD = 64 * 1024 * 1024
MULTIPART_CHUNKSIZE = 16 * 1024 * 1024


def _b64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")


class _SentDigests:
    """SHA-256 of everything uploaded, plus one per multipart part.

    S3 reports ``ChecksumSHA256`` as a plain digest for single-part objects
    and as ``<digest of part digests>-<parts>`` for multipart ones.
    """

    def __init__(self, part_size: int):
        self._part_size = part_size
        self._whole = hashlib.sha256()
        self._part = hashlib.sha256()
        self._part_fill = 0
        self._parts: list[bytes] = []

    def observe(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            self._update(chunk)
            yield chunk

    def _update(self, chunk: bytes) -> None:
        self._whole.update(chunk)
        view = memoryview(chunk)
        while view:
            take = min(len(view), self._part_size - self._part_fill)
            self._part.update(view[:take])
            self._part_fill += take
            view = view[take:]
            if self._part_fill == self._part_size:
                self._parts.append(self._part.digest())
                self._part = hashlib.sha256()
                self._part_fill = 0

    def expected(self, stored: str) -> str:
        if "-" not in stored:
            return _b64(self._whole.digest())
        parts = list(self._parts)
        if self._part_fill:
            parts.append(self._part.digest())
        combined = hashlib.sha256(b"".join(parts)).digest()
        return f"{_b64(combined)}-{len(parts)}"


def _classify_client_error(exc: Exception, path: str) -> StorageError:
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return AuthorizationError(f"Missing or incomplete S3 credentials: {exc}", path=path)
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in _AUTH_CODES:
            return AuthorizationError(f"S3 rejected credentials for {path}: {code}", path=path)
        if code in _NOT_FOUND_CODES:
            return ObjectNotFoundError(f"Object not found: {path}", path=path)
        if code in _QUOTA_CODES:
            return QuotaExceededError(f"S3 target rejected write for {path}: {code}", path=path)
        return TransientIOError(f"S3 error on {path}: {code or exc}", path=path)
    return TransientIOError(f"S3 transport error on {path}: {exc}", path=path)


class S3StorageBackend(StorageBackend):
    """S3-compatible backend (AWS S3, MinIO, R2, platform-managed buckets)."""

    provider = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
        key_prefix: str | None = None,
        force_path_style: bool = False,
        timeout_seconds: float = 60.0,
        client: Any | None = None,
    ):
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._key_prefix = key_prefix.strip("/") if key_prefix else None
        if client is None:
            client = boto3.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                aws_session_token=session_token,
                config=Config(
                    retries={"max_attempts": 3, "mode": "adaptive"},
                    connect_timeout=timeout_seconds,
                    read_timeout=timeout_seconds,
                    s3={"addressing_style": "path" if force_path_style else "auto"},
                ),
            )
        self._client = client
        self._transfer_config = TransferConfig(
            multipart_threshold=MULTIPART_THRESHOLD,
            multipart_chunksize=MULTIPART_CHUNKSIZE,
            max_concurrency=1,
        )

    @classmethod
    def from_config(cls, config: dict[str, Any], *, provider: str = "s3") -> "S3StorageBackend":
        bucket = config.get("bucket")
        if not bucket:
            raise BackendConfigError(f"{provider} backend requires 'bucket'")
        endpoint_url = config.get("endpoint_url") or config.get("endpoint")
        if provider == "minio" and not endpoint_url:
            raise BackendConfigError("minio backend requires 'endpoint_url'")
        backend = cls(
            bucket=str(bucket),
            region=config.get("region"),
            endpoint_url=endpoint_url,
            access_key_id=config.get("access_key_id"),
            secret_access_key=config.get("secret_access_key"),
            session_token=config.get("session_token"),
            key_prefix=config.get("key_prefix"),
            force_path_style=bool(config.get("force_path_style", provider == "minio")),
            timeout_seconds=float(config.get("timeout_seconds", 60.0)),
        )
        backend.provider = provider
        return backend

    def _key(self, path: str) -> str:
        try:
            return join_key_prefix(self._key_prefix, validate_object_key(path))
        except PathSafetyError as exc:
            raise UnsupportedObjectKeyError(str(exc), path=path) from exc

    def list(self, prefix: str | None = None, *, page_size: int = 1000) -> Iterator[list[ObjectInfo]]:
        list_prefix = join_key_prefix(self._key_prefix, prefix or "") if self._key_prefix else (prefix or "")
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(
                Bucket=self._bucket,
                Prefix=list_prefix,
                PaginationConfig={"PageSize": min(page_size, 1000)},
            ):
                items = [
                    ObjectInfo(path=strip_key_prefix(self._key_prefix, entry["Key"]), size_bytes=int(entry["Size"]))
                    for entry in page.get("Contents", [])
                    if not entry["Key"].endswith("/")
                ]
                if items:
                    yield items
        except (ClientError, BotoCoreError) as exc:
            raise _classify_client_error(exc, list_prefix) from exc

    def get_object_stream(self, path: str, *, chunk_size: int = 1024 * 1024) -> ObjectStream:
        key = self._key(path)
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise _classify_client_error(exc, path) from exc

        body = response["Body"]
        etag = str(response.get("ETag", "")).strip('"')

        def _chunks() -> Iterator[bytes]:
            try:
                yield from body.iter_chunks(chunk_size=chunk_size)
            except (ClientError, BotoCoreError) as exc:
                raise _classify_client_error(exc, path) from exc

        # Single-part ETags are the MD5 of the content; multipart ETags are not comparable.
        checksum = etag if etag and "-" not in etag else None
        return ObjectStream(
            path=path,
            size_bytes=int(response.get("ContentLength", 0)),
            chunks=_chunks(),
            checksum=checksum,
            checksum_algorithm="md5" if checksum else None,
            _close=body.close,
        )

    def put_object_stream(
        self,
        path: str,
        chunks: Iterable[bytes],
        *,
        checksum_algorithm: str | None = None,
    ) -> PutResult:
        key = self._key(path)
        hasher = CountingHasher(checksum_algorithm)
        sent = _SentDigests(MULTIPART_CHUNKSIZE)
        reader = IterableReader(sent.observe(chunks), hasher)
        try:
            self._client.upload_fileobj(
                reader,
                self._bucket,
                key,
                ExtraArgs={"ChecksumAlgorithm": "SHA256"},
                Config=self._transfer_config,
            )
            head = self._client.head_object(Bucket=self._bucket, Key=key, ChecksumMode="ENABLED")
        except (ClientError, BotoCoreError) as exc:
            raise _classify_client_error(exc, path) from exc
        return self._stored_result(path, hasher.result(), sent, head)

    def _stored_result(self, path: str, written: PutResult, sent: _SentDigests, head: dict[str, Any]) -> PutResult:
        """Describe what the bucket actually holds, in the caller's checksum terms when it matches what was sent."""
        stored_size = int(head.get("ContentLength", -1))
        stored_checksum = head.get("ChecksumSHA256")
        if not stored_checksum:
            logger.debug("Bucket %s reported no SHA-256 for %s; comparing size only", self._bucket, path)
            return replace(written, size_bytes=stored_size)
        expected = sent.expected(str(stored_checksum))
        if stored_checksum != expected:
            logger.warning("Bucket %s stored SHA-256 %s for %s, sent %s", self._bucket, stored_checksum, path, expected)
            return PutResult(size_bytes=stored_size, checksum=f"sha256:{stored_checksum}", checksum_algorithm="sha256")
        return replace(written, size_bytes=stored_size)

    def delete(self, path: str) -> None:
        key = self._key(path)
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise _classify_client_error(exc, path) from exc
        logger.info("Deleted s3 object %s from bucket %s", path, self._bucket)

    def test_connection(self) -> bool:
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("S3 connection test failed for bucket %s: %s", self._bucket, exc)
            return False
        return True

    def describe(self) -> dict[str, str]:
        return {
            "provider": self.provider,
            "location": f"{self._endpoint_url or 'aws'}/{self._bucket}",
            "key_prefix": self._key_prefix or "",
        }
