from __future__ import annotations

import base64
import hashlib
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from storeshift.storage.errors import (
    AuthorizationError,
    BackendConfigError,
    ObjectNotFoundError,
    QuotaExceededError,
    TransientIOError,
    UnsupportedObjectKeyError,
)
from storeshift.storage.s3 import S3StorageBackend, _classify_client_error, _SentDigests


def client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def make_backend(key_prefix: str | None = None) -> tuple[S3StorageBackend, MagicMock]:
    client = MagicMock()
    return S3StorageBackend(bucket="assets", key_prefix=key_prefix, client=client), client


def test_list_pages_strip_prefix_and_skip_folder_markers() -> None:
    backend, client = make_backend(key_prefix="tenants/ws-1")
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {
            "Contents": [
                {"Key": "tenants/ws-1/docs/", "Size": 0},
                {"Key": "tenants/ws-1/docs/a.txt", "Size": 3},
            ]
        },
        {"Contents": [{"Key": "tenants/ws-1/docs/b.txt", "Size": 5}]},
        {},
    ]
    client.get_paginator.return_value = paginator

    pages = list(backend.list("docs/", page_size=5000))

    assert [[(item.path, item.size_bytes) for item in page] for page in pages] == [
        [("docs/a.txt", 3)],
        [("docs/b.txt", 5)],
    ]
    client.get_paginator.assert_called_once_with("list_objects_v2")
    paginator.paginate.assert_called_once_with(
        Bucket="assets",
        Prefix="tenants/ws-1/docs/",
        PaginationConfig={"PageSize": 1000},
    )


def test_list_failure_is_classified() -> None:
    backend, client = make_backend()
    client.get_paginator.return_value.paginate.side_effect = client_error("AccessDenied", "ListObjectsV2")

    with pytest.raises(AuthorizationError):
        list(backend.list())


def test_get_object_stream_reports_single_part_etag_as_md5() -> None:
    backend, client = make_backend()
    body = MagicMock()
    body.iter_chunks.return_value = iter([b"hello ", b"world"])
    client.get_object.return_value = {"Body": body, "ContentLength": 11, "ETag": '"5eb63bbbe01eeed093cb22bb8f5acdc3"'}

    with backend.get_object_stream("greeting.txt", chunk_size=6) as stream:
        data = b"".join(stream.chunks)

    assert data == b"hello world"
    assert stream.size_bytes == 11
    assert stream.checksum == hashlib.md5(b"hello world").hexdigest()
    assert stream.checksum_algorithm == "md5"
    body.iter_chunks.assert_called_once_with(chunk_size=6)
    body.close.assert_called_once()


def test_get_object_stream_ignores_multipart_etag() -> None:
    backend, client = make_backend()
    client.get_object.return_value = {"Body": MagicMock(), "ContentLength": 1, "ETag": '"abc123-4"'}

    stream = backend.get_object_stream("big.bin")

    assert stream.checksum is None
    assert stream.checksum_algorithm is None


def test_get_missing_object_raises_not_found() -> None:
    backend, client = make_backend()
    client.get_object.side_effect = client_error("NoSuchKey")

    with pytest.raises(ObjectNotFoundError):
        backend.get_object_stream("missing.txt")


def sha256_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


def fake_bucket(client: MagicMock, *, keep_bytes: int | None = None) -> dict[str, bytes]:
    """Back the mocked client with a dict; ``keep_bytes`` makes the bucket truncate what it stores."""
    stored: dict[str, bytes] = {}

    def upload(fileobj, bucket, key, ExtraArgs=None, Config=None):  # noqa: N803
        assert ExtraArgs == {"ChecksumAlgorithm": "SHA256"}
        data = fileobj.read()
        stored[key] = data if keep_bytes is None else data[:keep_bytes]

    def head(Bucket, Key, ChecksumMode=None):  # noqa: N803
        assert ChecksumMode == "ENABLED"
        return {"ContentLength": len(stored[Key]), "ChecksumSHA256": sha256_b64(stored[Key])}

    client.upload_fileobj.side_effect = upload
    client.head_object.side_effect = head
    return stored


def test_put_object_stream_uploads_under_prefix_and_reports_stored_object() -> None:
    backend, client = make_backend(key_prefix="ws-1")
    stored = fake_bucket(client)

    result = backend.put_object_stream("a/b.bin", [b"abc", b"", b"def"], checksum_algorithm="sha256")

    assert stored == {"ws-1/a/b.bin": b"abcdef"}
    assert result.size_bytes == 6
    assert result.checksum == hashlib.sha256(b"abcdef").hexdigest()
    client.head_object.assert_called_once_with(Bucket="assets", Key="ws-1/a/b.bin", ChecksumMode="ENABLED")


def test_put_object_stream_reports_what_the_bucket_kept_not_what_was_sent() -> None:
    backend, client = make_backend()
    fake_bucket(client, keep_bytes=5)

    result = backend.put_object_stream("a.bin", [b"hello world"], checksum_algorithm="sha256")

    assert result.size_bytes == 5
    assert result.checksum == f"sha256:{sha256_b64(b'hello')}"
    assert result.checksum != hashlib.sha256(b"hello world").hexdigest()


def test_put_object_stream_without_stored_checksum_still_reports_stored_size() -> None:
    backend, client = make_backend()
    client.upload_fileobj.side_effect = lambda fileobj, *args, **kwargs: fileobj.read()
    client.head_object.return_value = {"ContentLength": 3}

    result = backend.put_object_stream("a.bin", [b"abcd"], checksum_algorithm="sha256")

    assert result.size_bytes == 3
    assert result.checksum == hashlib.sha256(b"abcd").hexdigest()


def test_sent_digests_match_multipart_composite_checksum() -> None:
    sent = _SentDigests(part_size=4)
    assert b"".join(sent.observe([b"abcdef", b"ghij"])) == b"abcdefghij"
    parts = [hashlib.sha256(part).digest() for part in (b"abcd", b"efgh", b"ij")]
    composite = base64.b64encode(hashlib.sha256(b"".join(parts)).digest()).decode("ascii")

    assert sent.expected(f"{composite}-3") == f"{composite}-3"
    assert sent.expected(sha256_b64(b"anything")) == sha256_b64(b"abcdefghij")


def test_put_object_stream_maps_quota_errors() -> None:
    backend, client = make_backend()
    client.upload_fileobj.side_effect = client_error("XMinioStorageFull", "PutObject")

    with pytest.raises(QuotaExceededError):
        backend.put_object_stream("a.bin", [b"x"])


def test_unsafe_keys_never_reach_the_client() -> None:
    backend, client = make_backend()

    with pytest.raises(UnsupportedObjectKeyError) as excinfo:
        backend.get_object_stream("../escape.bin")
    client.get_object.assert_not_called()
    assert excinfo.value.error_kind == "UnsupportedObjectKeyError"
    assert excinfo.value.retryable is False
    assert excinfo.value.fatal is False


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (client_error("InvalidAccessKeyId"), AuthorizationError),
        (client_error("403"), AuthorizationError),
        (client_error("404"), ObjectNotFoundError),
        (client_error("SlowDown"), TransientIOError),
        (NoCredentialsError(), AuthorizationError),
        (EndpointConnectionError(endpoint_url="http://minio:9000"), TransientIOError),
    ],
)
def test_client_errors_map_to_storage_taxonomy(error: Exception, expected: type) -> None:
    assert isinstance(_classify_client_error(error, "k"), expected)


def test_connection_check_uses_head_bucket() -> None:
    backend, client = make_backend()
    assert backend.test_connection() is True
    client.head_bucket.assert_called_once_with(Bucket="assets")

    client.head_bucket.side_effect = client_error("403", "HeadBucket")
    assert backend.test_connection() is False


def test_from_config_validates_required_fields() -> None:
    with pytest.raises(BackendConfigError):
        S3StorageBackend.from_config({})
    with pytest.raises(BackendConfigError):
        S3StorageBackend.from_config({"bucket": "assets"}, provider="minio")

    backend = S3StorageBackend.from_config(
        {"bucket": "assets", "endpoint_url": "http://minio:9000", "region": "us-east-1"},
        provider="minio",
    )

    assert backend.provider == "minio"
    assert backend.describe() == {"provider": "minio", "location": "http://minio:9000/assets", "key_prefix": ""}
