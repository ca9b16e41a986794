import hashlib
import threading
import time

import pytest
import responses

from zarrstream.s3_connection import (
    S3Connection,
    S3ConnectionPool,
    S3Error,
    S3Part,
    S3Settings,
)

ENDPOINT = "http://localhost:9000"
BUCKET = "test-bucket"
OBJECT = "test-object"
OBJECT_URL = f"{ENDPOINT}/{BUCKET}/{OBJECT}"

UPLOAD_XML = (
    b'<?xml version="1.0" encoding="UTF-8"?>'
    b"<InitiateMultipartUploadResult>"
    b"<Bucket>test-bucket</Bucket><Key>test-object</Key>"
    b"<UploadId>upload-123</UploadId>"
    b"</InitiateMultipartUploadResult>"
)


@pytest.fixture(autouse=True)
def credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "placeholder")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "secret")
    monkeypatch.delenv("AWS_SESSION_TOKEN", raising=False)


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def settings():
    return S3Settings(endpoint=ENDPOINT, bucket_name=BUCKET)


def test_endpoint_with_explicit_port(settings):
    assert S3Connection(settings).endpoint_url == "http://localhost:9000"


def test_endpoint_https_default_port():
    conn = S3Connection(S3Settings("https://s3.example.com", BUCKET))
    assert conn.endpoint_url == "https://s3.example.com"


def test_endpoint_without_scheme_is_http():
    conn = S3Connection(S3Settings("localhost:9000", BUCKET))
    assert conn.endpoint_url == "http://localhost:9000"


def test_region_defaults_and_overrides(settings):
    assert S3Connection(settings).region == "us-east-1"
    assert S3Connection(S3Settings(ENDPOINT, BUCKET, "eu-west-2")).region == "eu-west-2"


def test_put_object_round_trip(mocked, settings):
    mocked.add(responses.GET, f"{ENDPOINT}/", status=200)
    mocked.add(responses.HEAD, f"{ENDPOINT}/{BUCKET}", status=200)
    mocked.add(responses.DELETE, OBJECT_URL, status=204)
    mocked.add(responses.HEAD, OBJECT_URL, status=404)
    mocked.add(responses.HEAD, OBJECT_URL, status=200)
    mocked.add(responses.PUT, OBJECT_URL, status=200, headers={"ETag": '"abc123"'})

    conn = S3Connection(settings)
    assert conn.is_connection_valid()
    assert conn.bucket_exists(BUCKET)
    conn.delete_object(BUCKET, OBJECT)
    assert not conn.object_exists(BUCKET, OBJECT)

    etag = conn.put_object(BUCKET, OBJECT, bytes(1024))
    assert etag == "abc123"
    assert conn.object_exists(BUCKET, OBJECT)
    conn.delete_object(BUCKET, OBJECT)

    put_request = next(c.request for c in mocked.calls if c.request.method == "PUT")
    assert put_request.body == bytes(1024)


def test_requests_are_signed(mocked, settings):
    mocked.add(responses.PUT, OBJECT_URL, status=200, headers={"ETag": '"e"'})
    etag = S3Connection(settings).put_object(BUCKET, OBJECT, b"hello")
    assert etag == "e"

    headers = mocked.calls[0].request.headers
    authorization = headers["Authorization"]
    assert authorization.startswith("AWS4-HMAC-SHA256 Credential=placeholder/")
    assert "/us-east-1/s3/aws4_request" in authorization
    assert "SignedHeaders=host;x-amz-content-sha256;x-amz-date" in authorization
    assert headers["x-amz-content-sha256"] == hashlib.sha256(b"hello").hexdigest()


def test_unsigned_without_credentials(mocked, settings, monkeypatch):
    monkeypatch.delenv("AWS_ACCESS_KEY_ID")
    mocked.add(responses.HEAD, f"{ENDPOINT}/{BUCKET}", status=200)
    assert S3Connection(settings).bucket_exists(BUCKET)
    assert "Authorization" not in mocked.calls[0].request.headers


def test_connection_invalid_on_error_status(mocked, settings):
    mocked.add(responses.GET, f"{ENDPOINT}/", status=403)
    assert S3Connection(settings).is_connection_valid() is False


def test_missing_bucket(mocked, settings):
    mocked.add(responses.HEAD, f"{ENDPOINT}/{BUCKET}", status=404)
    assert S3Connection(settings).bucket_exists(BUCKET) is False


def test_put_object_failure_raises(mocked, settings):
    body = b"<Error><Code>AccessDenied</Code><Message>Denied</Message></Error>"
    mocked.add(responses.PUT, OBJECT_URL, status=403, body=body)
    with pytest.raises(S3Error, match="AccessDenied"):
        S3Connection(settings).put_object(BUCKET, OBJECT, b"x")


@pytest.mark.parametrize(
    "bucket, name, data",
    [("", OBJECT, b"x"), (BUCKET, "", b"x"), (BUCKET, OBJECT, b"")],
)
def test_put_object_rejects_empty_arguments(settings, bucket, name, data):
    with pytest.raises(ValueError):
        S3Connection(settings).put_object(bucket, name, data)


def test_delete_object_rejects_empty_name(settings):
    with pytest.raises(ValueError):
        S3Connection(settings).delete_object(BUCKET, "")


def test_delete_object_failure_raises(mocked, settings):
    mocked.add(responses.DELETE, OBJECT_URL, status=500)
    with pytest.raises(S3Error):
        S3Connection(settings).delete_object(BUCKET, OBJECT)


def test_multipart_upload(mocked, settings):
    mocked.add(responses.POST, OBJECT_URL, status=200, body=UPLOAD_XML)
    mocked.add(responses.PUT, OBJECT_URL, status=200, headers={"ETag": '"part-1"'})
    mocked.add(responses.POST, OBJECT_URL, status=200, body=b"<Done/>")

    conn = S3Connection(settings)
    upload_id = conn.create_multipart_object(BUCKET, OBJECT)
    assert upload_id == "upload-123"

    etag = conn.upload_multipart_object_part(BUCKET, OBJECT, upload_id, b"abc", 1)
    assert etag == "part-1"

    conn.complete_multipart_object(
        BUCKET, OBJECT, upload_id, [S3Part(number=1, etag=etag, size=3)]
    )

    create, upload, complete = (c.request for c in mocked.calls)
    assert create.url.endswith("?uploads=")
    assert "partNumber=1" in upload.url
    assert "uploadId=upload-123" in upload.url
    assert "uploadId=upload-123" in complete.url
    text = complete.body.decode()
    assert "<PartNumber>1</PartNumber>" in text
    assert "<ETag>&quot;part-1&quot;</ETag>" in text or '<ETag>"part-1"</ETag>' in text


def test_create_multipart_without_upload_id_raises(mocked, settings):
    mocked.add(responses.POST, OBJECT_URL, status=200, body=b"<Result/>")
    with pytest.raises(S3Error, match="Upload id"):
        S3Connection(settings).create_multipart_object(BUCKET, OBJECT)


def test_upload_part_rejects_zero_part_number(settings):
    with pytest.raises(ValueError):
        S3Connection(settings).upload_multipart_object_part(
            BUCKET, OBJECT, "upload-123", b"abc", 0
        )


def test_complete_rejects_empty_parts(settings):
    with pytest.raises(ValueError):
        S3Connection(settings).complete_multipart_object(
            BUCKET, OBJECT, "upload-123", []
        )


def test_complete_failure_raises(mocked, settings):
    mocked.add(responses.POST, OBJECT_URL, status=400)
    with pytest.raises(S3Error):
        S3Connection(settings).complete_multipart_object(
            BUCKET, OBJECT, "upload-123", [S3Part(1, "e", 1)]
        )


def test_pool_hands_out_and_takes_back(mocked, settings):
    mocked.add(responses.GET, f"{ENDPOINT}/", status=200)
    with S3ConnectionPool(2, settings) as pool:
        first = pool.get_connection()
        second = pool.get_connection()
        assert first is not second
        pool.return_connection(first)
        assert pool.get_connection() is first


def test_pool_without_valid_connection_raises(mocked, settings):
    mocked.add(responses.GET, f"{ENDPOINT}/", status=403)
    with pytest.raises(S3Error):
        S3ConnectionPool(2, settings)


def test_pool_close_wakes_waiters(mocked, settings):
    mocked.add(responses.GET, f"{ENDPOINT}/", status=200)
    pool = S3ConnectionPool(1, settings)
    held = pool.get_connection()
    assert held.endpoint_url == ENDPOINT

    errors = []

    def wait_for_connection():
        try:
            pool.get_connection()
        except S3Error as exc:
            errors.append(exc)

    waiter = threading.Thread(target=wait_for_connection)
    waiter.start()
    time.sleep(0.05)
    pool.close()
    waiter.join(timeout=5)

    assert not waiter.is_alive()
    assert len(errors) == 1
    with pytest.raises(S3Error, match="closed"):
        pool.get_connection()


def test_pool_closed_get_raises(mocked, settings):
    mocked.add(responses.GET, f"{ENDPOINT}/", status=200)
    pool = S3ConnectionPool(1, settings)
    pool.close()
    with pytest.raises(S3Error, match="closed"):
        pool.get_connection()