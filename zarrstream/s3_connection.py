"""Connections to an S3-compatible object store, and a pool of them."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import quote, urlsplit
from xml.etree import ElementTree

import requests

logger = logging.getLogger(__name__)

_DEFAULT_REGION = "us-east-1"
_SERVICE = "s3"
_TIMEOUT_SECONDS = 60
_UNRESERVED = "-_.~"


class S3Error(RuntimeError):
    """Raised when a request to the object store fails."""


@dataclass
class S3Settings:
    """Where to find the object store."""

    endpoint: str
    bucket_name: str
    region: str | None = None


@dataclass
class S3Part:
    """One uploaded part of a multipart object."""

    number: int
    etag: str
    size: int = 0


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _xml_text(body: bytes, name: str) -> str:
    """Return the text of the first element called ``name`` in ``body``."""
    if not body:
        return ""
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError:
        return ""
    for element in root.iter():
        if _local_name(element.tag) == name:
            return (element.text or "").strip()
    return ""


def _describe_failure(response: requests.Response) -> str:
    code = _xml_text(response.content, "Code")
    message = _xml_text(response.content, "Message")
    details = ": ".join(part for part in (code, message) if part)
    return f"HTTP {response.status_code}" + (f" ({details})" if details else "")


def _require(value: object, message: str) -> None:
    if not value:
        raise ValueError(message)


class S3Connection:
    """A client for one S3-compatible endpoint.

    Credentials are read from the environment variables ``AWS_ACCESS_KEY_ID``,
    ``AWS_SECRET_ACCESS_KEY`` and, optionally, ``AWS_SESSION_TOKEN``. Without
    an access key, requests are sent unsigned.
    """

    def __init__(self, settings: S3Settings) -> None:
        endpoint = settings.endpoint
        https = endpoint.startswith("https")
        scheme = "https" if https else "http"
        parts = urlsplit(endpoint if "://" in endpoint else f"{scheme}://{endpoint}")
        hostname = parts.hostname or ""
        if not hostname:
            raise ValueError(f"Invalid endpoint: '{endpoint}'")
        if ":" in hostname:
            hostname = f"[{hostname}]"

        default_port = 443 if https else 80
        port = parts.port or default_port
        self._host = hostname if port == default_port else f"{hostname}:{port}"
        self._base_url = f"{scheme}://{self._host}"
        self._region = settings.region or _DEFAULT_REGION

        self._access_key_id = os.environ.get("AWS_ACCESS_KEY_ID", "")
        self._secret_access_key = os.environ.get("AWS_SECRET_ACCESS_KEY", "")
        self._session_token = os.environ.get("AWS_SESSION_TOKEN", "")

        self._session = requests.Session()

    @property
    def endpoint_url(self) -> str:
        """The scheme, host and (non-default) port requests are sent to."""
        return self._base_url

    @property
    def region(self) -> str:
        return self._region

    def __enter__(self) -> S3Connection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying HTTP session."""
        self._session.close()

    # -- request plumbing -------------------------------------------------

    def _sign(
        self,
        method: str,
        path: str,
        query: str,
        headers: dict[str, str],
        payload_hash: str,
    ) -> None:
        now = datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = amz_date[:8]
        headers["x-amz-date"] = amz_date
        if self._session_token:
            headers["x-amz-security-token"] = self._session_token

        signed = sorted(name.lower() for name in headers)
        lowered = {name.lower(): value for name, value in headers.items()}
        canonical_headers = "".join(
            f"{name}:{lowered[name].strip()}\n" for name in signed
        )
        signed_headers = ";".join(signed)
        canonical_request = "\n".join(
            [method, path, query, canonical_headers, signed_headers, payload_hash]
        )

        scope = f"{date_stamp}/{self._region}/{_SERVICE}/aws4_request"
        string_to_sign = "\n".join(
            [
                "AWS4-HMAC-SHA256",
                amz_date,
                scope,
                _sha256_hex(canonical_request.encode("utf-8")),
            ]
        )

        key = _hmac(f"AWS4{self._secret_access_key}".encode("utf-8"), date_stamp)
        key = _hmac(key, self._region)
        key = _hmac(key, _SERVICE)
        key = _hmac(key, "aws4_request")
        signature = hmac.new(
            key, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        headers["Authorization"] = (
            f"AWS4-HMAC-SHA256 Credential={self._access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

    def _request(
        self,
        method: str,
        bucket_name: str = "",
        object_name: str = "",
        query: Iterable[tuple[str, str]] = (),
        body: bytes = b"",
    ) -> requests.Response:
        path = "/"
        if bucket_name:
            path += quote(bucket_name, safe=_UNRESERVED)
            if object_name:
                path += "/" + quote(object_name, safe=_UNRESERVED + "/")

        query_string = "&".join(
            f"{quote(key, safe=_UNRESERVED)}={quote(value, safe=_UNRESERVED)}"
            for key, value in sorted(query)
        )
        url = self._base_url + path + (f"?{query_string}" if query_string else "")

        payload_hash = _sha256_hex(body)
        headers = {"Host": self._host, "x-amz-content-sha256": payload_hash}
        if self._access_key_id:
            self._sign(method, path, query_string, headers, payload_hash)

        try:
            return self._session.request(
                method,
                url,
                data=body if method in ("PUT", "POST") else None,
                headers=headers,
                timeout=_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise S3Error(f"{method} {url} failed: {exc}") from exc

    # -- bucket operations --------------------------------------------------

    def is_connection_valid(self) -> bool:
        """Return True if listing buckets at the endpoint succeeds."""
        try:
            return self._request("GET").ok
        except S3Error as exc:
            logger.debug("Connection check failed: %s", exc)
            return False

    def bucket_exists(self, bucket_name: str) -> bool:
        """Return True if the bucket exists."""
        _require(bucket_name, "Bucket name must not be empty.")
        return self._request("HEAD", bucket_name).status_code == 200

    # -- object operations --------------------------------------------------

    def object_exists(self, bucket_name: str, object_name: str) -> bool:
        """Return True if the object exists."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")
        return self._request("HEAD", bucket_name, object_name).ok

    def put_object(
        self, bucket_name: str, object_name: str, data: bytes | bytearray | memoryview
    ) -> str:
        """Upload ``data`` as a whole object and return its etag."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")
        body = bytes(data)
        _require(body, "Data must not be empty.")

        logger.debug("Putting object %s in bucket %s", object_name, bucket_name)
        response = self._request("PUT", bucket_name, object_name, body=body)
        if not response.ok:
            raise S3Error(
                f"Failed to put object {object_name} in bucket {bucket_name}: "
                f"{_describe_failure(response)}"
            )
        return response.headers.get("ETag", "").strip('"')

    def delete_object(self, bucket_name: str, object_name: str) -> None:
        """Delete an object; deleting a missing object succeeds."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")

        logger.debug("Deleting object %s from bucket %s", object_name, bucket_name)
        response = self._request("DELETE", bucket_name, object_name)
        if not response.ok:
            raise S3Error(
                f"Failed to delete object {object_name} from bucket {bucket_name}: "
                f"{_describe_failure(response)}"
            )

    # -- multipart operations -----------------------------------------------

    def create_multipart_object(self, bucket_name: str, object_name: str) -> str:
        """Start a multipart upload and return its upload id."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")

        logger.debug(
            "Creating multipart object %s in bucket %s", object_name, bucket_name
        )
        response = self._request(
            "POST", bucket_name, object_name, query=[("uploads", "")]
        )
        if not response.ok:
            raise S3Error(
                f"Failed to create multipart object {object_name} in bucket "
                f"{bucket_name}: {_describe_failure(response)}"
            )
        upload_id = _xml_text(response.content, "UploadId")
        if not upload_id:
            raise S3Error("Upload id returned empty.")
        return upload_id

    def upload_multipart_object_part(
        self,
        bucket_name: str,
        object_name: str,
        upload_id: str,
        data: bytes | bytearray | memoryview,
        part_number: int,
    ) -> str:
        """Upload one part of a multipart object and return its etag."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")
        body = bytes(data)
        _require(body, "Number of bytes must be positive.")
        _require(part_number, "Part number must be positive.")

        logger.debug(
            "Uploading multipart object part %d for object %s in bucket %s",
            part_number,
            object_name,
            bucket_name,
        )
        response = self._request(
            "PUT",
            bucket_name,
            object_name,
            query=[("partNumber", str(part_number)), ("uploadId", upload_id)],
            body=body,
        )
        if not response.ok:
            raise S3Error(
                f"Failed to upload part {part_number} for object {object_name} "
                f"in bucket {bucket_name}: {_describe_failure(response)}"
            )
        etag = response.headers.get("ETag", "").strip('"')
        if not etag:
            raise S3Error(
                f"Failed to upload part {part_number} of object {object_name}"
            )
        return etag

    def complete_multipart_object(
        self,
        bucket_name: str,
        object_name: str,
        upload_id: str,
        parts: Iterable[S3Part],
    ) -> None:
        """Assemble the uploaded ``parts`` into the final object."""
        parts = list(parts)
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")
        _require(upload_id, "Upload id must not be empty.")
        _require(parts, "Parts list must not be empty.")

        logger.debug(
            "Completing multipart object %s in bucket %s", object_name, bucket_name
        )
        root = ElementTree.Element("CompleteMultipartUpload")
        for part in parts:
            element = ElementTree.SubElement(root, "Part")
            ElementTree.SubElement(element, "PartNumber").text = str(part.number)
            ElementTree.SubElement(element, "ETag").text = f'"{part.etag}"'
        body = ElementTree.tostring(root, encoding="utf-8")

        response = self._request(
            "POST",
            bucket_name,
            object_name,
            query=[("uploadId", upload_id)],
            body=body,
        )
        if not response.ok or _xml_text(response.content, "Code"):
            raise S3Error(
                f"Failed to complete multipart object {object_name} in bucket "
                f"{bucket_name}: {_describe_failure(response)}"
            )


class S3ConnectionPool:
    """A fixed set of validated connections shared between threads."""

    def __init__(self, n_connections: int, settings: S3Settings) -> None:
        if settings.region:
            logger.debug("Setting region to %s", settings.region)

        self._connections: list[S3Connection] = []
        self._condition = threading.Condition()
        self._accepting = True

        for _ in range(n_connections):
            connection = S3Connection(settings)
            if connection.is_connection_valid():
                self._connections.append(connection)
            else:
                connection.close()

        if not self._connections:
            raise S3Error(
                f"Could not establish a valid connection to {settings.endpoint}"
            )

    def __enter__(self) -> S3ConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def get_connection(self) -> S3Connection:
        """Take a connection, waiting until one is free.

        Raises S3Error if the pool is closed while waiting.
        """
        with self._condition:
            self._condition.wait_for(
                lambda: not self._accepting or bool(self._connections)
            )
            if not self._accepting or not self._connections:
                raise S3Error("Connection pool is closed")
            return self._connections.pop()

    def return_connection(self, conn: S3Connection) -> None:
        """Give a connection back to the pool."""
        with self._condition:
            if not self._accepting:
                conn.close()
                return
            self._connections.append(conn)
            self._condition.notify()

    def close(self) -> None:
        """Stop handing out connections and close the idle ones."""
        with self._condition:
            self._accepting = False
            idle, self._connections = self._connections, []
            self._condition.notify_all()
        for conn in idle:
            conn.close()