"""
In-memory S3 client for tests.

Implements the subset of the aiobotocore S3 client that S3Backend uses,
with the same response shapes and botocore ClientError failures:

    - put_object / get_object (Range) / head_object / delete_object
    - create / upload_part / complete / abort multipart upload
    - generate_presigned_url

Failure injection:
    client.fail_parts[3] = 99     # part 3 fails its next 99 attempts
    client.fail_operations.add("delete_object")
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote
from uuid import uuid4

from botocore.exceptions import ClientError

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"fake {code}"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeBody:
    """Stand-in for aiobotocore's StreamingBody."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0
        self.closed = False
        self.reads: list[int] = []

    async def read(self, amt: Optional[int] = None) -> bytes:
        if self.closed:
            raise ValueError("read on closed body")
        end = len(self._data) if amt is None or amt < 0 else self._offset + amt
        chunk = self._data[self._offset:end]
        self._offset += len(chunk)
        self.reads.append(len(chunk))
        return chunk

    def close(self) -> None:
        self.closed = True

    async def __aenter__(self) -> FakeBody:
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.close()


@dataclass
class FakeObject:
    data: bytes
    content_type: str
    params: dict[str, Any]
    etag: str
    last_modified: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class FakeUpload:
    bucket: str
    key: str
    params: dict[str, Any]
    parts: dict[int, bytes] = field(default_factory=dict)


class FakeS3Client:
    """
    In-memory S3 client.

    Objects live in `objects[(bucket, key)]`; every call is appended to
    `calls` as (operation, kwargs-without-body).
    """

    def __init__(self, part_delay: float = 0.0) -> None:
        self.objects: dict[tuple[str, str], FakeObject] = {}
        self.uploads: dict[str, FakeUpload] = {}
        self.aborted: list[str] = []
        self.completed: list[str] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.bodies: list[FakeBody] = []
        self.fail_parts: dict[int, int] = {}
        self.fail_operations: set[str] = set()
        self.part_sizes: list[int] = []
        self.part_delay = part_delay
        self.in_flight = 0
        self.max_in_flight = 0

    def _record(self, operation: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((operation, {k: v for k, v in kwargs.items() if k != "Body"}))
        if operation in self.fail_operations:
            raise client_error("InternalError", 500, operation)

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    def stored(self, bucket: str, key: str) -> Optional[bytes]:
        obj = self.objects.get((bucket, key))
        return obj.data if obj is not None else None

    # -------------------------------------------------------------------------
    # OBJECTS
    # -------------------------------------------------------------------------

    async def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("put_object", kwargs)
        data = bytes(kwargs["Body"])
        etag = hashlib.md5(data).hexdigest()
        self.objects[(kwargs["Bucket"], kwargs["Key"])] = FakeObject(
            data=data,
            content_type=kwargs.get("ContentType", "binary/octet-stream"),
            params={k: v for k, v in kwargs.items() if k != "Body"},
            etag=etag,
        )
        return {"ETag": f'"{etag}"'}

    async def get_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("get_object", kwargs)
        obj = self.objects.get((kwargs["Bucket"], kwargs["Key"]))
        if obj is None:
            raise client_error("NoSuchKey", 404, "GetObject")

        total = len(obj.data)
        response: dict[str, Any] = {
            "ContentType": obj.content_type,
            "ETag": f'"{obj.etag}"',
            "LastModified": obj.last_modified,
            "AcceptRanges": "bytes",
        }
        header = kwargs.get("Range")
        if header:
            match = _RANGE_RE.match(header)
            if match is None:
                raise client_error("InvalidArgument", 400, "GetObject")
            start_s, end_s = match.groups()
            if start_s:
                start = int(start_s)
                end = min(int(end_s), total - 1) if end_s else total - 1
            else:
                start = max(total - int(end_s), 0)
                end = total - 1
            if start >= total:
                raise client_error("InvalidRange", 416, "GetObject")
            body = obj.data[start:end + 1]
            response["ContentRange"] = f"bytes {start}-{end}/{total}"
        else:
            body = obj.data

        fake_body = FakeBody(body)
        self.bodies.append(fake_body)
        response["Body"] = fake_body
        response["ContentLength"] = len(body)
        return response

    async def head_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("head_object", kwargs)
        obj = self.objects.get((kwargs["Bucket"], kwargs["Key"]))
        if obj is None:
            raise client_error("404", 404, "HeadObject")
        return {
            "ContentLength": len(obj.data),
            "ContentType": obj.content_type,
            "ETag": f'"{obj.etag}"',
            "LastModified": obj.last_modified,
        }

    async def delete_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_object", kwargs)
        self.objects.pop((kwargs["Bucket"], kwargs["Key"]), None)
        return {}

    # -------------------------------------------------------------------------
    # MULTIPART
    # -------------------------------------------------------------------------

    async def create_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_multipart_upload", kwargs)
        upload_id = uuid4().hex
        self.uploads[upload_id] = FakeUpload(kwargs["Bucket"], kwargs["Key"], dict(kwargs))
        return {"UploadId": upload_id}

    async def upload_part(self, **kwargs: Any) -> dict[str, Any]:
        self._record("upload_part", kwargs)
        upload = self.uploads.get(kwargs["UploadId"])
        if upload is None:
            raise client_error("NoSuchUpload", 404, "UploadPart")

        number = kwargs["PartNumber"]
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.part_delay:
                await asyncio.sleep(self.part_delay)
            remaining = self.fail_parts.get(number, 0)
            if remaining > 0:
                self.fail_parts[number] = remaining - 1
                raise client_error("InternalError", 500, "UploadPart")
            data = bytes(kwargs["Body"])
            upload.parts[number] = data
            self.part_sizes.append(len(data))
            return {"ETag": f'"{hashlib.md5(data).hexdigest()}"'}
        finally:
            self.in_flight -= 1

    async def complete_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        self._record("complete_multipart_upload", kwargs)
        upload = self.uploads.pop(kwargs["UploadId"], None)
        if upload is None:
            raise client_error("NoSuchUpload", 404, "CompleteMultipartUpload")
        numbers = [part["PartNumber"] for part in kwargs["MultipartUpload"]["Parts"]]
        if numbers != sorted(numbers):
            raise client_error("InvalidPartOrder", 400, "CompleteMultipartUpload")
        data = b"".join(upload.parts[n] for n in numbers)
        etag = f"{hashlib.md5(data).hexdigest()}-{len(numbers)}"
        self.objects[(upload.bucket, upload.key)] = FakeObject(
            data=data,
            content_type=upload.params.get("ContentType", "binary/octet-stream"),
            params=upload.params,
            etag=etag,
        )
        self.completed.append(kwargs["UploadId"])
        return {"ETag": f'"{etag}"'}

    async def abort_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        self._record("abort_multipart_upload", kwargs)
        self.uploads.pop(kwargs["UploadId"], None)
        self.aborted.append(kwargs["UploadId"])
        return {}

    # -------------------------------------------------------------------------
    # PRESIGNING
    # -------------------------------------------------------------------------

    async def generate_presigned_url(
        self,
        ClientMethod: str,
        Params: dict[str, Any],
        ExpiresIn: int,
    ) -> str:
        self._record("generate_presigned_url", {"ClientMethod": ClientMethod, "Params": Params,
                                                "ExpiresIn": ExpiresIn})
        key = quote(Params["Key"], safe="/")
        return (
            f"https://{Params['Bucket']}.s3.fake.test/{key}"
            f"?X-Amz-Expires={ExpiresIn}&X-Amz-Op={ClientMethod}&X-Amz-Signature=fake"
        )


# =============================================================================
# RESULT ASSERTIONS
# =============================================================================

def assert_ok(result: Any, msg: str = "") -> Any:
    """Assert result is Ok and return its value."""
    assert result.is_ok(), f"{msg}: expected Ok, got {result}"
    return result.unwrap()


def assert_err(result: Any, error_type: type = Exception, msg: str = "") -> Any:
    """Assert result is Err of the given type and return the error."""
    assert result.is_err(), f"{msg}: expected Err, got {result}"
    assert isinstance(result.error, error_type), (
        f"{msg}: expected {error_type.__name__}, got {type(result.error).__name__}"
    )
    return result.error
