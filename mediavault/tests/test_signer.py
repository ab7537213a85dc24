"""
URL signing tests: the six-way decision table, TTL handling, stored references.

Run with: pytest mediavault/tests/test_signer.py -v
"""

import base64
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs, urlsplit

import pytest
from botocore.signers import CloudFrontSigner
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from mediavault.core import constants as C
from mediavault.core.config import (
    BackendKind,
    CDNConfig,
    LocalConfig,
    ObjectStoreConfig,
    StorageConfig,
)
from mediavault.core.errors import BackendError, ErrorCode
from mediavault.core.types import ObjectKey, Visibility
from mediavault.storage.signer import AccessCapability, CapabilityKind
from mediavault.storage.store import create_store
from mediavault.tests.fakes import FakeS3Client, assert_err, assert_ok

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


@pytest.fixture(scope="module")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def pem_of(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode("ascii")


def s3_store(client: FakeS3Client, cdn: CDNConfig = CDNConfig(), **store: object):
    config = StorageConfig(
        backend=BackendKind.S3,
        object_store=ObjectStoreConfig(**{"private_bucket": "media-private", **store}),
        cdn=cdn,
    )
    return create_store(config, client=client, clock=fixed_clock)


def presign_calls(client: FakeS3Client) -> list[dict]:
    return [kwargs for name, kwargs in client.calls if name == "generate_presigned_url"]


# =============================================================================
# DECISION TABLE
# =============================================================================

@pytest.mark.asyncio
async def test_local_driver_serves_paths(tmp_path):
    config = StorageConfig(local=LocalConfig(root=tmp_path, public_base_url="https://app.test"))
    store = create_store(config, clock=fixed_clock)

    for visibility in (Visibility.PUBLIC, Visibility.PRIVATE):
        cap = assert_ok(await store.url_for("posts/a b.jpg", visibility))
        assert cap.url == f"https://app.test/uploads/{visibility.value}/posts/a%20b.jpg"
        assert cap.kind is CapabilityKind.LOCAL_PATH
        assert cap.expires_at is None
        assert cap.key == "posts/a b.jpg"


@pytest.mark.asyncio
async def test_local_driver_without_origin_is_root_relative(tmp_path):
    store = create_store(StorageConfig(local=LocalConfig(root=tmp_path)))
    cap = assert_ok(await store.url_for("cat.png"))
    assert cap.url == "/uploads/private/uploads/cat.png"


@pytest.mark.asyncio
async def test_public_bucket_is_unsigned():
    client = FakeS3Client()
    store = s3_store(client, public_bucket="media-public")

    cap = assert_ok(await store.url_for("posts/a.jpg", Visibility.PUBLIC))
    assert cap.url == "https://media-public.s3.us-east-1.amazonaws.com/posts/a.jpg"
    assert cap.kind is CapabilityKind.PUBLIC
    assert cap.expires_at is None
    assert presign_calls(client) == []


@pytest.mark.asyncio
async def test_public_bucket_with_url_base():
    store = s3_store(FakeS3Client(), public_bucket="media-public",
                     public_url_base="https://static.example.com")
    cap = assert_ok(await store.url_for("products/9/p.png", "public"))
    assert cap.url == "https://static.example.com/products/9/p.png"


@pytest.mark.asyncio
async def test_public_acl_in_private_bucket():
    client = FakeS3Client()
    store = s3_store(client, allow_public_acl=True)

    cap = assert_ok(await store.url_for("posts/a.jpg", Visibility.PUBLIC))
    assert cap.url == "https://media-private.s3.us-east-1.amazonaws.com/posts/a.jpg"
    assert cap.kind is CapabilityKind.PUBLIC_ACL
    assert cap.expires_at is None

    assert_ok(await store.upload("posts/a.jpg", b"jpg", visibility=Visibility.PUBLIC))
    assert client.objects[("media-private", "posts/a.jpg")].params["ACL"] == "public-read"


@pytest.mark.asyncio
@pytest.mark.parametrize("store_options, expected", [
    ({"public_bucket": "media-public"},
     "https://media-public.s3.us-east-1.amazonaws.com/posts/my%20clip%231%3F.mp4"),
    ({"allow_public_acl": True},
     "https://media-private.s3.us-east-1.amazonaws.com/posts/my%20clip%231%3F.mp4"),
    ({"public_bucket": "media-public", "endpoint_url": "https://minio.test"},
     "https://minio.test/media-public/posts/my%20clip%231%3F.mp4"),
])
async def test_public_urls_percent_encode_keys(store_options, expected):
    store = s3_store(FakeS3Client(), **store_options)
    cap = assert_ok(await store.url_for("posts/my clip#1?.mp4", Visibility.PUBLIC))
    assert cap.url == expected
    assert urlsplit(cap.url).fragment == ""
    assert urlsplit(cap.url).query == ""


@pytest.mark.asyncio
async def test_public_without_bucket_or_acl_is_presigned_for_a_day():
    client = FakeS3Client()
    store = s3_store(client)

    cap = assert_ok(await store.url_for("posts/a.jpg", Visibility.PUBLIC))
    assert cap.kind is CapabilityKind.PRESIGNED
    assert cap.expires_at == NOW + timedelta(hours=24)
    assert presign_calls(client)[-1]["ExpiresIn"] == C.DAY_S
    assert presign_calls(client)[-1]["Params"]["Bucket"] == "media-private"


@pytest.mark.asyncio
async def test_private_cdn_namespace_is_cloudfront_signed(rsa_key):
    client = FakeS3Client()
    cdn = CDNConfig(domain="d111.cloudfront.net", key_pair_id="KTEST", private_key_pem=pem_of(rsa_key))
    store = s3_store(client, cdn=cdn)

    cap = assert_ok(await store.url_for("posts/clip.mp4"))
    assert cap.kind is CapabilityKind.CDN_SIGNED
    assert cap.expires_at == NOW + timedelta(minutes=15)
    assert presign_calls(client) == []

    parts = urlsplit(cap.url)
    base = f"{parts.scheme}://{parts.netloc}{parts.path}"
    query = parse_qs(parts.query)
    assert base == "https://d111.cloudfront.net/posts/clip.mp4"
    assert query["Key-Pair-Id"] == ["KTEST"]
    assert query["Expires"] == [str(int(cap.expires_at.timestamp()))]

    # Signature verifies against the canned policy
    signature = base64.b64decode(
        query["Signature"][0].replace("-", "+").replace("_", "=").replace("~", "/"),
    )
    policy = CloudFrontSigner("KTEST", lambda message: b"").build_policy(base, cap.expires_at)
    rsa_key.public_key().verify(signature, policy.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1())


@pytest.mark.asyncio
async def test_private_outside_cdn_namespaces_is_presigned(rsa_key):
    client = FakeS3Client()
    cdn = CDNConfig(domain="d111.cloudfront.net", key_pair_id="KTEST", private_key_pem=pem_of(rsa_key))
    store = s3_store(client, cdn=cdn)

    cap = assert_ok(await store.url_for("requests/r1/brief.pdf"))
    assert cap.kind is CapabilityKind.PRESIGNED
    assert cap.url.startswith("https://media-private.s3.fake.test/requests/r1/brief.pdf?")
    assert cap.expires_at == NOW + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_private_default_is_presigned():
    client = FakeS3Client()
    store = s3_store(client, public_bucket="media-public")

    cap = assert_ok(await store.url_for("posts/a.jpg"))
    assert cap.kind is CapabilityKind.PRESIGNED
    assert cap.method == "GET"
    call = presign_calls(client)[-1]
    assert call["ClientMethod"] == "get_object"
    assert call["ExpiresIn"] == C.PRIVATE_PRESIGN_TTL_S
    assert call["Params"] == {"Bucket": "media-private", "Key": "posts/a.jpg"}
    assert "secret" not in cap.url.lower()


# =============================================================================
# TTL HANDLING
# =============================================================================

@pytest.mark.asyncio
async def test_one_second_ttl_expires():
    store = s3_store(FakeS3Client())
    cap = assert_ok(await store.url_for("posts/a.jpg", ttl=1))

    assert cap.expires_at == NOW + timedelta(seconds=1)
    assert not cap.is_expired(NOW)
    assert cap.is_expired(NOW + timedelta(seconds=1))
    assert cap.is_expired(NOW + timedelta(seconds=2))


@pytest.mark.asyncio
async def test_ttl_is_capped_at_seven_days():
    client = FakeS3Client()
    store = s3_store(client)
    cap = assert_ok(await store.url_for("posts/a.jpg", ttl=30 * C.DAY_S))

    assert presign_calls(client)[-1]["ExpiresIn"] == C.MAX_PRESIGN_TTL_S
    assert cap.expires_at == NOW + timedelta(days=7)


@pytest.mark.asyncio
@pytest.mark.parametrize("ttl", [0, -5])
async def test_non_positive_ttl_is_rejected(ttl):
    store = s3_store(FakeS3Client())
    error = assert_err(await store.url_for("posts/a.jpg", ttl=ttl), BackendError)
    assert error.code is ErrorCode.SIGNING_FAILED


@pytest.mark.asyncio
async def test_presign_failure_is_signing_error():
    client = FakeS3Client()
    client.fail_operations.add("generate_presigned_url")
    store = s3_store(client)
    error = assert_err(await store.url_for("posts/a.jpg"), BackendError)
    assert error.code is ErrorCode.SIGNING_FAILED


def test_capability_wire_shape():
    cap = AccessCapability("posts/a.jpg", "https://x/posts/a.jpg", NOW, CapabilityKind.PRESIGNED)
    assert cap.to_dict() == {
        "key": "posts/a.jpg",
        "url": "https://x/posts/a.jpg",
        "expiresAt": "2026-01-01T12:00:00+00:00",
    }
    never = AccessCapability("posts/a.jpg", "/uploads/private/posts/a.jpg", None, CapabilityKind.LOCAL_PATH)
    assert never.to_dict()["expiresAt"] is None
    assert not never.is_expired(NOW + timedelta(days=3650))


# =============================================================================
# UPLOAD URLS
# =============================================================================

@pytest.mark.asyncio
async def test_upload_url_is_presigned_put():
    client = FakeS3Client()
    store = s3_store(client, public_bucket="media-public")

    cap = assert_ok(await store.upload_url_for("products/9/p.png", "image/png", Visibility.PUBLIC))
    assert cap.method == "PUT"
    assert cap.expires_at == NOW + timedelta(seconds=C.UPLOAD_PRESIGN_TTL_S)
    call = presign_calls(client)[-1]
    assert call["ClientMethod"] == "put_object"
    assert call["Params"] == {"Bucket": "media-public", "Key": "products/9/p.png",
                              "ContentType": "image/png"}


@pytest.mark.asyncio
async def test_upload_url_unsupported_locally(tmp_path):
    store = create_store(StorageConfig(local=LocalConfig(root=tmp_path)))
    error = assert_err(await store.upload_url_for("posts/a.jpg", "image/jpeg"), BackendError)
    assert error.code is ErrorCode.STORAGE_UNSUPPORTED


# =============================================================================
# STORED REFERENCES
# =============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("ref", [
    "posts/a.jpg",
    "/posts/a.jpg",
    '{"key": "posts/a.jpg", "size": 10}',
    {"key": "posts/a.jpg"},
    {"key": ObjectKey("posts/a.jpg")},
    ObjectKey("posts/a.jpg"),
    SimpleNamespace(key="posts/a.jpg"),
])
async def test_sign_reference_shapes(ref):
    store = s3_store(FakeS3Client())
    cap = await store.sign_reference(ref)
    assert cap is not None
    assert cap.key == "posts/a.jpg"
    assert cap.kind is CapabilityKind.PRESIGNED


@pytest.mark.asyncio
async def test_sign_reference_passes_urls_through():
    client = FakeS3Client()
    store = s3_store(client)
    cap = await store.sign_reference("https://cdn.example.com/legacy/a.jpg")
    assert cap.url == "https://cdn.example.com/legacy/a.jpg"
    assert cap.kind is CapabilityKind.PASSTHROUGH
    assert cap.expires_at is None
    assert presign_calls(client) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("ref", [
    None,
    "",
    "posts/../secret",
    '{"key": ',
    {"url": "posts/a.jpg"},
    {"key": 42},
    42,
])
async def test_sign_reference_unusable(ref):
    store = s3_store(FakeS3Client())
    assert await store.sign_reference(ref) is None


@pytest.mark.asyncio
async def test_sign_reference_swallows_signing_failure():
    client = FakeS3Client()
    client.fail_operations.add("generate_presigned_url")
    store = s3_store(client)
    assert await store.sign_reference("posts/a.jpg") is None
