"""
Key normalization tests.

Run with: pytest mediavault/tests/test_keys.py -v
"""

import re

import pytest

from mediavault.core.config import NamespaceConfig
from mediavault.core.errors import ErrorCode, InvalidKeyError
from mediavault.core.types import ObjectKey
from mediavault.storage.keys import KeyNormalizer
from mediavault.tests.fakes import assert_err, assert_ok


@pytest.fixture
def normalizer() -> KeyNormalizer:
    return KeyNormalizer()


# =============================================================================
# CANONICAL FORM
# =============================================================================

@pytest.mark.parametrize("raw, expected", [
    ("posts/a.jpg", "posts/a.jpg"),
    ("/posts/a.jpg", "posts/a.jpg"),
    ("\\posts\\a.jpg", "posts/a.jpg"),
    ("posts//2024///a.jpg", "posts/2024/a.jpg"),
    ("posts/a.jpg/", "posts/a.jpg"),
    ("  products/7/b.png ", "products/7/b.png"),
    ("cat.png", "uploads/cat.png"),
    ("//cat.png/", "uploads/cat.png"),
    ("avatars/u1.png", "uploads/avatars/u1.png"),
])
def test_normalize_canonicalizes(normalizer, raw, expected):
    key = assert_ok(normalizer.normalize(raw), raw)
    assert key.value == expected


@pytest.mark.parametrize("raw", [
    "posts/a.jpg",
    "\\\\posts\\\\a.jpg",
    "cat.png",
    "products//9//x.webp/",
])
def test_normalize_is_idempotent(normalizer, raw):
    once = assert_ok(normalizer.normalize(raw))
    twice = assert_ok(normalizer.normalize(once.value))
    assert once == twice


def test_object_key_passes_through(normalizer):
    key = ObjectKey("posts/a.jpg")
    assert assert_ok(normalizer.normalize(key)) is key


# =============================================================================
# REJECTIONS
# =============================================================================

@pytest.mark.parametrize("raw", [
    "",
    "   ",
    "/",
    "////",
    "posts/../etc/passwd",
    "../secret",
    "posts/./a.jpg",
    "posts\\..\\..\\a.jpg",
    "posts/a\x00.jpg",
    "posts",
    "/posts/",
])
def test_normalize_rejects(normalizer, raw):
    error = assert_err(normalizer.normalize(raw), InvalidKeyError, repr(raw))
    assert error.code is ErrorCode.REQUEST_INVALID_KEY
    assert "reason" in error.context


def test_normalize_rejects_non_strings(normalizer):
    assert_err(normalizer.normalize(42), InvalidKeyError)
    assert_err(normalizer.normalize(None), InvalidKeyError)


def test_dotted_names_are_not_dot_segments(normalizer):
    key = assert_ok(normalizer.normalize("posts/..hidden/a..b.jpg"))
    assert key.value == "posts/..hidden/a..b.jpg"


# =============================================================================
# CUSTOM NAMESPACES
# =============================================================================

def test_custom_namespaces():
    normalizer = KeyNormalizer(NamespaceConfig(allowed=("media", "tmp"), default="tmp"))
    assert assert_ok(normalizer.normalize("media/a.mp4")).value == "media/a.mp4"
    assert assert_ok(normalizer.normalize("posts/a.mp4")).value == "tmp/posts/a.mp4"
    assert normalizer.default_namespace == "tmp"
    assert normalizer.is_namespace("media")
    assert not normalizer.is_namespace("posts")


# =============================================================================
# KEY GENERATION
# =============================================================================

def test_generate_layout(normalizer):
    key = normalizer.generate("products", "Photo.JPG", owner=42)
    assert re.fullmatch(r"products/42/[0-9a-f]{32}\.jpg", key.value)
    assert key.namespace == "products"
    assert key.extension == ".jpg"


def test_generate_without_owner_or_extension(normalizer):
    key = normalizer.generate("posts")
    assert re.fullmatch(r"posts/[0-9a-f]{32}", key.value)


def test_generate_sanitizes_owner_and_extension(normalizer):
    key = normalizer.generate("creators", "evil.ph p", owner="../bob smith")
    assert re.fullmatch(r"creators/bob_smith/[0-9a-f]{32}", key.value)


def test_generated_keys_are_unique_and_normal(normalizer):
    keys = {normalizer.generate("uploads", "a.png").value for _ in range(200)}
    assert len(keys) == 200
    for value in keys:
        assert assert_ok(normalizer.normalize(value)).value == value


def test_generate_unknown_namespace(normalizer):
    with pytest.raises(ValueError):
        normalizer.generate("secrets", "a.png")
