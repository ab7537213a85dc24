"""
Object Key Normalization

Every caller-supplied key passes through KeyNormalizer before it reaches a
backend. The output is a canonical, namespaced path:

    "\\\\posts\\\\a.jpg"      -> posts/a.jpg
    "//cat.png/"          -> uploads/cat.png
    "posts/../etc/passwd" -> InvalidKeyError

Normalization is pure and idempotent.
"""

from __future__ import annotations

import os
import re
import uuid
from typing import Optional, Union

from mediavault.core.config import NamespaceConfig
from mediavault.core.errors import InvalidKeyError
from mediavault.core.types import Err, ObjectKey, Ok, Result

_SLASHES_RE = re.compile(r"/{2,}")
_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,16}$")
_OWNER_RE = re.compile(r"[^A-Za-z0-9_\-]")


class KeyNormalizer:
    """Turns raw caller keys into safe ObjectKeys."""

    __slots__ = ("_namespaces", "_default")

    def __init__(self, namespaces: Optional[NamespaceConfig] = None) -> None:
        namespaces = namespaces or NamespaceConfig()
        self._namespaces = frozenset(namespaces.allowed)
        self._default = namespaces.default

    @property
    def default_namespace(self) -> str:
        return self._default

    def is_namespace(self, segment: str) -> bool:
        return segment in self._namespaces

    def normalize(self, raw: Union[str, ObjectKey]) -> Result[ObjectKey, InvalidKeyError]:
        """
        Canonicalize a key.

        Converts backslashes, strips leading slashes, collapses repeated
        slashes and drops a trailing slash. Rejects empty keys, NUL bytes
        and dot segments. Keys outside a known namespace are re-rooted
        under the default namespace.
        """
        if isinstance(raw, ObjectKey):
            return Ok(raw)
        if not isinstance(raw, str):
            return Err(InvalidKeyError.rejected(raw, f"expected str, got {type(raw).__name__}"))
        if "\x00" in raw:
            return Err(InvalidKeyError.rejected(raw, "contains NUL byte"))

        path = _SLASHES_RE.sub("/", raw.strip().replace("\\", "/")).strip("/")
        if not path:
            return Err(InvalidKeyError.rejected(raw, "empty key"))

        segments = path.split("/")
        for segment in segments:
            if segment in (".", ".."):
                return Err(InvalidKeyError.rejected(raw, "dot segments are not allowed"))

        if segments[0] not in self._namespaces:
            segments.insert(0, self._default)
        elif len(segments) == 1:
            # A bare namespace names a directory, not an object
            return Err(InvalidKeyError.rejected(raw, "key has no object name"))

        return Ok(ObjectKey("/".join(segments)))

    def generate(
        self,
        namespace: str,
        original_name: str = "",
        owner: Optional[Union[str, int]] = None,
    ) -> ObjectKey:
        """
        Build a fresh collision-free key.

        Layout: <namespace>[/<owner>]/<32 hex chars><.ext>. The extension is
        taken from `original_name`, lower-cased, and dropped if unusual.

        Raises:
            ValueError: namespace is not recognized
        """
        if namespace not in self._namespaces:
            raise ValueError(f"unknown namespace: {namespace!r}")

        ext = os.path.splitext(os.path.basename(original_name.replace("\\", "/")))[1].lower()
        if not _EXTENSION_RE.match(ext):
            ext = ""

        parts = [namespace]
        if owner is not None:
            owner_segment = _OWNER_RE.sub("_", str(owner)).strip("_")
            if owner_segment:
                parts.append(owner_segment)
        parts.append(f"{uuid.uuid4().hex}{ext}")
        return ObjectKey("/".join(parts))
