"""Content hashing.

One digest for the whole system: SHA-256 over raw bytes, rendered as lowercase
hex. Template pins, contract hashes and signature labels all go through
:func:`content_hash`. Changing the algorithm is a format change and must bump
``HASH_FORMAT_VERSION``.
"""

from __future__ import annotations

import hashlib
import logging
import pathlib

from pactum.errors import TemplateHashMismatchError

logger = logging.getLogger(__name__)

HASH_FORMAT_VERSION = "1"
HASH_ALGORITHM = "sha256"


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_hash(path: pathlib.Path) -> str:
    """Hash a file's bytes, streaming in chunks."""
    h = hashlib.sha256()
    with pathlib.Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def normalize_digest(value: str) -> str:
    """Accept ``sha256:<hex>`` or bare hex and return lowercase hex."""
    v = (value or "").strip()
    if v.lower().startswith(f"{HASH_ALGORITHM}:"):
        v = v.split(":", 1)[1]
    return v.lower()


def verify_content_hash(data: bytes, expected: str, source: str) -> str:
    """Check ``data`` against ``expected`` and return the actual digest.

    Raises TemplateHashMismatchError naming both digests on mismatch.
    """
    actual = content_hash(data)
    want = normalize_digest(expected)
    if actual != want:
        logger.error(f"Hash mismatch for {source}: expected {want}, got {actual}")
        raise TemplateHashMismatchError(source, want, actual)
    logger.debug(f"Hash verified for {source}: {actual}")
    return actual
