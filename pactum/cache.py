"""On-disk content cache for fetched templates.

Layout under the cache root::

    index.json          {source_key: {filename, lastUpdated, hash, format?, ext?}}
    <md5(source_key)>   raw content bytes, one file per entry

Content files are named by a digest of the *source key*, not of the content, so
re-adding a source overwrites its file in place. The index is rewritten
atomically on every add. There is no locking: two processes writing the same
cache can lose each other's updates (the index never ends up half-written).
There is no eviction either; clear the directory to reset.
"""

from __future__ import annotations

import hashlib
import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Union

from pactum.core import atomic_write_bytes, now_rfc3339, write_json
from pactum.errors import CacheCorruptionError
from pactum.integrity import content_hash
from pactum.schema import validate_cache_index

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"


def cache_filename_for(source_key: str) -> str:
    """Deterministic 128-bit file name for a source key (not a security digest)."""
    return hashlib.md5(source_key.encode("utf-8"), usedforsecurity=False).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    source_key: str
    cache_filename: str
    content_hash: str
    last_updated: str
    format: Optional[str] = None
    extension: Optional[str] = None

    def to_index(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "filename": self.cache_filename,
            "lastUpdated": self.last_updated,
            "hash": self.content_hash,
        }
        if self.format:
            d["format"] = self.format
        if self.extension is not None:
            d["ext"] = self.extension
        return d

    @classmethod
    def from_index(cls, source_key: str, d: Dict[str, Any]) -> "CacheEntry":
        return cls(
            source_key=source_key,
            cache_filename=d["filename"],
            content_hash=d["hash"],
            last_updated=d["lastUpdated"],
            format=d.get("format"),
            extension=d.get("ext"),
        )


class ContentCache:
    """Persistent source-key -> (content file, metadata) store."""

    def __init__(self, base_path: Union[str, pathlib.Path]):
        self.base_path = pathlib.Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.index_path = self.base_path / INDEX_FILENAME
        self._index: Dict[str, CacheEntry] = self._load_index()

    def _load_index(self) -> Dict[str, CacheEntry]:
        if not self.index_path.exists():
            logger.debug(f"No cache index at {self.index_path}; starting empty")
            return {}
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CacheCorruptionError(f"cache index is not valid JSON: {self.index_path}: {exc}") from exc
        problems = validate_cache_index(raw)
        if problems:
            raise CacheCorruptionError(
                f"cache index failed validation: {self.index_path}: " + "; ".join(problems)
            )
        for key, meta in raw.items():
            if meta["filename"] != cache_filename_for(key):
                raise CacheCorruptionError(
                    f"cache index entry for {key!r} points at {meta['filename']}, "
                    f"expected {cache_filename_for(key)}"
                )
        return {key: CacheEntry.from_index(key, meta) for key, meta in raw.items()}

    def _persist(self) -> None:
        write_json(self.index_path, {k: e.to_index() for k, e in sorted(self._index.items())})

    def content_path(self, source_key: str) -> pathlib.Path:
        return self.base_path / cache_filename_for(source_key)

    def add(
        self,
        source_key: str,
        content: Union[bytes, str],
        format: Optional[str] = None,
        extension: Optional[str] = None,
    ) -> CacheEntry:
        data = content.encode("utf-8") if isinstance(content, str) else content
        entry = CacheEntry(
            source_key=source_key,
            cache_filename=cache_filename_for(source_key),
            content_hash=content_hash(data),
            last_updated=now_rfc3339(),
            format=format,
            extension=extension,
        )
        atomic_write_bytes(self.content_path(source_key), data)
        self._index[source_key] = entry
        self._persist()
        logger.debug(f"Cached {source_key} as {entry.cache_filename} ({entry.content_hash})")
        return entry

    def has(self, source_key: str) -> bool:
        return source_key in self._index

    def __contains__(self, source_key: str) -> bool:
        return self.has(source_key)

    def __len__(self) -> int:
        return len(self._index)

    def get_meta(self, source_key: str) -> Optional[CacheEntry]:
        return self._index.get(source_key)

    def get_bytes(self, source_key: str) -> Optional[bytes]:
        """Cached bytes for ``source_key``, or None if it was never cached.

        Raises CacheCorruptionError if the index names a file that is gone.
        """
        entry = self._index.get(source_key)
        if entry is None:
            return None
        path = self.base_path / entry.cache_filename
        if not path.is_file():
            raise CacheCorruptionError(
                f"cache index has an entry for {source_key!r} but its content file is missing: {path}"
            )
        return path.read_bytes()

    def get_content(self, source_key: str) -> Optional[str]:
        data = self.get_bytes(source_key)
        return None if data is None else data.decode("utf-8")

    def entries(self) -> Iterator[CacheEntry]:
        for key in sorted(self._index):
            yield self._index[key]
