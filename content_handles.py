"""
Session-scoped content handles for extracted blobs.

A handle is an opaque URI a renderer can dereference without knowing archive
paths. Each blob gets at most one handle per registry; repeated acquires
return the same string and bump a reference count, so rewriting a document
twice yields identical URIs. Closing the registry revokes everything.
"""
from __future__ import annotations

import itertools
import logging
import re
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Set

from zip_extract import AssetBundleError, Blob, normalize_asset_path


logger = logging.getLogger(__name__)

BLOB_URI_PREFIX = "blob:gltf-zip/"
SAFE_SEGMENT_RX = re.compile(r'[<>:"|?*\x00-\x1f]')


class HandleError(AssetBundleError):
    pass


@dataclass
class _HandleEntry:
    blob: Blob
    handle: str
    refs: int = 1


class ContentHandles:
    def __init__(self) -> None:
        self._by_blob: Dict[int, _HandleEntry] = {}
        self._by_handle: Dict[str, _HandleEntry] = {}
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise HandleError(f"{type(self).__name__} is closed")

    def _issue(self, blob: Blob) -> str:
        raise NotImplementedError

    def _revoke(self, entry: _HandleEntry) -> None:
        pass

    def _read(self, entry: _HandleEntry) -> bytes:
        return entry.blob.data

    def acquire(self, blob: Blob) -> str:
        self._check_open()
        entry = self._by_blob.get(id(blob))
        if entry is not None:
            entry.refs += 1
            return entry.handle
        entry = _HandleEntry(blob=blob, handle=self._issue(blob))
        self._by_blob[id(blob)] = entry
        self._by_handle[entry.handle] = entry
        logger.debug("Issued %s for %s", entry.handle, blob.path)
        return entry.handle

    def release(self, handle: str) -> None:
        entry = self._by_handle.get(handle)
        if entry is None:
            raise HandleError(f"Unknown content handle: {handle}")
        entry.refs -= 1
        if entry.refs <= 0:
            self._drop(entry)

    def _drop(self, entry: _HandleEntry) -> None:
        del self._by_handle[entry.handle]
        del self._by_blob[id(entry.blob)]
        self._revoke(entry)

    def owns(self, reference: str) -> bool:
        return reference in self._by_handle

    def handle_for(self, blob: Blob) -> str | None:
        entry = self._by_blob.get(id(blob))
        return entry.handle if entry is not None else None

    def fetch(self, handle: str) -> bytes:
        self._check_open()
        entry = self._by_handle.get(handle)
        if entry is None:
            raise HandleError(f"Unknown or revoked content handle: {handle}")
        return self._read(entry)

    def close(self) -> None:
        if self._closed:
            return
        for entry in list(self._by_handle.values()):
            self._drop(entry)
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._by_handle)

    def __enter__(self) -> "ContentHandles":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class MemoryHandles(ContentHandles):
    """`blob:` URIs served straight from the blob's bytes."""

    def __init__(self) -> None:
        super().__init__()
        self.session = uuid.uuid4().hex[:12]
        self._counter = itertools.count(1)

    def _issue(self, blob: Blob) -> str:
        return f"{BLOB_URI_PREFIX}{self.session}/{next(self._counter)}"


def safe_relpath(asset_path: str) -> Path:
    parts = []
    for part in normalize_asset_path(asset_path).split("/"):
        if part in {"", ".", ".."}:
            continue
        parts.append(SAFE_SEGMENT_RX.sub("_", part))
    if not parts:
        raise HandleError(f"Cannot build output path from member: {asset_path}")
    return Path(*parts)


class TempFileHandles(ContentHandles):
    """`file://` URIs for blobs written to disk, keeping the archive layout.

    Without `directory` a private temp directory is created and removed on
    close. A caller-provided directory is never removed; files written into
    it are deleted on revoke unless `keep_files` is set.
    """

    def __init__(self, directory: Path | None = None, keep_files: bool = False):
        super().__init__()
        if directory is None:
            self.directory = Path(tempfile.mkdtemp(prefix="gltf-zip-"))
            self._owns_directory = True
        else:
            self.directory = Path(directory)
            self.directory.mkdir(parents=True, exist_ok=True)
            self._owns_directory = False
        self.keep_files = keep_files
        self._files: Dict[str, Path] = {}
        self._written: Set[Path] = set()
        self._counter = itertools.count(1)

    def _target_for(self, blob: Blob) -> Path:
        rel = safe_relpath(blob.path)
        target = self.directory / rel
        if target in self._written:
            # Duplicate member paths in one archive.
            target = self.directory / f"_dup{next(self._counter)}" / rel
        return target

    def _issue(self, blob: Blob) -> str:
        target = self._target_for(blob)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(blob.data)
        self._written.add(target)
        handle = target.resolve().as_uri()
        self._files[handle] = target
        return handle

    def path_for(self, handle: str) -> Path:
        try:
            return self._files[handle]
        except KeyError:
            raise HandleError(f"Unknown content handle: {handle}") from None

    def _read(self, entry: _HandleEntry) -> bytes:
        try:
            return self._files[entry.handle].read_bytes()
        except OSError as exc:
            raise HandleError(f"Cannot read {entry.handle}: {exc}") from exc

    def _revoke(self, entry: _HandleEntry) -> None:
        path = self._files.pop(entry.handle, None)
        if path is None or self.keep_files:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def close(self) -> None:
        was_closed = self.closed
        super().close()
        if not was_closed and self._owns_directory:
            shutil.rmtree(self.directory, ignore_errors=True)
            logger.debug("Removed handle directory %s", self.directory)
