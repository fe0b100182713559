"""
Path index and reference resolver for blobs extracted from a glTF bundle.

Hand-authored and re-exported bundles rarely agree with themselves about
paths: references come relative to the document, with backslashes, with a
wrapping folder missing, percent-encoded, or in the wrong case. The index
registers several keys per blob and the resolver walks an ordered fallback
chain over them.
"""
from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List
from urllib.parse import unquote

from zip_extract import (
    AssetBundleError,
    BINARY_BUFFER_EXTENSIONS,
    Blob,
    BlobKind,
    file_extension,
    normalize_asset_path,
)


logger = logging.getLogger(__name__)


class ReferenceNotFoundError(AssetBundleError):
    def __init__(self, reference: str, base_dir: str = ""):
        where = f" (relative to '{base_dir}')" if base_dir else ""
        super().__init__(f"No archive member matches reference '{reference}'{where}")
        self.reference = reference
        self.base_dir = base_dir


def normalize_reference(reference: str) -> str:
    ref = str(reference or "")
    ref = ref.split("?", 1)[0]
    ref = unquote(ref.replace("\\", "/")).lower()
    return normalize_asset_path(ref)


def strip_first_segment(path: str) -> str:
    return path.split("/", 1)[1] if "/" in path else path


def join_base_dir(base_dir: str, reference: str) -> str:
    base = normalize_reference(base_dir)
    if not base:
        return reference
    joined = posixpath.normpath(f"{base}/{reference}")
    return "" if joined == "." else normalize_asset_path(joined)


class PathIndex:
    def __init__(self) -> None:
        self._keys: Dict[str, Blob] = {}
        self._blobs: List[Blob] = []
        self._binary_buffers: List[Blob] = []
        self._normalized_paths: Dict[int, str] = {}

    @classmethod
    def build(cls, blobs: Iterable[Blob]) -> "PathIndex":
        index = cls()
        for blob in blobs:
            index._add(blob)
        return index

    def _register(self, key: str, blob: Blob) -> None:
        if key and key not in self._keys:
            self._keys[key] = blob

    def _add(self, blob: Blob) -> None:
        norm_path = normalize_asset_path(blob.path).lower()
        name = blob.name.lower()
        self._register(name, blob)
        self._register(norm_path, blob)
        self._register(strip_first_segment(norm_path), blob)
        self._register(posixpath.basename(norm_path), blob)

        self._blobs.append(blob)
        self._normalized_paths[id(blob)] = norm_path
        if blob.kind is BlobKind.SCENE_BINARY_BUFFER:
            self._binary_buffers.append(blob)

    def get(self, key: str) -> Blob | None:
        return self._keys.get(key)

    def keys(self) -> List[str]:
        return list(self._keys.keys())

    def keys_for(self, blob: Blob) -> List[str]:
        return [k for k, v in self._keys.items() if v is blob]

    def normalized_path(self, blob: Blob) -> str:
        return self._normalized_paths[id(blob)]

    @property
    def blobs(self) -> List[Blob]:
        return list(self._blobs)

    @property
    def binary_buffers(self) -> List[Blob]:
        return list(self._binary_buffers)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)


@dataclass(frozen=True)
class Resolution:
    blob: Blob
    strategy: str


class AssetResolver:
    """Resolves reference strings against a PathIndex.

    Lookup order, first hit wins:
      exact -> filename -> base-dir -> path-suffix -> basename
      -> binary-buffer-fallback (only for *.bin references)

    The binary-buffer fallback is a guess: a bundle with exactly one .bin
    almost always means that one, but with several buffers the pick is only
    as good as `expected_length`.
    """

    def __init__(self, index: PathIndex):
        self.index = index

    def resolve_strategy(
        self,
        reference: str,
        base_dir: str = "",
        expected_length: int | None = None,
    ) -> Resolution | None:
        norm = normalize_reference(reference)
        if not norm:
            return None
        filename = norm.rsplit("/", 1)[-1]

        hit = self.index.get(norm)
        if hit is not None:
            return Resolution(hit, "exact")

        hit = self.index.get(filename)
        if hit is not None:
            return Resolution(hit, "filename")

        if base_dir:
            hit = self.index.get(join_base_dir(base_dir, norm))
            if hit is not None:
                return Resolution(hit, "base-dir")

        suffix = "/" + norm
        for blob in self.index.blobs:
            if self.index.normalized_path(blob).endswith(suffix):
                return Resolution(blob, "path-suffix")

        for blob in self.index.blobs:
            if blob.name.lower() == filename:
                return Resolution(blob, "basename")

        if file_extension(filename) in BINARY_BUFFER_EXTENSIONS:
            hit = self._binary_buffer_fallback(reference, expected_length)
            if hit is not None:
                return Resolution(hit, "binary-buffer-fallback")
        return None

    def _binary_buffer_fallback(self, reference: str, expected_length: int | None) -> Blob | None:
        pool = self.index.binary_buffers
        if not pool:
            return None
        if len(pool) == 1:
            logger.debug("Binary buffer fallback: %s -> %s", reference, pool[0].path)
            return pool[0]

        pick = pool[0]
        if expected_length is not None:
            pick = next((b for b in pool if b.size == expected_length), pool[0])
        matched = expected_length is not None and pick.size == expected_length
        logger.warning(
            "Guessing binary buffer for '%s' among %d candidates: %s%s",
            reference,
            len(pool),
            pick.path,
            " (byteLength match)" if matched else "",
        )
        return pick

    def find(self, reference: str, base_dir: str = "", expected_length: int | None = None) -> Blob | None:
        res = self.resolve_strategy(reference, base_dir, expected_length)
        if res is None:
            logger.debug("Unresolved reference: %s (base dir '%s')", reference, base_dir)
            return None
        logger.debug("Resolved %s -> %s via %s", reference, res.blob.path, res.strategy)
        return res.blob

    def require(self, reference: str, base_dir: str = "", expected_length: int | None = None) -> Blob:
        blob = self.find(reference, base_dir, expected_length)
        if blob is None:
            raise ReferenceNotFoundError(reference, base_dir)
        return blob
