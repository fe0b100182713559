#!/usr/bin/env python3
"""
Load glTF scenes straight out of a ZIP bundle.

The archive is extracted into blobs, the .gltf document's image and buffer
URIs are rewritten to session content handles, and a loader function serves
every resource the renderer asks for. References the archive cannot satisfy
fall back to a plain network fetch.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Union

import httpx

from asset_resolver import AssetResolver, PathIndex, ReferenceNotFoundError
from content_handles import ContentHandles, HandleError, MemoryHandles, TempFileHandles, safe_relpath
from zip_extract import (
    DEFAULT_MAX_ARCHIVE_BYTES,
    AssetBundleError,
    Blob,
    BlobKind,
    ExtractedArchive,
    extract_archive,
    extract_archive_file,
)


logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0
NETWORK_SCHEMES = ("http://", "https://")
REFERENCE_ARRAYS = ("images", "buffers")

Resource = Union[bytes, str]
Loader = Callable[[str], Resource]


class DocumentParseError(AssetBundleError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot parse glTF document {path}: {reason}")
        self.path = path


class ResourceLoadError(AssetBundleError):
    def __init__(self, reference: str, reason: str = ""):
        msg = f"Cannot load resource: {reference}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
        self.reference = reference


def fetch_url(url: str, timeout: float = DEFAULT_FETCH_TIMEOUT) -> bytes:
    response = httpx.get(url, timeout=timeout, follow_redirects=True)
    response.raise_for_status()
    return response.content


def document_base_dir(path: str) -> str:
    return path[: path.rfind("/") + 1] if "/" in path else ""


# -----------------------------
# Document rewriting
# -----------------------------
def rewrite_gltf_text(
    text: str,
    document_path: str,
    resolver: AssetResolver,
    handles: ContentHandles,
) -> str:
    try:
        gltf = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DocumentParseError(document_path, str(exc)) from exc
    if not isinstance(gltf, dict):
        raise DocumentParseError(document_path, f"top-level value is {type(gltf).__name__}, not an object")

    base_dir = document_base_dir(document_path)
    for array_name in REFERENCE_ARRAYS:
        entries = gltf.get(array_name)
        if not isinstance(entries, list):
            continue
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                continue
            uri = entry.get("uri")
            if not isinstance(uri, str) or not uri:
                continue
            if uri.startswith("data:") or handles.owns(uri):
                continue

            expected_length = None
            if array_name == "buffers" and isinstance(entry.get("byteLength"), int):
                expected_length = entry["byteLength"]

            blob = resolver.find(uri, base_dir, expected_length)
            if blob is None:
                logger.warning("%s[%d]: %s", array_name, i, ReferenceNotFoundError(uri, base_dir))
                continue
            entry["uri"] = handles.acquire(blob)
            logger.debug("%s[%d]: %s -> %s", array_name, i, uri, entry["uri"])

    return json.dumps(gltf, ensure_ascii=False)


def rewrite_gltf(blob: Blob, resolver: AssetResolver, handles: ContentHandles) -> str:
    try:
        text = blob.data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise DocumentParseError(blob.path, f"not UTF-8 text: {exc}") from exc
    return rewrite_gltf_text(text, blob.path, resolver, handles)


# -----------------------------
# Loader adapter
# -----------------------------
class ZipResourceLoader:
    """Serves references out of the archive; see `__call__` for the order."""

    def __init__(
        self,
        resolver: AssetResolver,
        handles: ContentHandles,
        document_base_dir: str = "",
        fetch_url: Callable[[str], bytes] = fetch_url,
    ):
        self.resolver = resolver
        self.handles = handles
        self.document_base_dir = document_base_dir
        self.fetch_url = fetch_url

    def _from_blob(self, blob: Blob) -> Resource:
        if blob.kind is BlobKind.SCENE_DOCUMENT and not blob.is_self_contained:
            return rewrite_gltf(blob, self.resolver, self.handles)
        if blob.is_text:
            return blob.data.decode("utf-8", errors="replace")
        return blob.data

    def _from_network(self, reference: str) -> bytes:
        if not reference.lower().startswith(NETWORK_SCHEMES):
            raise ResourceLoadError(reference, "not found in archive")
        logger.info("Not in archive, fetching from network: %s", reference)
        try:
            return self.fetch_url(reference)
        except (httpx.HTTPError, OSError) as exc:
            raise ResourceLoadError(reference, str(exc)) from exc

    def __call__(self, reference: str) -> Resource:
        if not reference:
            raise ResourceLoadError(reference, "empty reference")
        if self.handles.owns(reference):
            try:
                return self.handles.fetch(reference)
            except HandleError as exc:
                raise ResourceLoadError(reference, str(exc)) from exc

        blob = self.resolver.find(reference, self.document_base_dir)
        if blob is not None:
            try:
                return self._from_blob(blob)
            except HandleError as exc:
                raise ResourceLoadError(reference, str(exc)) from exc
        return self._from_network(reference)


class ResourceHook:
    """A process-wide "fetch this reference" slot, for renderers that cannot
    take a loader argument. Install loaders only through `installed()`."""

    def __init__(self, default: Loader):
        self._current: Loader = default

    @property
    def current(self) -> Loader:
        return self._current

    def load(self, reference: str) -> Resource:
        return self._current(reference)

    @contextmanager
    def installed(self, loader: Loader) -> Iterator[Loader]:
        previous = self._current
        self._current = loader
        try:
            yield loader
        finally:
            self._current = previous


resource_hook = ResourceHook(fetch_url)


# -----------------------------
# Session
# -----------------------------
class ArchiveSession:
    def __init__(
        self,
        archive: ExtractedArchive,
        handles: ContentHandles | None = None,
        fetch_url: Callable[[str], bytes] = fetch_url,
    ):
        self.archive = archive
        self.index = PathIndex.build(archive.blobs)
        self.resolver = AssetResolver(self.index)
        self.handles = handles if handles is not None else MemoryHandles()
        self.document = archive.primary_document
        self.loader = ZipResourceLoader(
            self.resolver,
            self.handles,
            document_base_dir=document_base_dir(self.document.path),
            fetch_url=fetch_url,
        )

    @classmethod
    def open(
        cls,
        source: Union[bytes, Path, str],
        max_archive_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
        handles: ContentHandles | None = None,
        fetch_url: Callable[[str], bytes] = fetch_url,
    ) -> "ArchiveSession":
        if isinstance(source, (bytes, bytearray, memoryview)):
            archive = extract_archive(bytes(source), max_archive_bytes=max_archive_bytes)
        else:
            archive = extract_archive_file(Path(source), max_archive_bytes=max_archive_bytes)
        return cls(archive, handles=handles, fetch_url=fetch_url)

    @property
    def entry_reference(self) -> str:
        return self.document.path

    def rewritten_document(self) -> str:
        if self.document.is_self_contained:
            raise DocumentParseError(self.document.path, "binary .glb has no external references to rewrite")
        return rewrite_gltf(self.document, self.resolver, self.handles)

    def load(self, reference: str) -> Resource:
        return self.loader(reference)

    def installed(self, hook: ResourceHook | None = None):
        return (hook or resource_hook).installed(self.loader)

    def close(self) -> None:
        self.handles.close()

    def __enter__(self) -> "ArchiveSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# -----------------------------
# CLI
# -----------------------------
def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def print_members(archive: ExtractedArchive) -> None:
    for i, blob in enumerate(archive.blobs, start=1):
        print(f"{i:4d}. {blob.kind.value:<20} {blob.size:10d}  {blob.path}")


def export_bundle(session: ArchiveSession, out_dir: Path) -> Path:
    out_dir.mkdir(parents=True, exist_ok=True)
    with TempFileHandles(out_dir, keep_files=True) as handles:
        for blob in session.archive.blobs:
            if blob is not session.document:
                handles.acquire(blob)
        if session.document.is_self_contained:
            handles.acquire(session.document)
            return handles.path_for(handles.handle_for(session.document))
        text = rewrite_gltf(session.document, session.resolver, handles)
        out_path = out_dir / safe_relpath(session.document.path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
        return out_path


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Inspect and load glTF scenes packed in ZIP archives")
    ap.add_argument("--zip", required=True, type=Path, help="Input ZIP archive")
    ap.add_argument(
        "--max-size-mb",
        type=float,
        default=DEFAULT_MAX_ARCHIVE_BYTES / (1024 * 1024),
        help="Reject archives larger than this (default: %(default)s)",
    )
    ap.add_argument("--list", action="store_true", help="List extracted members and exit")
    ap.add_argument("--resolve", metavar="REF", help="Resolve a reference against the archive")
    ap.add_argument(
        "--base-dir",
        default=None,
        help="Base dir for --resolve (default: folder of the scene document)",
    )
    ap.add_argument("--print-gltf", action="store_true", help="Print the rewritten scene document")
    ap.add_argument("--export", type=Path, default=None, help="Write members and rewritten document to this folder")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args(argv)
    if args.max_size_mb <= 0:
        ap.error("--max-size-mb must be > 0")
    return args


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)
    max_bytes = int(args.max_size_mb * 1024 * 1024)

    with ExitStack() as stack:
        try:
            session = stack.enter_context(ArchiveSession.open(args.zip, max_archive_bytes=max_bytes))
        except (AssetBundleError, FileNotFoundError) as exc:
            print(f"[ERROR] {exc}")
            return 1

        archive = session.archive
        print(f"[INFO] Source: {args.zip}")
        print(f"[INFO] Members: {len(archive)}  scene documents: {archive.scene_count}")
        print(f"[INFO] Scene document: {session.document.path}")

        if args.list:
            print_members(archive)
            return 0

        if args.resolve is not None:
            base_dir = args.base_dir if args.base_dir is not None else document_base_dir(session.document.path)
            res = session.resolver.resolve_strategy(args.resolve, base_dir)
            if res is None:
                print(f"[WARN] {ReferenceNotFoundError(args.resolve, base_dir)}")
                return 1
            print(f"[OK] {args.resolve} -> {res.blob.path} ({res.strategy}, {res.blob.size} bytes)")

        try:
            if args.print_gltf:
                print(session.rewritten_document())
            if args.export is not None:
                out_path = export_bundle(session, args.export)
                print(f"[OK] Exported to {out_path}")
        except AssetBundleError as exc:
            print(f"[ERROR] {exc}")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
