#!/usr/bin/env python3
"""
ZIP -> blob extractor for glTF bundles.

Reads a ZIP archive held in memory, decodes every file member into an
immutable Blob and classifies it by extension. Members compressed with
Zstandard (ZIP method 93) are decoded with `zstandard` directly from the
local file header, since `zipfile` only handles them on recent interpreters.
"""
from __future__ import annotations

import io
import logging
import lzma
import re
import struct
import zipfile
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Sequence

import zstandard


logger = logging.getLogger(__name__)

DEFAULT_MAX_ARCHIVE_BYTES = 256 * 1024 * 1024

SCENE_DOCUMENT_EXTENSIONS = frozenset({"gltf", "glb"})
SELF_CONTAINED_EXTENSIONS = frozenset({"glb"})
BINARY_BUFFER_EXTENSIONS = frozenset({"bin"})
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "webp", "gif", "bmp", "ktx2"})
TEXT_EXTENSIONS = frozenset({"gltf", "json", "txt", "xml", "svg", "mtl", "obj", "csv", "md"})

ZIP_ZSTANDARD = 93
ZIP_NATIVE_METHODS = (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA)
LOCAL_HEADER_FMT = "<4s5H3L2H"
LOCAL_HEADER_SIZE = struct.calcsize(LOCAL_HEADER_FMT)
LOCAL_HEADER_MAGIC = b"PK\x03\x04"

DUP_SLASH_RX = re.compile(r"/+")


class AssetBundleError(Exception):
    """Base class for every error raised while loading a glTF bundle."""


class OversizeArchiveError(AssetBundleError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Archive is {size} bytes, limit is {limit} bytes")
        self.size = size
        self.limit = limit


class ArchiveDecodeError(AssetBundleError):
    pass


class MemberDecodeError(AssetBundleError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot decode archive member {path}: {reason}")
        self.path = path


class NoSceneDocumentError(AssetBundleError):
    def __init__(self, member_count: int):
        super().__init__(f"No .gltf or .glb file found among {member_count} archive members")
        self.member_count = member_count


class BlobKind(str, Enum):
    SCENE_DOCUMENT = "scene-document"
    SCENE_BINARY_BUFFER = "scene-binary-buffer"
    IMAGE = "image"
    OPAQUE = "opaque"


def normalize_asset_path(path: str) -> str:
    path = path.replace("\\", "/")
    path = DUP_SLASH_RX.sub("/", path)
    while path.startswith(("./", "/")):
        path = path[1:] if path.startswith("/") else path[2:]
    return path.strip("/")


def file_extension(name: str) -> str:
    _, dot, ext = name.rpartition(".")
    return ext.lower() if dot else ""


def classify_member(path: str) -> BlobKind:
    ext = file_extension(path)
    if ext in SCENE_DOCUMENT_EXTENSIONS:
        return BlobKind.SCENE_DOCUMENT
    if ext in BINARY_BUFFER_EXTENSIONS:
        return BlobKind.SCENE_BINARY_BUFFER
    if ext in IMAGE_EXTENSIONS:
        return BlobKind.IMAGE
    return BlobKind.OPAQUE


# eq=False: blobs hash by identity so equal payloads still get distinct handles.
@dataclass(frozen=True, eq=False)
class Blob:
    name: str
    path: str
    kind: BlobKind
    data: bytes = field(repr=False)

    @classmethod
    def from_member(cls, member_name: str, data: bytes) -> "Blob":
        path = normalize_asset_path(member_name)
        return cls(name=path.rsplit("/", 1)[-1], path=path, kind=classify_member(path), data=data)

    @property
    def extension(self) -> str:
        return file_extension(self.name)

    @property
    def is_self_contained(self) -> bool:
        return self.extension in SELF_CONTAINED_EXTENSIONS

    @property
    def is_text(self) -> bool:
        return self.extension in TEXT_EXTENSIONS

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ExtractedArchive:
    blobs: List[Blob]
    scene_count: int

    @property
    def scene_documents(self) -> List[Blob]:
        return [b for b in self.blobs if b.kind is BlobKind.SCENE_DOCUMENT]

    @property
    def primary_document(self) -> Blob:
        return self.scene_documents[0]

    def __len__(self) -> int:
        return len(self.blobs)


def _read_zstd_member(archive_bytes: bytes, info: zipfile.ZipInfo) -> bytes:
    off = info.header_offset
    if off < 0 or off + LOCAL_HEADER_SIZE > len(archive_bytes):
        raise ValueError("local header points outside archive bounds")
    magic, *_, name_len, extra_len = struct.unpack_from(LOCAL_HEADER_FMT, archive_bytes, off)
    if magic != LOCAL_HEADER_MAGIC:
        raise ValueError(f"bad local header magic {magic!r}")
    start = off + LOCAL_HEADER_SIZE + name_len + extra_len
    end = start + info.compress_size
    if end > len(archive_bytes):
        raise ValueError("compressed data runs past end of archive")
    comp = archive_bytes[start:end]
    raw = zstandard.ZstdDecompressor().decompress(comp, max_output_size=max(info.file_size, 1))
    if len(raw) != info.file_size:
        raise ValueError(f"expected {info.file_size} bytes, got {len(raw)}")
    if zlib.crc32(raw) & 0xFFFFFFFF != info.CRC:
        raise ValueError("CRC mismatch")
    return raw


def decode_member(zf: zipfile.ZipFile, archive_bytes: bytes, info: zipfile.ZipInfo) -> Blob:
    """Decode one file member. Any failure is reported as MemberDecodeError."""
    if info.flag_bits & 0x1:
        raise MemberDecodeError(info.filename, "member is encrypted")
    method = info.compress_type
    try:
        if method == ZIP_ZSTANDARD:
            data = _read_zstd_member(archive_bytes, info)
        elif method in ZIP_NATIVE_METHODS:
            data = zf.read(info)
        else:
            raise MemberDecodeError(info.filename, f"unsupported compression method {method}")
    except MemberDecodeError:
        raise
    except (
        zipfile.BadZipFile,
        zlib.error,
        lzma.LZMAError,
        zstandard.ZstdError,
        EOFError,
        OSError,
        ValueError,
        NotImplementedError,
    ) as exc:
        raise MemberDecodeError(info.filename, str(exc)) from exc
    return Blob.from_member(info.filename, data)


def _decode_or_drop(zf: zipfile.ZipFile, archive_bytes: bytes, info: zipfile.ZipInfo) -> Blob | None:
    try:
        return decode_member(zf, archive_bytes, info)
    except MemberDecodeError as exc:
        logger.warning("%s (member dropped)", exc)
        return None


def extract_archive(
    data: bytes,
    max_archive_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
    max_workers: int | None = None,
) -> ExtractedArchive:
    size = len(data)
    if size > max_archive_bytes:
        raise OversizeArchiveError(size, max_archive_bytes)

    archive_bytes = bytes(data)
    try:
        zf = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, ValueError) as exc:
        raise ArchiveDecodeError(f"Cannot open ZIP archive: {exc}") from exc

    with zf:
        members: Sequence[zipfile.ZipInfo] = [i for i in zf.infolist() if not i.is_dir()]
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="zip-member") as pool:
            futures = [pool.submit(_decode_or_drop, zf, archive_bytes, info) for info in members]
            decoded = [f.result() for f in futures]

    blobs = [b for b in decoded if b is not None]
    scene_count = sum(1 for b in blobs if b.kind is BlobKind.SCENE_DOCUMENT)
    logger.debug(
        "Extracted %d of %d members (%d scene documents)", len(blobs), len(members), scene_count
    )
    if scene_count == 0:
        raise NoSceneDocumentError(len(blobs))
    return ExtractedArchive(blobs=blobs, scene_count=scene_count)


def extract_archive_file(
    path: Path,
    max_archive_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
    max_workers: int | None = None,
) -> ExtractedArchive:
    path = Path(path)
    if not path.exists() or not path.is_file():
        raise FileNotFoundError(f"Archive not found: {path}")
    size = path.stat().st_size
    if size > max_archive_bytes:
        raise OversizeArchiveError(size, max_archive_bytes)
    return extract_archive(path.read_bytes(), max_archive_bytes=max_archive_bytes, max_workers=max_workers)
