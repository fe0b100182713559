import io
import json
import struct
import zipfile
import zlib

import pytest
import zstandard


def make_zip(members, compression=zipfile.ZIP_DEFLATED) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, payload in members:
            if name.endswith("/"):
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, payload)
    return buf.getvalue()


def make_zstd_zip(members) -> bytes:
    """Hand-assembled ZIP whose members all use compression method 93."""
    local_parts = []
    central_parts = []
    offset = 0
    for name, payload in members:
        fname = name.encode("utf-8")
        comp = zstandard.ZstdCompressor().compress(payload)
        crc = zlib.crc32(payload) & 0xFFFFFFFF
        local = struct.pack(
            "<4s5H3L2H", b"PK\x03\x04", 20, 0, 93, 0, 0x21, crc, len(comp), len(payload), len(fname), 0
        ) + fname + comp
        central = struct.pack(
            "<4s4B4HL2L5H2L",
            b"PK\x01\x02", 20, 0, 20, 0, 0, 93, 0, 0x21,
            crc, len(comp), len(payload), len(fname), 0, 0, 0, 0, 0, offset,
        ) + fname
        local_parts.append(local)
        central_parts.append(central)
        offset += len(local)
    central_dir = b"".join(central_parts)
    eocd = struct.pack(
        "<4s4H2LH", b"PK\x05\x06", 0, 0, len(members), len(members), len(central_dir), offset, 0
    )
    return b"".join(local_parts) + central_dir + eocd


def gltf_json(images=(), buffers=(), **extra) -> bytes:
    doc = {"asset": {"version": "2.0"}}
    if images:
        doc["images"] = [{"uri": u} if isinstance(u, str) else u for u in images]
    if buffers:
        doc["buffers"] = [{"uri": u, "byteLength": 4} if isinstance(u, str) else u for u in buffers]
    doc.update(extra)
    return json.dumps(doc).encode("utf-8")


@pytest.fixture
def sample_members():
    return [
        ("scene/", b""),
        ("scene/model.gltf", gltf_json(images=["tex.png"], buffers=["buffer.bin"])),
        ("scene/buffer.bin", b"\x00\x01\x02\x03"),
        ("textures/tex.png", b"\x89PNG\r\n\x1a\nfake"),
    ]


@pytest.fixture
def sample_zip(sample_members):
    return make_zip(sample_members)
