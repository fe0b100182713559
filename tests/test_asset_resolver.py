import logging

import pytest

from asset_resolver import (
    AssetResolver,
    PathIndex,
    ReferenceNotFoundError,
    join_base_dir,
    normalize_reference,
)
from zip_extract import Blob, extract_archive


def blobs_from(*paths):
    return [Blob.from_member(p, f"payload:{p}".encode()) for p in paths]


def resolver_for(*paths):
    blobs = blobs_from(*paths)
    return AssetResolver(PathIndex.build(blobs)), blobs


def test_index_keys_per_blob():
    index = PathIndex.build(blobs_from("Bundle/Models/Duck.gltf"))
    assert set(index.keys()) == {"duck.gltf", "bundle/models/duck.gltf", "models/duck.gltf"}


def test_index_first_write_wins():
    first, second = blobs_from("a/tex.png", "b/tex.png")
    index = PathIndex.build([first, second])
    assert index.get("tex.png") is first
    assert index.get("b/tex.png") is second
    assert "tex.png" not in index.keys_for(second)


def test_every_index_key_resolves_back_to_its_blob(sample_zip):
    archive = extract_archive(sample_zip)
    index = PathIndex.build(archive.blobs)
    resolver = AssetResolver(index)
    for blob in archive.blobs:
        keys = index.keys_for(blob)
        assert keys
        for key in keys:
            assert resolver.find(key) is blob


def test_binary_buffer_pool_keeps_archive_order():
    blobs = blobs_from("z.bin", "model.gltf", "a.bin", "tex.png")
    index = PathIndex.build(blobs)
    assert index.binary_buffers == [blobs[0], blobs[2]]


@pytest.mark.parametrize(
    "reference",
    [
        "Models/Duck/Duck0.bin",
        "models/duck/duck0.BIN",
        "./models/duck/Duck0.bin",
        "/models/duck/Duck0.bin",
        "models\\duck\\Duck0.bin",
        "models/duck/Duck0.bin?v=3",
        "models/duck/Duck%30.bin",
    ],
)
def test_full_path_resolves_regardless_of_case_and_prefix(reference):
    resolver, blobs = resolver_for("other/Duck0.png", "models/duck/Duck0.bin", "x/y.bin")
    res = resolver.resolve_strategy(reference)
    assert res is not None
    assert res.blob is blobs[1]
    assert res.strategy == "exact"


def test_filename_lookup_when_directory_is_wrong():
    resolver, blobs = resolver_for("scene/model.gltf", "textures/tex.png")
    res = resolver.resolve_strategy("../../somewhere/else/TEX.png", "scene/")
    assert res.blob is blobs[1]
    assert res.strategy == "filename"


def test_document_relative_buffer_and_foreign_texture():
    resolver, blobs = resolver_for("scene/model.gltf", "scene/buffer.bin", "textures/tex.png")
    assert resolver.find("buffer.bin", "scene/") is blobs[1]
    assert resolver.find("tex.png", "scene/") is blobs[2]


def test_single_binary_buffer_fallback():
    resolver, blobs = resolver_for("models/duck/Duck.gltf", "models/duck/buffer0.bin")
    res = resolver.resolve_strategy("scene.bin")
    assert res.blob is blobs[1]
    assert res.strategy == "binary-buffer-fallback"


def test_fallback_only_applies_to_bin_references():
    resolver, _ = resolver_for("model.gltf", "buffer0.bin")
    assert resolver.find("missing.png") is None
    assert resolver.find("scene.bin.png") is None


def test_fallback_without_buffers_is_not_found():
    resolver, _ = resolver_for("model.gltf", "tex.png")
    assert resolver.find("scene.bin") is None


def test_multi_buffer_fallback_uses_byte_length(caplog):
    blobs = [
        Blob.from_member("model.gltf", b"{}"),
        Blob.from_member("part0.bin", b"\x00" * 8),
        Blob.from_member("part1.bin", b"\x00" * 16),
    ]
    resolver = AssetResolver(PathIndex.build(blobs))
    with caplog.at_level(logging.WARNING, logger="asset_resolver"):
        assert resolver.find("scene.bin", expected_length=16) is blobs[2]
        assert resolver.find("scene.bin", expected_length=99) is blobs[1]
        assert resolver.find("scene.bin") is blobs[1]
    assert "Guessing binary buffer" in caplog.text
    assert "byteLength match" in caplog.text


def test_require_raises_with_reference():
    resolver, _ = resolver_for("model.gltf")
    with pytest.raises(ReferenceNotFoundError) as info:
        resolver.require("textures/missing.png", "scene/")
    assert info.value.reference == "textures/missing.png"
    assert info.value.base_dir == "scene/"


def test_empty_reference_is_not_found():
    resolver, _ = resolver_for("model.gltf")
    assert resolver.find("") is None
    assert resolver.find("?x=1") is None


def test_normalize_reference():
    assert normalize_reference("./Textures\\My%20Tex.PNG?raw=1") == "textures/my tex.png"
    assert normalize_reference("tex#1.png") == "tex#1.png"
    assert normalize_reference("//a//b") == "a/b"


def test_join_base_dir_collapses_parent_segments():
    assert join_base_dir("scene/", "buffer.bin") == "scene/buffer.bin"
    assert join_base_dir("scene/sub/", "../textures/tex.png") == "scene/textures/tex.png"
    assert join_base_dir("", "tex.png") == "tex.png"
    assert join_base_dir("Scene\\", "a.bin") == "scene/a.bin"


def test_hash_in_member_name_resolves():
    resolver, blobs = resolver_for("scene/model.gltf", "textures/tex#1.png")
    assert resolver.find("textures/tex#1.png") is blobs[1]
    assert resolver.find("tex%231.png", "scene/") is blobs[1]
