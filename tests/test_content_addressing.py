"""
Tests for bundle infohashes.
"""

import hashlib

import pytest
from fastbencode import bencode

from btpk.core.content_addressing import (
    MAX_PIECE_LENGTH,
    MIN_PIECE_LENGTH,
    ContentAddressingEngine,
    DescriptorOptions,
    list_files,
    piece_length_for,
)
from btpk.core.errors import EmptyContent


def write_tree(root, files):
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return root


@pytest.fixture
def engine():
    return ContentAddressingEngine()


@pytest.fixture
def site():
    return {
        "index.html": b"<h1>hello</h1>",
        "css/site.css": b"body { color: red }",
        "img/logo.png": bytes(range(256)) * 10,
    }


class TestInfohash:
    """Infohash determinism and sensitivity."""

    def test_matches_bittorrent_info_dict(self, tmp_path, engine):
        data = b"hello world"
        write_tree(tmp_path, {"a.txt": data})

        info = {
            b"files": [{b"length": len(data), b"path": [b"a.txt"]}],
            b"name": b"bundle",
            b"piece length": MIN_PIECE_LENGTH,
            b"pieces": hashlib.sha1(data).digest(),
        }
        expected = hashlib.sha1(bencode(info)).hexdigest()

        assert engine.describe_directory(tmp_path).infohash == expected

    def test_same_layout_same_hash(self, tmp_path, engine, site):
        first = write_tree(tmp_path / "one", site)
        second = write_tree(tmp_path / "two", site)

        assert engine.describe_directory(first).infohash == engine.describe_directory(second).infohash
        assert engine.describe_directory(first).infohash == engine.describe_directory(first).infohash

    def test_adding_a_file_changes_hash(self, tmp_path, engine, site):
        folder = write_tree(tmp_path, site)
        before = engine.describe_directory(folder).infohash

        (folder / "extra.txt").write_bytes(b"x")

        assert engine.describe_directory(folder).infohash != before

    def test_removing_a_file_changes_hash(self, tmp_path, engine, site):
        folder = write_tree(tmp_path, site)
        before = engine.describe_directory(folder).infohash

        (folder / "css" / "site.css").unlink()

        assert engine.describe_directory(folder).infohash != before

    def test_changing_one_byte_changes_hash(self, tmp_path, engine, site):
        folder = write_tree(tmp_path, site)
        before = engine.describe_directory(folder).infohash

        (folder / "index.html").write_bytes(b"<h1>hellO</h1>")

        assert engine.describe_directory(folder).infohash != before

    def test_descriptor_options_are_part_of_the_hash(self, tmp_path, engine, site):
        folder = write_tree(tmp_path, site)
        default = engine.describe_directory(folder).infohash

        assert engine.describe_directory(folder, DescriptorOptions(name="site")).infohash != default
        assert engine.describe_directory(folder, DescriptorOptions(private=True)).infohash != default

    def test_piece_length_override(self, tmp_path, engine, site):
        folder = write_tree(tmp_path, site)
        described = engine.describe_directory(folder, DescriptorOptions(piece_length=32 * 1024))

        assert described.piece_length == 32 * 1024

    def test_multi_piece_bundle(self, tmp_path, engine):
        folder = write_tree(tmp_path, {"big.bin": b"\x01" * (MIN_PIECE_LENGTH * 3 + 5)})
        described = engine.describe_directory(folder)

        assert described.total_length == MIN_PIECE_LENGTH * 3 + 5
        assert described.piece_length == MIN_PIECE_LENGTH

    def test_empty_directory_rejected(self, tmp_path, engine):
        with pytest.raises(EmptyContent):
            engine.describe_directory(tmp_path)

    def test_file_list_sorted_by_path(self, tmp_path, engine, site):
        folder = write_tree(tmp_path, site)
        described = engine.describe_directory(folder)

        assert [rel for rel, _ in described.files] == ["css/site.css", "img/logo.png", "index.html"]
        assert [p.name for p in list_files(folder)] == ["site.css", "logo.png", "index.html"]


class TestPieceLength:
    def test_small_bundles_use_minimum(self):
        assert piece_length_for(0) == MIN_PIECE_LENGTH
        assert piece_length_for(MIN_PIECE_LENGTH * 1024) == MIN_PIECE_LENGTH

    def test_doubles_past_target_piece_count(self):
        assert piece_length_for(MIN_PIECE_LENGTH * 1024 + 1) == MIN_PIECE_LENGTH * 2

    def test_capped(self):
        assert piece_length_for(10 ** 15) == MAX_PIECE_LENGTH


class TestDescriptorOptions:
    def test_dict_round_trip(self):
        options = DescriptorOptions(name="site", piece_length=65536, private=True)
        assert DescriptorOptions.from_dict(options.to_dict()) == options

    def test_defaults_from_empty(self):
        assert DescriptorOptions.from_dict(None) == DescriptorOptions()
        assert DescriptorOptions.from_dict({}) == DescriptorOptions()
