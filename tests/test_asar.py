"""
Tests for the asar codec and the archive backends.
"""

from __future__ import annotations

import io
import json
import os
import struct
from pathlib import Path

import pytest

from conftest import FakeRunner
from decant.asar import (
    AsarArchive,
    AsarCliBackend,
    NativeAsarBackend,
    decode_header,
    encode_header,
    matches_unpack,
    pack,
    unpack_glob,
    unpacked_dir_for,
)
from decant.errors import ArchiveError
from decant.toolchain import ToolchainCache

UNPACK = ["*.node", "*.so", "*.dylib"]


def _tree(root: Path) -> Path:
    (root / "lib" / "nested").mkdir(parents=True)
    (root / "main.js").write_text("console.log('hi')\n")
    (root / "lib" / "util.js").write_text("module.exports = 1\n")
    (root / "lib" / "nested" / "data.bin").write_bytes(bytes(range(256)) * 10)
    (root / "lib" / "empty.txt").write_bytes(b"")
    (root / "lib" / "addon.node").write_bytes(b"\x7fELF native")
    (root / "assets").mkdir()
    return root


def _write_raw(path: Path, header: dict, data: bytes = b"") -> Path:
    path.write_bytes(encode_header(header) + data)
    return path


class TestHeader:
    def test_layout(self):
        raw = encode_header({"files": {}})
        size_payload, header_len = struct.unpack_from("<II", raw, 0)
        assert size_payload == 4
        assert len(raw) == 8 + header_len
        json_len = struct.unpack_from("<i", raw, 12)[0]
        assert raw[16:16 + json_len] == b'{"files":{}}'
        assert header_len % 4 == 0

    def test_decode_matches_encode(self):
        header = {"files": {"a.txt": {"size": 3, "offset": "0"}, "é": {"files": {}}}}
        raw = encode_header(header)
        decoded, offset = decode_header(io.BytesIO(raw + b"abc"))
        assert decoded == header
        assert offset == len(raw)

    def test_truncated(self):
        with pytest.raises(ArchiveError, match="Truncated"):
            decode_header(io.BytesIO(b"\x04\x00"))

    def test_not_asar(self):
        with pytest.raises(ArchiveError, match="Not an asar"):
            decode_header(io.BytesIO(struct.pack("<II", 9, 8) + b"\0" * 8))

    def test_bad_json(self):
        payload = struct.pack("<i", 4) + b"{{{{"
        raw = struct.pack("<II", 4, len(payload) + 4) + struct.pack("<I", len(payload)) + payload
        with pytest.raises(ArchiveError, match="Corrupt"):
            decode_header(io.BytesIO(raw))


class TestUnpackRule:
    @pytest.mark.parametrize("name", ["a.node", "lib/x/libfoo.so", "Frameworks/x.dylib"])
    def test_matches(self, name):
        assert matches_unpack(name, UNPACK)

    @pytest.mark.parametrize("name", ["a.js", "node.txt", "so/readme.md", "libfoo.so.1"])
    def test_no_match(self, name):
        assert not matches_unpack(name, UNPACK)

    def test_glob_rendering(self):
        assert unpack_glob(UNPACK) == "{*.node,*.so,*.dylib}"
        assert unpack_glob(["*.node"]) == "*.node"


class TestPackExtract:
    def test_round_trip(self, tmp_path: Path):
        src = _tree(tmp_path / "src")
        archive = pack(src, tmp_path / "out" / "app.asar", unpack=UNPACK)
        dest = AsarArchive(archive).extract(tmp_path / "dest")

        for rel in ["main.js", "lib/util.js", "lib/nested/data.bin", "lib/empty.txt", "lib/addon.node"]:
            assert (dest / rel).read_bytes() == (src / rel).read_bytes()
        assert (dest / "assets").is_dir()

    def test_binary_library_stored_as_sibling(self, tmp_path: Path):
        src = _tree(tmp_path / "src")
        archive = pack(src, tmp_path / "app.asar", unpack=UNPACK)

        sibling = unpacked_dir_for(archive) / "lib" / "addon.node"
        assert sibling.read_bytes() == b"\x7fELF native"
        assert b"\x7fELF native" not in archive.read_bytes()

        entry = AsarArchive(archive).find("lib/addon.node")
        assert entry.unpacked
        assert entry.offset is None
        assert not (unpacked_dir_for(archive) / "main.js").exists()

    def test_no_unpacked_dir_without_matches(self, tmp_path: Path):
        src = tmp_path / "src"
        src.mkdir()
        (src / "a.js").write_text("a")
        archive = pack(src, tmp_path / "app.asar", unpack=UNPACK)
        assert not unpacked_dir_for(archive).exists()

    def test_deterministic(self, tmp_path: Path):
        src = _tree(tmp_path / "src")
        first = pack(src, tmp_path / "a.asar", unpack=UNPACK).read_bytes()
        second = pack(src, tmp_path / "b.asar", unpack=UNPACK).read_bytes()
        assert first == second

    def test_read_member(self, tmp_path: Path):
        src = _tree(tmp_path / "src")
        archive = AsarArchive(pack(src, tmp_path / "app.asar", unpack=UNPACK))
        assert archive.read("lib/util.js") == b"module.exports = 1\n"
        assert archive.read("lib/addon.node") == b"\x7fELF native"
        with pytest.raises(ArchiveError, match="not found"):
            archive.read("missing.js")

    def test_integrity_recorded(self, tmp_path: Path):
        src = _tree(tmp_path / "src")
        archive = AsarArchive(pack(src, tmp_path / "app.asar", unpack=UNPACK))
        node = archive.header["files"]["main.js"]
        assert node["integrity"]["algorithm"] == "SHA256"
        assert len(node["integrity"]["blocks"]) == 1
        assert isinstance(node["offset"], str)

    def test_executable_bit(self, tmp_path: Path):
        src = tmp_path / "src"
        src.mkdir()
        tool = src / "run.sh"
        tool.write_text("#!/bin/sh\n")
        tool.chmod(0o755)
        archive = pack(src, tmp_path / "app.asar")
        assert AsarArchive(archive).find("run.sh").executable
        dest = AsarArchive(archive).extract(tmp_path / "dest")
        assert os.access(dest / "run.sh", os.X_OK)

    def test_symlinks(self, tmp_path: Path):
        src = tmp_path / "src"
        (src / "real").mkdir(parents=True)
        (src / "real" / "f.txt").write_text("x")
        os.symlink("real", src / "alias")
        archive = pack(src, tmp_path / "app.asar")
        assert AsarArchive(archive).find("alias").link == "real"

        dest = AsarArchive(archive).extract(tmp_path / "dest")
        assert (dest / "alias").is_symlink()
        assert (dest / "alias" / "f.txt").read_text() == "x"

    def test_symlink_outside_rejected(self, tmp_path: Path):
        src = tmp_path / "src"
        src.mkdir()
        (tmp_path / "outside.txt").write_text("x")
        os.symlink(tmp_path / "outside.txt", src / "leak")
        with pytest.raises(ArchiveError, match="outside"):
            pack(src, tmp_path / "app.asar")

    def test_stale_unpacked_members_removed(self, tmp_path: Path):
        src = _tree(tmp_path / "src")
        stale = unpacked_dir_for(tmp_path / "app.asar") / "old.node"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"old")
        pack(src, tmp_path / "app.asar", unpack=UNPACK)
        assert not stale.exists()

    def test_pack_source_must_exist(self, tmp_path: Path):
        with pytest.raises(ArchiveError):
            pack(tmp_path / "nope", tmp_path / "app.asar")


class TestExtractSafety:
    def test_traversal_rejected(self, tmp_path: Path):
        archive = _write_raw(tmp_path / "evil.asar", {"files": {"..": {"files": {"x": {"size": 1, "offset": "0"}}}}}, b"x")
        with pytest.raises(ArchiveError, match="Unsafe"):
            AsarArchive(archive).extract(tmp_path / "dest")

    def test_link_escape_rejected(self, tmp_path: Path):
        archive = _write_raw(tmp_path / "evil.asar", {"files": {"l": {"link": "../../etc/passwd"}}})
        with pytest.raises(ArchiveError, match="escapes"):
            AsarArchive(archive).extract(tmp_path / "dest")

    def test_missing_unpacked_member(self, tmp_path: Path):
        archive = _write_raw(tmp_path / "app.asar", {"files": {"a.node": {"size": 3, "unpacked": True}}})
        with pytest.raises(ArchiveError, match="Unpacked member missing"):
            AsarArchive(archive).extract(tmp_path / "dest")

    def test_truncated_data(self, tmp_path: Path):
        archive = _write_raw(tmp_path / "app.asar", {"files": {"a.txt": {"size": 10, "offset": "0"}}}, b"abc")
        with pytest.raises(ArchiveError, match="Truncated"):
            AsarArchive(archive).extract(tmp_path / "dest")

    def test_missing_archive(self, tmp_path: Path):
        with pytest.raises(ArchiveError, match="not found"):
            AsarArchive(tmp_path / "missing.asar")


class TestCorruptHeader:
    @pytest.mark.parametrize("header", [
        {"files": {"a": 5}},
        {"files": {"a": "x"}},
        {"files": {"d": {"files": []}}},
        {"files": {"l": {"link": 7}}},
    ])
    def test_malformed_node(self, tmp_path: Path, header: dict):
        archive = _write_raw(tmp_path / "bad.asar", header)
        with pytest.raises(ArchiveError, match="Corrupt archive header"):
            AsarArchive(archive).extract(tmp_path / "dest")

    @pytest.mark.parametrize("node", [
        {"size": 1, "offset": "x"},
        {"size": "big", "offset": "0"},
        {"size": None, "offset": "0"},
        {"size": -1, "offset": "0"},
    ])
    def test_bad_offset_or_size(self, tmp_path: Path, node: dict):
        archive = _write_raw(tmp_path / "bad.asar", {"files": {"a": node}}, b"x")
        with pytest.raises(ArchiveError, match="Corrupt archive header"):
            list(AsarArchive(archive).entries())


class TestBackends:
    def test_native_backend(self, tmp_path: Path):
        src = _tree(tmp_path / "src")
        backend = NativeAsarBackend()
        backend.pack(src, tmp_path / "app.asar", UNPACK)
        backend.extract(tmp_path / "app.asar", tmp_path / "dest")
        assert (tmp_path / "dest" / "lib" / "addon.node").read_bytes() == b"\x7fELF native"

    def test_cli_backend_commands(self, config, tmp_path: Path, fake_runner: FakeRunner):
        toolchain = ToolchainCache.from_config(config, fake_runner)
        backend = AsarCliBackend(toolchain)
        backend.extract(tmp_path / "app.asar", tmp_path / "tree")
        backend.pack(tmp_path / "tree", tmp_path / "out.asar", UNPACK)

        asar_calls = fake_runner.calls_for("asar")
        assert [c["args"][1] for c in asar_calls] == ["extract", "pack"]
        assert asar_calls[1]["args"][-2:] == ["--unpack", "{*.node,*.so,*.dylib}"]
        assert len(fake_runner.npm_installs()) == 1

    def test_cli_backend_failure(self, config, tmp_path: Path):
        class FailingAsar(FakeRunner):
            def run(self, cmd, **kwargs):
                result = super().run(cmd, **kwargs)
                if Path(str(cmd[0])).name == "asar":
                    result.returncode = 1
                    result.stderr = "Error: invalid archive"
                return result

        runner = FailingAsar()
        backend = AsarCliBackend(ToolchainCache.from_config(config, runner))
        with pytest.raises(ArchiveError, match="invalid archive"):
            backend.extract(tmp_path / "app.asar", tmp_path / "tree")
