"""
ASAR archive support.

Electron packs an application's resources into a single ``app.asar``
file. Members that have to be reachable through the ordinary filesystem
(native addons, shared libraries) are stored next to it in
``app.asar.unpacked/`` and only described in the header.

Layout of an archive::

    u32 4                  size pickle: payload length
    u32 header_len         size pickle: length of the header pickle
    u32 payload_len        header pickle
    i32 json_len
    json bytes, zero padded to a multiple of 4
    file data ...          offsets in the header are relative to here

Two backends implement extract/pack with the same semantics: the native
codec below, and the pinned ``asar`` executable from the toolchain cache.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import os
import posixpath
import shutil
import stat
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Iterator, Protocol, Sequence

from decant.errors import ArchiveError
from decant.process import OutputPolicy, ProcessRunner

if TYPE_CHECKING:
    from decant.toolchain import ToolchainCache


INTEGRITY_BLOCK_SIZE = 4 * 1024 * 1024
COPY_CHUNK_SIZE = 1024 * 1024


def unpacked_dir_for(archive: Path | str) -> Path:
    """Sibling directory holding the unpacked members of ``archive``."""
    return Path(f"{archive}.unpacked")


def matches_unpack(name: str, patterns: Sequence[str]) -> bool:
    """True if the member's basename matches any unpack pattern."""
    base = posixpath.basename(name)
    return any(fnmatch.fnmatchcase(base, p) for p in patterns)


def unpack_glob(patterns: Sequence[str]) -> str:
    """Render patterns as a single minimatch expression for the asar CLI."""
    if len(patterns) == 1:
        return patterns[0]
    return "{" + ",".join(patterns) + "}"


def _pad4(n: int) -> int:
    return (n + 3) & ~3


def encode_header(header: dict) -> bytes:
    """Serialize the header JSON into the two leading pickles."""
    data = json.dumps(header, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    payload = struct.pack("<i", len(data)) + data + b"\0" * (_pad4(len(data)) - len(data))
    header_pickle = struct.pack("<I", len(payload)) + payload
    return struct.pack("<II", 4, len(header_pickle)) + header_pickle


def decode_header(fp: BinaryIO) -> tuple[dict, int]:
    """Read the header from an open archive. Returns (header, data offset)."""
    raw = fp.read(8)
    if len(raw) != 8:
        raise ArchiveError("Truncated archive: missing size header")
    size_payload, header_len = struct.unpack("<II", raw)
    if size_payload != 4:
        raise ArchiveError("Not an asar archive: bad size pickle")

    buf = fp.read(header_len)
    if len(buf) != header_len or header_len < 8:
        raise ArchiveError("Truncated archive: header shorter than declared")

    (json_len,) = struct.unpack_from("<i", buf, 4)
    if json_len < 0 or 8 + json_len > header_len:
        raise ArchiveError("Corrupt archive header: bad string length")

    try:
        header = json.loads(buf[8:8 + json_len].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ArchiveError(f"Corrupt archive header: {e}")

    if not isinstance(header, dict) or "files" not in header:
        raise ArchiveError("Corrupt archive header: no root directory")

    return header, 8 + header_len


def file_integrity(path: Path) -> dict:
    """SHA256 of the whole file plus per-block hashes."""
    whole = hashlib.sha256()
    blocks = []
    with open(path, "rb") as f:
        while True:
            chunk = f.read(INTEGRITY_BLOCK_SIZE)
            if not chunk:
                break
            whole.update(chunk)
            blocks.append(hashlib.sha256(chunk).hexdigest())
    if not blocks:
        blocks.append(hashlib.sha256(b"").hexdigest())
    return {
        "algorithm": "SHA256",
        "hash": whole.hexdigest(),
        "blockSize": INTEGRITY_BLOCK_SIZE,
        "blocks": blocks,
    }


def _safe_member(name: str) -> str:
    """Reject member names that would land outside the destination."""
    if not name or name.startswith("/") or "\\" in name:
        raise ArchiveError(f"Unsafe member name: {name!r}")
    parts = name.split("/")
    if any(p in ("", ".", "..") for p in parts):
        raise ArchiveError(f"Unsafe member name: {name!r}")
    return name


@dataclass
class AsarEntry:
    """A single member described by the archive header."""
    path: str                    # POSIX path relative to the archive root
    kind: str                    # "file", "directory" or "link"
    size: int = 0
    offset: int | None = None    # None for unpacked files
    unpacked: bool = False
    executable: bool = False
    link: str | None = None      # Link target relative to the archive root


class AsarArchive:
    """
    Read access to an existing archive.

    Usage:
        archive = AsarArchive("Resources/app.asar")
        for entry in archive.entries():
            print(entry.path, entry.size)
        archive.extract("/tmp/app-extracted")
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        if not self.path.is_file():
            raise ArchiveError(f"Archive not found: {self.path}")
        with open(self.path, "rb") as f:
            self.header, self.data_offset = decode_header(f)

    @property
    def unpacked_dir(self) -> Path:
        return unpacked_dir_for(self.path)

    def entries(self) -> Iterator[AsarEntry]:
        """Walk the header depth-first, parents before children."""
        yield from self._walk(self.header, "")

    def _walk(self, node: dict, prefix: str) -> Iterator[AsarEntry]:
        files = node.get("files", {})
        if not isinstance(files, dict):
            raise ArchiveError(f"Corrupt archive header: 'files' of {prefix or '/'} is not an object")
        for name, child in files.items():
            rel = _safe_member(f"{prefix}/{name}" if prefix else name)
            if not isinstance(child, dict):
                raise ArchiveError(f"Corrupt archive header: {rel} is not an object")
            if "files" in child:
                yield AsarEntry(path=rel, kind="directory")
                yield from self._walk(child, rel)
            elif "link" in child:
                if not isinstance(child["link"], str):
                    raise ArchiveError(f"Corrupt archive header: bad link for {rel}")
                yield AsarEntry(path=rel, kind="link", link=child["link"])
            else:
                unpacked = bool(child.get("unpacked", False))
                try:
                    offset = None if unpacked else int(child.get("offset", 0))
                    size = int(child.get("size", 0))
                except (TypeError, ValueError):
                    raise ArchiveError(f"Corrupt archive header: bad offset or size for {rel}")
                if size < 0 or (offset is not None and offset < 0):
                    raise ArchiveError(f"Corrupt archive header: negative offset or size for {rel}")
                yield AsarEntry(
                    path=rel,
                    kind="file",
                    size=size,
                    offset=offset,
                    unpacked=unpacked,
                    executable=bool(child.get("executable", False)),
                )

    def find(self, member: str) -> AsarEntry:
        for entry in self.entries():
            if entry.path == member:
                return entry
        raise ArchiveError(f"Member not found in {self.path.name}: {member}")

    def read(self, member: str) -> bytes:
        """Return the contents of a file member."""
        entry = self.find(member)
        if entry.kind != "file":
            raise ArchiveError(f"Not a file: {member}")
        if entry.unpacked:
            src = self.unpacked_dir / entry.path
            if not src.is_file():
                raise ArchiveError(f"Unpacked member missing: {src}")
            return src.read_bytes()
        with open(self.path, "rb") as f:
            return self._read_inline(f, entry)

    def _read_inline(self, f: BinaryIO, entry: AsarEntry) -> bytes:
        assert entry.offset is not None
        f.seek(self.data_offset + entry.offset)
        data = f.read(entry.size)
        if len(data) != entry.size:
            raise ArchiveError(f"Truncated archive data for {entry.path}")
        return data

    def extract(self, dest: Path | str) -> Path:
        """
        Extract every member into ``dest``.

        Unpacked members are copied from the sibling ``.unpacked``
        directory. Links are created last so no file is written through one.
        """
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        links: list[AsarEntry] = []

        with open(self.path, "rb") as f:
            for entry in self.entries():
                target = dest / entry.path
                if entry.kind == "directory":
                    target.mkdir(parents=True, exist_ok=True)
                elif entry.kind == "link":
                    links.append(entry)
                elif entry.unpacked:
                    src = self.unpacked_dir / entry.path
                    if not src.is_file():
                        raise ArchiveError(f"Unpacked member missing: {src}")
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, target)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(self._read_inline(f, entry))
                    if entry.executable:
                        target.chmod(0o755)

        for entry in links:
            self._make_link(dest, entry)

        return dest

    def _make_link(self, dest: Path, entry: AsarEntry) -> None:
        assert entry.link is not None
        resolved = posixpath.normpath(entry.link)
        if resolved.startswith("../") or resolved == ".." or resolved.startswith("/"):
            raise ArchiveError(f"Link escapes archive root: {entry.path} -> {entry.link}")
        link_path = dest / entry.path
        link_path.parent.mkdir(parents=True, exist_ok=True)
        rel_target = os.path.relpath(dest / resolved, link_path.parent)
        if link_path.is_symlink() or link_path.exists():
            link_path.unlink()
        os.symlink(rel_target, link_path)


def pack(src: Path | str, dest: Path | str, unpack: Sequence[str] = ()) -> Path:
    """
    Pack directory ``src`` into archive ``dest``.

    Files whose basename matches one of ``unpack`` are copied to
    ``<dest>.unpacked/`` instead of being inlined. Member order is sorted
    so the same tree always produces the same archive.
    """
    src = Path(src)
    dest = Path(dest)
    if not src.is_dir():
        raise ArchiveError(f"Pack source is not a directory: {src}")

    root_real = src.resolve()
    unpacked_root = unpacked_dir_for(dest)
    if unpacked_root.exists():
        shutil.rmtree(unpacked_root)

    header: dict = {"files": {}}
    inline: list[Path] = []
    offset = 0

    def walk(directory: Path, node: dict, rel_prefix: str) -> None:
        nonlocal offset
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            rel = f"{rel_prefix}/{child.name}" if rel_prefix else child.name

            if child.is_symlink():
                target_real = child.resolve()
                try:
                    link_rel = target_real.relative_to(root_real)
                except ValueError:
                    raise ArchiveError(f"Link points outside {src}: {rel}")
                node["files"][child.name] = {"link": link_rel.as_posix()}
            elif child.is_dir():
                sub: dict = {"files": {}}
                node["files"][child.name] = sub
                walk(child, sub, rel)
            elif child.is_file():
                st = child.stat()
                entry: dict = {"size": st.st_size}
                if matches_unpack(rel, unpack):
                    entry["unpacked"] = True
                    target = unpacked_root / rel
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(child, target)
                else:
                    entry["offset"] = str(offset)
                    offset += st.st_size
                    inline.append(child)
                if st.st_mode & stat.S_IXUSR:
                    entry["executable"] = True
                entry["integrity"] = file_integrity(child)
                node["files"][child.name] = entry

    walk(src, header, "")

    dest.parent.mkdir(parents=True, exist_ok=True)
    with open(dest, "wb") as out:
        out.write(encode_header(header))
        for path in inline:
            with open(path, "rb") as f:
                shutil.copyfileobj(f, out, COPY_CHUNK_SIZE)

    return dest


class ArchiveBackend(Protocol):
    """Extract/pack operations the patcher needs."""

    def extract(self, archive: Path, dest: Path) -> None: ...

    def pack(self, src: Path, dest: Path, unpack: Sequence[str]) -> None: ...


class NativeAsarBackend:
    """In-process codec; no Node toolchain needed."""

    def extract(self, archive: Path, dest: Path) -> None:
        AsarArchive(archive).extract(dest)

    def pack(self, src: Path, dest: Path, unpack: Sequence[str]) -> None:
        pack(src, dest, unpack=unpack)


class AsarCliBackend:
    """The pinned ``asar`` executable from the toolchain cache."""

    def __init__(self, toolchain: ToolchainCache, runner: ProcessRunner | None = None):
        self.toolchain = toolchain
        self.runner = runner or toolchain.runner

    def extract(self, archive: Path, dest: Path) -> None:
        asar_bin = self.toolchain.ensure_tools().asar
        self.runner.run(
            [asar_bin, "extract", archive, dest],
            policy=OutputPolicy.CAPTURE,
        ).check(ArchiveError, f"Failed to extract {Path(archive).name}")

    def pack(self, src: Path, dest: Path, unpack: Sequence[str]) -> None:
        asar_bin = self.toolchain.ensure_tools().asar
        cmd: list[str | Path] = [asar_bin, "pack", src, dest]
        if unpack:
            cmd += ["--unpack", unpack_glob(unpack)]
        self.runner.run(cmd, policy=OutputPolicy.CAPTURE).check(
            ArchiveError, f"Failed to pack {Path(dest).name}"
        )
