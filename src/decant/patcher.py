"""
Archive patcher - turns the macOS app.asar into a Linux one.

Extract, merge the unpacked sibling, strip macOS-only members, rebuild
native modules for the target Electron, repack.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from decant.asar import ArchiveBackend, unpacked_dir_for
from decant.config import PortConfig
from decant.errors import ArchiveError
from decant.rebuild import NativeModuleRebuilder, RebuildResult

logger = logging.getLogger(__name__)


def merge_unpacked(unpacked_dir: Path, tree: Path) -> int:
    """
    Copy members of an ``.unpacked`` sibling into ``tree``.

    Files already present in ``tree`` are kept. A missing ``unpacked_dir``
    is a no-op. Returns the number of files copied.
    """
    if not unpacked_dir.is_dir():
        logger.debug("No unpacked sibling at %s", unpacked_dir)
        return 0

    copied = 0
    for root, dirs, files in os.walk(unpacked_dir):
        rel_root = Path(root).relative_to(unpacked_dir)
        target_root = tree / rel_root
        if target_root.is_symlink() or (target_root.exists() and not target_root.is_dir()):
            logger.warning("Skipping unpacked directory %s: not a directory in the archive", rel_root)
            dirs[:] = []
            continue
        target_root.mkdir(parents=True, exist_ok=True)

        for name in files + [d for d in dirs if (Path(root) / d).is_symlink()]:
            src = Path(root) / name
            target = tree / rel_root / name
            if target.exists() or target.is_symlink():
                continue
            if src.is_symlink():
                os.symlink(os.readlink(src), target)
            else:
                shutil.copy2(src, target)
                copied += 1

    logger.info("Merged %d unpacked file(s) from %s", copied, unpacked_dir.name)
    return copied


def strip_foreign_members(
    tree: Path,
    dirs: Sequence[str] = (),
    file_patterns: Sequence[str] = (),
) -> list[Path]:
    """
    Remove platform-specific members from ``tree``.

    ``dirs`` are paths relative to the tree root; ``file_patterns`` match
    file basenames anywhere in the tree. Members that are already absent
    are skipped. Returns what was removed.
    """
    removed: list[Path] = []

    for rel in dirs:
        path = tree / rel
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        else:
            continue
        removed.append(path)

    matches: list[Path] = []
    for root, _dirs, files in os.walk(tree):
        for name in files:
            if any(fnmatch.fnmatchcase(name, p) for p in file_patterns):
                matches.append(Path(root) / name)

    for path in sorted(matches):
        path.unlink()
        removed.append(path)

    for path in removed:
        logger.debug("Removed %s", path)
    return removed


@dataclass
class PatchResult:
    """Output of a patch run."""
    archive: Path
    unpacked_dir: Path
    extracted_tree: Path
    rebuild: RebuildResult
    removed: list[Path] = field(default_factory=list)
    merged: int = 0


class ArchivePatcher:
    """
    Drives the whole archive transformation inside a scratch directory.

    Usage:
        with tempfile.TemporaryDirectory(prefix="decant-") as tmp:
            patcher = ArchivePatcher.from_config(config, backend, rebuilder, tmp)
            result = patcher.patch(app_dir / "Contents/Resources/app.asar")
    """

    def __init__(
        self,
        backend: ArchiveBackend,
        rebuilder: NativeModuleRebuilder,
        work_dir: Path | str,
        *,
        runtime_version: str,
        unpack_patterns: Sequence[str] = ("*.node", "*.so", "*.dylib"),
        foreign_dirs: Sequence[str] = (),
        foreign_files: Sequence[str] = (),
    ):
        self.backend = backend
        self.rebuilder = rebuilder
        self.work_dir = Path(work_dir)
        self.runtime_version = runtime_version
        self.unpack_patterns = list(unpack_patterns)
        self.foreign_dirs = list(foreign_dirs)
        self.foreign_files = list(foreign_files)

    @classmethod
    def from_config(
        cls,
        config: PortConfig,
        backend: ArchiveBackend,
        rebuilder: NativeModuleRebuilder,
        work_dir: Path | str,
    ) -> ArchivePatcher:
        return cls(
            backend,
            rebuilder,
            work_dir,
            runtime_version=config.electron_version,
            unpack_patterns=config.unpack_patterns,
            foreign_dirs=config.foreign_dirs,
            foreign_files=config.foreign_files,
        )

    @property
    def tree(self) -> Path:
        return self.work_dir / "app-extracted"

    def patch(self, archive_path: Path | str) -> PatchResult:
        """Produce a patched archive in ``work_dir`` and return its location."""
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise ArchiveError(f"{archive_path.name} not found in {archive_path.parent}")

        tree = self.tree
        if tree.exists():
            shutil.rmtree(tree)

        # 1. Extract
        logger.info("Extracting %s...", archive_path.name)
        self.backend.extract(archive_path, tree)
        if not tree.is_dir():
            raise ArchiveError(f"Extraction of {archive_path.name} produced no files")

        # 2. Merge unpacked members shipped beside the archive
        merged = merge_unpacked(unpacked_dir_for(archive_path), tree)

        # 3. Drop macOS-only members
        removed = strip_foreign_members(tree, self.foreign_dirs, self.foreign_files)
        if removed:
            logger.info("Removed %d macOS-only member(s)", len(removed))

        # 4. Native modules for the target runtime
        rebuild = self.rebuilder.rebuild(tree, self.runtime_version)

        # 5. Repack
        out = self.work_dir / archive_path.name
        logger.info("Repacking %s...", out.name)
        self.backend.pack(tree, out, self.unpack_patterns)
        if not out.is_file():
            raise ArchiveError(f"Packing produced no archive at {out}")

        logger.info("%s patched", out.name)
        return PatchResult(
            archive=out,
            unpacked_dir=unpacked_dir_for(out),
            extracted_tree=tree,
            rebuild=rebuild,
            removed=removed,
            merged=merged,
        )
