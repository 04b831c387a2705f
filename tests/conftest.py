"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from decant.config import NativeModule, PortConfig
from decant.process import OutputPolicy, ProcessResult, ProcessRunner


class FakeRunner(ProcessRunner):
    """
    Stands in for npm and electron-rebuild.

    ``npm install`` creates the packages it is asked for under
    ``<cwd>/node_modules``; the toolchain packages also get their bin
    entries. ``electron-rebuild`` stamps each module with the ABI it was
    built for.
    """

    def __init__(
        self,
        *,
        fail_with_override: bool = False,
        fail_install: bool = False,
        fail_rebuild: bool = False,
        create_bins: bool = True,
    ):
        super().__init__()
        self.fail_with_override = fail_with_override
        self.fail_install = fail_install
        self.fail_rebuild = fail_rebuild
        self.create_bins = create_bins
        self.calls: list[dict] = []

    def run(self, cmd, *, cwd=None, env=None, policy=OutputPolicy.CAPTURE):
        args = [str(c) for c in cmd]
        cwd = Path(cwd) if cwd else Path.cwd()
        manifest_path = cwd / "package.json"
        manifest = json.loads(manifest_path.read_text()) if manifest_path.exists() else None
        self.calls.append({"args": args, "cwd": cwd, "policy": policy, "manifest": manifest})

        if args[:2] == ["npm", "install"]:
            return self._npm_install(args, cwd, manifest, policy)
        if args[0].endswith("electron-rebuild"):
            return self._rebuild(args, cwd, policy)
        return ProcessResult(args=args, returncode=0, policy=policy)

    def calls_for(self, program: str) -> list[dict]:
        return [c for c in self.calls if Path(c["args"][0]).name == program]

    def npm_installs(self) -> list[dict]:
        return [c for c in self.calls if c["args"][:2] == ["npm", "install"]]

    def _npm_install(self, args, cwd, manifest, policy):
        if self.fail_install:
            return ProcessResult(args=args, returncode=1, stderr="npm ERR! network", policy=policy)
        if self.fail_with_override and manifest and "overrides" in manifest:
            return ProcessResult(args=args, returncode=1, stderr="npm ERR! ERESOLVE", policy=policy)

        for spec in (a for a in args[2:] if not a.startswith("--")):
            name, _, version = spec.rpartition("@")
            pkg_dir = cwd / "node_modules" / name
            pkg_dir.mkdir(parents=True, exist_ok=True)
            (pkg_dir / "package.json").write_text(json.dumps({"name": name, "version": version}))
            if name == "@electron/asar" and self.create_bins:
                self._make_bin(cwd, "asar")
            if name == "@electron/rebuild" and self.create_bins:
                self._make_bin(cwd, "electron-rebuild")
        return ProcessResult(args=args, returncode=0, stdout="added 1 package", policy=policy)

    def _make_bin(self, cwd: Path, name: str) -> None:
        bin_path = cwd / "node_modules" / ".bin" / name
        bin_path.parent.mkdir(parents=True, exist_ok=True)
        bin_path.write_text("#!/bin/sh\n")
        bin_path.chmod(0o755)

    def _rebuild(self, args, cwd, policy):
        if self.fail_rebuild:
            return ProcessResult(args=args, returncode=1, stderr="gyp ERR! build error", policy=policy)
        version = args[args.index("-v") + 1]
        for pkg in (cwd / "node_modules").iterdir():
            if pkg.name in ("electron", ".bin") or pkg.name.startswith("@"):
                continue
            release = pkg / "build" / "Release"
            release.mkdir(parents=True, exist_ok=True)
            (release / f"{pkg.name.replace('-', '_')}.node").write_bytes(
                f"ELF electron-{version}".encode()
            )
        return ProcessResult(args=args, returncode=0, policy=policy)


def make_module(tree: Path, name: str, version: str, *, binary: bytes = b"MACHO") -> Path:
    """Lay out ``node_modules/<name>`` with a manifest and a compiled addon."""
    pkg = tree / "node_modules" / name
    (pkg / "build" / "Release").mkdir(parents=True, exist_ok=True)
    (pkg / "package.json").write_text(json.dumps({"name": name, "version": version}))
    (pkg / "build" / "Release" / f"{name.replace('-', '_')}.node").write_bytes(binary)
    return pkg


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def config(tmp_path: Path) -> PortConfig:
    """Configuration rooted in a temporary cache directory."""
    return PortConfig(
        cache_root=tmp_path / "cache",
        install_dir=tmp_path / "install",
        native_modules=[NativeModule(name="better-sqlite3"), NativeModule(name="node-pty")],
    )


@pytest.fixture
def app_tree(tmp_path: Path) -> Path:
    """An extracted macOS app archive with both native modules."""
    tree = tmp_path / "app"
    (tree / "webview").mkdir(parents=True)
    (tree / "webview" / "index.html").write_text("<html></html>")
    (tree / "package.json").write_text(json.dumps({"name": "codex", "main": "main.js"}))
    (tree / "main.js").write_text("require('better-sqlite3')\n")
    make_module(tree, "better-sqlite3", "11.8.1")
    make_module(tree, "node-pty", "1.0.0")
    sparkle = tree / "node_modules" / "sparkle-darwin"
    sparkle.mkdir(parents=True)
    (sparkle / "index.js").write_text("module.exports = {}\n")
    (tree / "native").mkdir()
    (tree / "native" / "sparkle.node").write_bytes(b"MACHO")
    return tree


@pytest.fixture(autouse=True)
def _reset_decant_logger():
    """The CLI detaches the package logger from root; undo that between tests."""
    yield
    logger = logging.getLogger("decant")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
