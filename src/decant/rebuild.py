"""
Native module rebuild.

The application ships native addons compiled for macOS and for the
Electron build it was released with. Their exact versions are read from
the extracted archive, fresh sources for those versions are installed
into an isolated build directory, and ``electron-rebuild`` compiles them
against the target Electron ABI.

Build directories are keyed by (electron version, module versions) and
kept in the cache root. A directory only counts as a cache hit once its
completion marker has been written.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from decant.config import PortConfig
from decant.errors import BuildError, DetectionError
from decant.process import OutputPolicy, ProcessRunner
from decant.toolchain import ToolchainCache, npm_install_command, write_manifest

logger = logging.getLogger(__name__)

COMPLETE_MARKER = ".decant-complete"

_VERSION_RE = re.compile(r"^[0-9A-Za-z][0-9A-Za-z.+\-]*$")


@dataclass(frozen=True)
class BuildKey:
    """Identity of one native rebuild: runtime version plus module versions."""
    runtime_version: str
    modules: tuple[tuple[str, str], ...]

    def to_dict(self) -> dict:
        return {"runtime_version": self.runtime_version, "modules": dict(self.modules)}


def _dir_component(name: str) -> str:
    return name.lstrip("@").replace("/", "+")


def default_build_dir(root: Path, key: BuildKey) -> Path:
    """``<root>/electron-<v>/<module>-<v>/...`` in module order."""
    path = root / f"electron-{key.runtime_version}"
    for name, version in key.modules:
        path = path / f"{_dir_component(name)}-{version}"
    return path


def detect_versions(source_tree: Path | str, modules: Sequence[str]) -> dict[str, str]:
    """
    Read the declared version of each module from its ``package.json``.

    Raises:
        DetectionError: if any manifest is missing, unreadable, or has no
            usable version string.
    """
    source_tree = Path(source_tree)
    versions: dict[str, str] = {}

    for name in modules:
        manifest = source_tree / "node_modules" / name / "package.json"
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise DetectionError(f"Could not detect {name} version: {manifest} not found")
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DetectionError(f"Could not detect {name} version: {e}")

        version = data.get("version") if isinstance(data, dict) else None
        if not isinstance(version, str) or not _VERSION_RE.match(version):
            raise DetectionError(f"Could not detect {name} version: no valid 'version' in {manifest}")

        versions[name] = version

    return versions


@dataclass
class RebuildResult:
    """What a rebuild produced and where it was copied."""
    key: BuildKey
    build_dir: Path
    cache_hit: bool
    artifacts: dict[str, Path] = field(default_factory=dict)


class NativeModuleRebuilder:
    """
    Rebuild native addons for a different Electron ABI.

    Usage:
        rebuilder = NativeModuleRebuilder.from_config(config, toolchain)
        result = rebuilder.rebuild(extracted_tree, "40.0.0")
    """

    def __init__(
        self,
        build_root: Path | str,
        modules: Sequence[str],
        toolchain: ToolchainCache,
        *,
        runner: ProcessRunner | None = None,
        npm_env: dict[str, str] | None = None,
        build_dir_fn: Callable[[Path, BuildKey], Path] = default_build_dir,
    ):
        self.build_root = Path(build_root)
        self.modules = list(modules)
        self.toolchain = toolchain
        self.runner = runner or toolchain.runner
        self.npm_env = npm_env or {}
        self.build_dir_fn = build_dir_fn

    @classmethod
    def from_config(
        cls,
        config: PortConfig,
        toolchain: ToolchainCache,
        runner: ProcessRunner | None = None,
    ) -> NativeModuleRebuilder:
        return cls(
            config.native_build_root,
            [m.name for m in config.native_modules],
            toolchain,
            runner=runner,
            npm_env=config.npm_env(),
        )

    def build_key(self, runtime_version: str, versions: dict[str, str]) -> BuildKey:
        return BuildKey(
            runtime_version=runtime_version,
            modules=tuple((name, versions[name]) for name in self.modules),
        )

    def build_dir(self, key: BuildKey) -> Path:
        return self.build_dir_fn(self.build_root, key)

    def is_complete(self, key: BuildKey) -> bool:
        """Marker written for this exact key and every module directory present."""
        build_dir = self.build_dir(key)
        marker = build_dir / COMPLETE_MARKER
        if not marker.is_file():
            return False
        try:
            recorded = json.loads(marker.read_text())
        except (OSError, json.JSONDecodeError):
            return False
        if recorded != key.to_dict():
            return False
        return all((build_dir / "node_modules" / name).is_dir() for name in self.modules)

    def rebuild(
        self,
        source_tree: Path | str,
        runtime_version: str,
        dest: Path | str | None = None,
    ) -> RebuildResult:
        """
        Detect, build (or reuse) and copy the native modules.

        ``dest`` is the tree whose ``node_modules`` receives the compiled
        modules; it defaults to ``source_tree``.
        """
        source_tree = Path(source_tree)
        dest = Path(dest) if dest else source_tree

        # 1. Versions come from the shipped package, never assumed
        versions = detect_versions(source_tree, self.modules)
        logger.info(
            "Native modules: %s",
            ", ".join(f"{name}@{version}" for name, version in versions.items()),
        )

        # 2. Reuse a finished build for the same key
        key = self.build_key(runtime_version, versions)
        build_dir = self.build_dir(key)
        cache_hit = self.is_complete(key)

        if cache_hit:
            logger.info("Native build cache hit: %s", build_dir)
        else:
            if build_dir.exists():
                logger.warning("Discarding incomplete native build in %s", build_dir)
                shutil.rmtree(build_dir)
            self._build(key, build_dir)

        # 3. Copy compiled modules over the shipped ones
        result = RebuildResult(key=key, build_dir=build_dir, cache_hit=cache_hit)
        for name in self.modules:
            built = build_dir / "node_modules" / name
            target = dest / "node_modules" / name
            if target.exists() or target.is_symlink():
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(built, target, symlinks=True)
            result.artifacts[name] = target

        return result

    def _build(self, key: BuildKey, build_dir: Path) -> None:
        build_dir.mkdir(parents=True)
        write_manifest(build_dir, {"private": True})

        logger.info("Installing fresh sources from npm into %s", build_dir)
        self.runner.run(
            npm_install_command([f"electron@{key.runtime_version}"], save_dev=True),
            cwd=build_dir,
            env=self.npm_env,
        ).check(BuildError, f"npm install electron@{key.runtime_version} failed")

        self.runner.run(
            npm_install_command([f"{name}@{version}" for name, version in key.modules]),
            cwd=build_dir,
            env=self.npm_env,
        ).check(BuildError, "npm install of native module sources failed")

        tools = self.toolchain.ensure_tools()

        logger.info("Compiling for Electron v%s", key.runtime_version)
        self.runner.run(
            [tools.electron_rebuild, "-v", key.runtime_version, "--force"],
            cwd=build_dir,
            env=self.npm_env,
            policy=OutputPolicy.CAPTURE,
        ).check(BuildError, "electron-rebuild failed")

        missing = [name for name, _ in key.modules if not (build_dir / "node_modules" / name).is_dir()]
        if missing:
            raise BuildError(f"Rebuilt modules missing from {build_dir}: {', '.join(missing)}")

        (build_dir / COMPLETE_MARKER).write_text(json.dumps(key.to_dict(), indent=2) + "\n")
        logger.info("Native modules built successfully")
