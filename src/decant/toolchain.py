"""
Cached Node build toolchain.

``asar`` and ``electron-rebuild`` are installed once with npm into the
cache root and reused by every later run. There is no staleness check:
once both executables are present the cache is trusted.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from decant.config import PortConfig
from decant.errors import ProvisioningError
from decant.process import OutputPolicy, ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolPaths:
    """Locations of the two cached executables."""
    asar: Path
    electron_rebuild: Path


@dataclass(frozen=True)
class OverridePolicy:
    """
    A single dependency pin tried on the first install attempt.

    ``glob`` is forced to a known-good major. If npm cannot resolve the
    tree with it, the pin is dropped and the install retried once.
    """
    package: str = "glob"
    version: str | None = "^13.0.6"

    @property
    def active(self) -> bool:
        return bool(self.version)

    def manifest(self) -> dict:
        data: dict = {"private": True}
        if self.active:
            data["overrides"] = {self.package: self.version}
        return data


def write_manifest(directory: Path, data: dict) -> Path:
    """Write a minimal ``package.json`` into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    manifest = directory / "package.json"
    manifest.write_text(json.dumps(data, indent=2) + "\n")
    return manifest


def npm_install_command(
    specs: Sequence[str],
    *,
    save_dev: bool = False,
    ignore_scripts: bool = True,
) -> list[str]:
    """Build an ``npm install`` command line."""
    cmd = ["npm", "install", "--no-fund", "--no-audit"]
    if save_dev:
        cmd.append("--save-dev")
    if ignore_scripts:
        cmd.append("--ignore-scripts")
    cmd.extend(specs)
    return cmd


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class ToolchainCache:
    """
    Ensures the pinned build tools exist under ``tools_dir``.

    Usage:
        cache = ToolchainCache.from_config(config)
        tools = cache.ensure_tools()
        runner.run([tools.asar, "extract", ...])
    """

    def __init__(
        self,
        tools_dir: Path | str,
        packages: Sequence[str],
        *,
        override: OverridePolicy | None = None,
        runner: ProcessRunner | None = None,
        npm_env: dict[str, str] | None = None,
    ):
        self.tools_dir = Path(tools_dir)
        self.packages = list(packages)
        self.override = override or OverridePolicy(version=None)
        self.runner = runner or ProcessRunner()
        self.npm_env = npm_env or {}
        self.attempts: list[dict] = []

    @classmethod
    def from_config(cls, config: PortConfig, runner: ProcessRunner | None = None) -> ToolchainCache:
        return cls(
            config.tools_dir,
            [config.tools.asar, config.tools.rebuild],
            override=OverridePolicy(version=config.tools.glob_override),
            runner=runner,
            npm_env=config.npm_env(),
        )

    @property
    def paths(self) -> ToolPaths:
        bin_dir = self.tools_dir / "node_modules" / ".bin"
        return ToolPaths(asar=bin_dir / "asar", electron_rebuild=bin_dir / "electron-rebuild")

    def is_ready(self) -> bool:
        paths = self.paths
        return _is_executable(paths.asar) and _is_executable(paths.electron_rebuild)

    def ensure_tools(self) -> ToolPaths:
        """
        Return the tool paths, provisioning them on first use.

        Raises:
            ProvisioningError: if both install attempts fail or the
                executables are still missing afterwards.
        """
        if self.is_ready():
            return self.paths

        logger.info("Preparing cached toolchain in %s", self.tools_dir)

        result: ProcessResult | None = None
        if self.override.active:
            result = self._install(self.override.manifest(), OutputPolicy.SUPPRESS)
            if not result.ok:
                logger.info(
                    "Toolchain install with %s override failed; "
                    "falling back to default dependency graph",
                    self.override.package,
                )

        if result is None or not result.ok:
            result = self._install({"private": True}, OutputPolicy.CAPTURE)
            result.check(ProvisioningError, "Toolchain install failed")

        paths = self.paths
        if not _is_executable(paths.asar):
            raise ProvisioningError("Cached asar binary missing after toolchain install")
        if not _is_executable(paths.electron_rebuild):
            raise ProvisioningError("Cached electron-rebuild binary missing after toolchain install")

        return paths

    def _install(self, manifest: dict, policy: OutputPolicy) -> ProcessResult:
        write_manifest(self.tools_dir, manifest)
        self.attempts.append(manifest)
        return self.runner.run(
            npm_install_command(self.packages),
            cwd=self.tools_dir,
            env=self.npm_env,
            policy=policy,
        )
