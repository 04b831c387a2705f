"""
Port configuration models.

Pinned versions, cache locations and the member rules used by the
archive patcher. Defaults match the Codex Desktop macOS bundle.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field


def default_cache_root(env: Mapping[str, str] | None = None) -> Path:
    """``$XDG_CACHE_HOME/decant``, falling back to ``~/.cache/decant``."""
    env = os.environ if env is None else env
    xdg = env.get("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "decant"


class NativeModule(BaseModel):
    """A native addon embedded in the application archive."""
    name: str = Field(description="npm package name, e.g. 'better-sqlite3'")

    @property
    def manifest_path(self) -> Path:
        return Path("node_modules") / self.name / "package.json"

    @property
    def module_dir(self) -> Path:
        return Path("node_modules") / self.name


class ToolchainPins(BaseModel):
    """npm specifiers for the cached build tools."""
    asar: str = Field(default="@electron/asar@4.0.1")
    rebuild: str = Field(default="@electron/rebuild@4.0.3")
    glob_override: Optional[str] = Field(
        default="^13.0.6",
        description="Version forced for 'glob' on the first install attempt; None disables it",
    )


class PortConfig(BaseModel):
    """
    Complete configuration for one port run.

    Serialized as JSON when passed to the CLI with ``--config``.
    """
    electron_version: str = Field(default="40.0.0", description="Target Electron runtime")
    cache_root: Path = Field(default_factory=default_cache_root)
    install_dir: Path = Field(default_factory=lambda: Path.cwd() / "codex-app")
    tools: ToolchainPins = Field(default_factory=ToolchainPins)
    native_modules: list[NativeModule] = Field(default_factory=lambda: [
        NativeModule(name="better-sqlite3"),
        NativeModule(name="node-pty"),
    ])
    foreign_dirs: list[str] = Field(
        default_factory=lambda: ["node_modules/sparkle-darwin"],
        description="macOS-only package directories removed from the archive",
    )
    foreign_files: list[str] = Field(
        default_factory=lambda: ["sparkle.node"],
        description="macOS-only binaries removed wherever they appear",
    )
    unpack_patterns: list[str] = Field(default_factory=lambda: ["*.node", "*.so", "*.dylib"])
    dmg_url: str = Field(default="https://persistent.oaistatic.com/codex-app-prod/Codex.dmg")
    electron_url_template: str = Field(
        default=(
            "https://github.com/electron/electron/releases/download/"
            "v{version}/electron-v{version}-linux-{arch}.zip"
        )
    )

    @property
    def npm_cache_dir(self) -> Path:
        return self.cache_root / "npm-cache"

    @property
    def tools_dir(self) -> Path:
        return self.cache_root / "tools"

    @property
    def native_build_root(self) -> Path:
        return self.cache_root / "native-build"

    def npm_env(self) -> dict[str, str]:
        """Environment applied to every npm invocation."""
        return {
            "npm_config_cache": str(self.npm_cache_dir),
            "npm_config_update_notifier": "false",
            "npm_config_fund": "false",
            "npm_config_audit": "false",
            "npm_config_loglevel": "error",
        }

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, base: PortConfig | None = None) -> PortConfig:
        """Apply ``DECANT_*`` environment overrides on top of ``base``."""
        env = os.environ if env is None else env
        config = base.model_copy(deep=True) if base else cls(cache_root=default_cache_root(env))

        if env.get("DECANT_TOOLCHAIN_CACHE"):
            config.cache_root = Path(env["DECANT_TOOLCHAIN_CACHE"]).expanduser()
        if env.get("DECANT_INSTALL_DIR"):
            config.install_dir = Path(env["DECANT_INSTALL_DIR"]).expanduser()
        if env.get("DECANT_ELECTRON_VERSION"):
            config.electron_version = env["DECANT_ELECTRON_VERSION"]
        if env.get("DECANT_ASAR_PKG"):
            config.tools.asar = env["DECANT_ASAR_PKG"]
        if env.get("DECANT_REBUILD_PKG"):
            config.tools.rebuild = env["DECANT_REBUILD_PKG"]
        if "DECANT_GLOB_OVERRIDE" in env:
            config.tools.glob_override = env["DECANT_GLOB_OVERRIDE"] or None

        return config

    def save(self, path: Path | str) -> None:
        """Save configuration as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2))

    @classmethod
    def load(cls, path: Path | str) -> PortConfig:
        """Load configuration from a JSON file."""
        data = json.loads(Path(path).read_text())
        return cls.model_validate(data)
