"""
Decant - pour a macOS Electron app into a Linux Electron runtime.

Example usage:
    from decant import PortConfig, ToolchainCache, NativeModuleRebuilder, ArchivePatcher
    from decant.asar import NativeAsarBackend

    config = PortConfig.from_env()
    toolchain = ToolchainCache.from_config(config)
    rebuilder = NativeModuleRebuilder.from_config(config, toolchain)
    patcher = ArchivePatcher.from_config(config, NativeAsarBackend(), rebuilder, "/tmp/work")
    result = patcher.patch("Codex.app/Contents/Resources/app.asar")
"""

from decant.config import PortConfig
from decant.toolchain import ToolchainCache, ToolPaths
from decant.rebuild import NativeModuleRebuilder, BuildKey
from decant.patcher import ArchivePatcher

__version__ = "0.1.0"
__all__ = [
    "PortConfig",
    "ToolchainCache",
    "ToolPaths",
    "NativeModuleRebuilder",
    "BuildKey",
    "ArchivePatcher",
]
