"""
Installer - everything around the archive patcher.

Checks the host, obtains the DMG, pulls the app bundle out of it,
downloads the Linux Electron runtime and lays out the install directory
with a start script.
"""

from __future__ import annotations

import logging
import platform
import shutil
import stat
import tempfile
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from textwrap import dedent
from typing import TYPE_CHECKING, Callable

import requests

from decant.asar import ArchiveBackend, AsarCliBackend, NativeAsarBackend
from decant.config import PortConfig
from decant.errors import ArchiveError, EnvironmentCheckError
from decant.patcher import ArchivePatcher, PatchResult
from decant.process import OutputPolicy, ProcessRunner
from decant.rebuild import NativeModuleRebuilder
from decant.toolchain import ToolchainCache

if TYPE_CHECKING:
    from rich.progress import Progress

logger = logging.getLogger(__name__)

REQUIRED_COMMANDS = ["node", "npm", "npx", "python3", "7z"]
BUILD_COMMANDS = ["make", "g++"]
MIN_NODE_MAJOR = 20

ELECTRON_ARCH = {
    "x86_64": "x64",
    "aarch64": "arm64",
    "armv7l": "armv7l",
}

DMG_CONNECT_TIMEOUT = 30
DMG_MAX_TIME = 600
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

INSTALL_HINT = dedent("""\
    Install them first:
      sudo apt install nodejs npm python3 p7zip-full build-essential  # Debian/Ubuntu
      sudo dnf install nodejs npm python3 p7zip && sudo dnf groupinstall 'Development Tools'  # Fedora
      sudo pacman -S nodejs npm python p7zip base-devel  # Arch""")

BUILD_TOOLS_HINT = dedent("""\
      sudo apt install build-essential   # Debian/Ubuntu
      sudo dnf groupinstall 'Development Tools'  # Fedora
      sudo pacman -S base-devel          # Arch""")


@dataclass
class EnvironmentReport:
    """Result of probing the host for required tools."""
    found: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    node_version: str | None = None


def probe_environment(
    runner: ProcessRunner | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> EnvironmentReport:
    """Look up every required command without failing."""
    runner = runner or ProcessRunner()
    report = EnvironmentReport()
    for cmd in REQUIRED_COMMANDS + BUILD_COMMANDS:
        path = which(cmd)
        if path:
            report.found[cmd] = path
        else:
            report.missing.append(cmd)

    if "node" in report.found:
        result = runner.run(["node", "-v"])
        if result.ok:
            report.node_version = result.stdout.strip()
    return report


def check_environment(
    runner: ProcessRunner | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> EnvironmentReport:
    """
    Fail before any mutation if the host cannot run the port.

    Raises:
        EnvironmentCheckError: naming the missing tools, or the Node
            version when it is too old.
    """
    report = probe_environment(runner, which)

    missing = [c for c in report.missing if c in REQUIRED_COMMANDS]
    if missing:
        raise EnvironmentCheckError(f"Missing dependencies: {' '.join(missing)}", hint=INSTALL_HINT)

    major = _node_major(report.node_version)
    if major is None or major < MIN_NODE_MAJOR:
        raise EnvironmentCheckError(
            f"Node.js {MIN_NODE_MAJOR}+ required (found {report.node_version or 'unknown'})"
        )

    if any(c in report.missing for c in BUILD_COMMANDS):
        raise EnvironmentCheckError("Build tools (make, g++) required", hint=BUILD_TOOLS_HINT)

    logger.info("All dependencies found")
    return report


def _node_major(version: str | None) -> int | None:
    if not version:
        return None
    head = version.strip().lstrip("v").split(".", 1)[0]
    return int(head) if head.isdigit() else None


def electron_arch(machine: str | None = None) -> str:
    """Map ``uname -m`` to Electron's release naming."""
    machine = machine or platform.machine()
    try:
        return ELECTRON_ARCH[machine]
    except KeyError:
        raise EnvironmentCheckError(f"Unsupported architecture: {machine}")


def download(
    url: str,
    dest: Path,
    progress: Progress | None = None,
    *,
    connect_timeout: float | None = None,
    max_time: float | None = None,
) -> Path:
    """
    Stream ``url`` to ``dest``.

    ``max_time`` bounds the whole transfer, not just each read. Without
    it the download blocks until the server finishes. A partial or empty
    file is removed before the error propagates.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    hint = f"Download manually and place as: {dest}"
    timeout = (connect_timeout, max_time) if connect_timeout or max_time else None
    deadline = time.monotonic() + max_time if max_time else None
    task = None
    try:
        with requests.get(url, stream=True, timeout=timeout) as r:
            r.raise_for_status()
            if progress:
                total = int(r.headers.get("content-length", 0)) or None
                task = progress.add_task(f"Downloading {dest.name}", total=total)
            with dest.open("wb") as f:
                for chunk in r.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if deadline is not None and time.monotonic() > deadline:
                        raise ArchiveError(f"Download timed out after {max_time:g}s", hint=hint)
                    if chunk:
                        f.write(chunk)
                        if progress and task is not None:
                            progress.update(task, advance=len(chunk))
    except requests.RequestException as e:
        dest.unlink(missing_ok=True)
        raise ArchiveError(f"Download failed: {e}", hint=hint)
    except ArchiveError:
        dest.unlink(missing_ok=True)
        raise

    if dest.stat().st_size == 0:
        dest.unlink()
        raise ArchiveError("Download produced empty file", hint=hint)
    return dest


def fetch_dmg(dest: Path, url: str, progress: Progress | None = None) -> Path:
    """Reuse a non-empty cached DMG or download a fresh one."""
    if dest.is_file() and dest.stat().st_size > 0:
        logger.info("Using cached DMG: %s", dest)
        return dest
    logger.info("Downloading Codex Desktop DMG from %s", url)
    return download(
        url,
        dest,
        progress,
        connect_timeout=DMG_CONNECT_TIMEOUT,
        max_time=DMG_MAX_TIME,
    )


def extract_dmg(dmg_path: Path, work_dir: Path, runner: ProcessRunner | None = None) -> Path:
    """Unpack the DMG with 7z and return the ``.app`` bundle directory."""
    runner = runner or ProcessRunner()
    out = work_dir / "dmg-extract"
    logger.info("Extracting DMG with 7z...")
    runner.run(
        ["7z", "x", "-y", dmg_path, f"-o{out}"],
        policy=OutputPolicy.CAPTURE,
    ).check(ArchiveError, "Failed to extract DMG")

    app_dir = find_app_bundle(out)
    if app_dir is None:
        raise ArchiveError("Could not find .app bundle in DMG")
    logger.info("Found: %s", app_dir.name)
    return app_dir


def find_app_bundle(root: Path, max_depth: int = 3) -> Path | None:
    """First ``*.app`` directory within ``max_depth`` levels of ``root``."""
    level = [root]
    for _ in range(max_depth):
        next_level = []
        for directory in level:
            if not directory.is_dir():
                continue
            for child in sorted(directory.iterdir()):
                if child.is_dir() and not child.is_symlink():
                    if child.suffix == ".app":
                        return child
                    next_level.append(child)
        level = next_level
    return None


def download_electron(
    config: PortConfig,
    arch: str,
    work_dir: Path,
    progress: Progress | None = None,
) -> Path:
    """Fetch the Linux Electron release and unzip it into the install dir."""
    url = config.electron_url_template.format(version=config.electron_version, arch=arch)
    logger.info("Downloading Electron v%s for Linux (%s)...", config.electron_version, arch)
    archive = download(url, work_dir / "electron.zip", progress)

    install_dir = config.install_dir
    install_dir.mkdir(parents=True, exist_ok=True)
    unzip_preserving_modes(archive, install_dir)
    logger.info("Electron ready")
    return install_dir


def unzip_preserving_modes(archive: Path, dest: Path) -> None:
    """Extract a zip, keeping Unix permission bits and symlinks."""
    try:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                mode = (info.external_attr >> 16) & 0xFFFF
                target = dest / info.filename
                if not target.resolve().is_relative_to(dest.resolve()):
                    raise ArchiveError(f"Unsafe member in {archive.name}: {info.filename}")
                if stat.S_ISLNK(mode):
                    target.parent.mkdir(parents=True, exist_ok=True)
                    if target.is_symlink() or target.exists():
                        target.unlink()
                    target.symlink_to(zf.read(info).decode("utf-8"))
                    continue
                zf.extract(info, dest)
                if mode and not info.is_dir():
                    target.chmod(stat.S_IMODE(mode))
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Corrupt Electron download: {e}")


def extract_webview(tree: Path, install_dir: Path) -> bool:
    """Copy ``webview/`` out of the extracted archive. Missing is only a warning."""
    src = tree / "webview"
    dest = install_dir / "content" / "webview"
    dest.mkdir(parents=True, exist_ok=True)
    if not src.is_dir():
        logger.warning("Webview directory not found in asar - app may not work")
        return False
    shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    logger.info("Webview files copied")
    return True


def install_app(result: PatchResult, install_dir: Path) -> Path:
    """Place the patched archive and its unpacked sibling into ``resources/``."""
    resources = install_dir / "resources"
    resources.mkdir(parents=True, exist_ok=True)
    shutil.copy2(result.archive, resources / result.archive.name)
    if result.unpacked_dir.is_dir():
        target = resources / result.unpacked_dir.name
        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(result.unpacked_dir, target, symlinks=True)
    logger.info("%s installed", result.archive.name)
    return resources / result.archive.name


def generate_start_script() -> str:
    """Launcher that serves the webview and starts Electron."""
    return dedent('''\
        #!/bin/bash
        SCRIPT_DIR="$(cd "$(dirname "$0")" && pwd)"
        WEBVIEW_DIR="$SCRIPT_DIR/content/webview"

        pkill -f "http.server 5175" 2>/dev/null
        sleep 0.3

        if [ -d "$WEBVIEW_DIR" ] && [ "$(ls -A "$WEBVIEW_DIR" 2>/dev/null)" ]; then
            cd "$WEBVIEW_DIR"
            python3 -m http.server 5175 &> /dev/null &
            HTTP_PID=$!
            trap "kill $HTTP_PID 2>/dev/null" EXIT
        fi

        export CODEX_CLI_PATH="${CODEX_CLI_PATH:-$(which codex 2>/dev/null)}"

        if [ -z "$CODEX_CLI_PATH" ]; then
            echo "Error: Codex CLI not found. Install with: npm i -g @openai/codex"
            exit 1
        fi

        cd "$SCRIPT_DIR"
        exec "$SCRIPT_DIR/electron" --no-sandbox "$@"
    ''')


def write_start_script(install_dir: Path) -> Path:
    script = install_dir / "start.sh"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(generate_start_script())
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    logger.info("Start script created")
    return script


def make_backend(name: str, toolchain: ToolchainCache) -> ArchiveBackend:
    """``cli`` uses the cached asar executable, ``native`` the built-in codec."""
    if name == "native":
        return NativeAsarBackend()
    if name == "cli":
        return AsarCliBackend(toolchain)
    raise ValueError(f"Unknown archive backend: {name}")


class Installer:
    """
    Full macOS-to-Linux port of the Codex Desktop app.

    Usage:
        installer = Installer(PortConfig.from_env())
        installer.run(dmg_path=None)
    """

    def __init__(
        self,
        config: PortConfig,
        *,
        runner: ProcessRunner | None = None,
        backend: str = "cli",
        which: Callable[[str], str | None] = shutil.which,
    ):
        self.config = config
        self.runner = runner or ProcessRunner()
        self.backend_name = backend
        self.which = which

    def run(
        self,
        dmg_path: Path | None = None,
        dmg_cache: Path | None = None,
        progress: Progress | None = None,
    ) -> Path:
        """Run every stage; returns the path of the start script."""
        config = self.config

        check_environment(self.runner, self.which)
        arch = electron_arch()

        config.npm_cache_dir.mkdir(parents=True, exist_ok=True)
        toolchain = ToolchainCache.from_config(config, self.runner)
        rebuilder = NativeModuleRebuilder.from_config(config, toolchain, self.runner)
        backend = make_backend(self.backend_name, toolchain)

        if dmg_path is not None:
            dmg_path = dmg_path.resolve()
            logger.info("Using provided DMG: %s", dmg_path)
        else:
            dmg_path = fetch_dmg(dmg_cache or Path.cwd() / "Codex.dmg", config.dmg_url, progress)

        with tempfile.TemporaryDirectory(prefix="decant-") as tmp:
            work_dir = Path(tmp)
            app_dir = extract_dmg(dmg_path, work_dir, self.runner)

            patcher = ArchivePatcher.from_config(config, backend, rebuilder, work_dir)
            result = patcher.patch(app_dir / "Contents" / "Resources" / "app.asar")

            download_electron(config, arch, work_dir, progress)
            extract_webview(result.extracted_tree, config.install_dir)
            install_app(result, config.install_dir)
            script = write_start_script(config.install_dir)

        if not self.which("codex"):
            logger.warning("Codex CLI not found. Install it: npm i -g @openai/codex")

        return script
