"""Thin async wrapper around the go / npm command-line tools."""

import asyncio
import logging
import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import ToolchainError

logger = logging.getLogger(__name__)

DEFAULT_NPM_REGISTRY = "https://registry.npmjs.org/"
DEFAULT_GOPROXY = "https://proxy.golang.org,direct"

# Windows ships npm as a .cmd shim next to node.exe
_WINDOWS_CANDIDATES: Dict[str, List[str]] = {
    "npm": ["npm.cmd", "npm.exe", "npm"],
    "go": ["go.exe", "go"],
    "node": ["node.exe", "node"],
}


@dataclass
class CommandResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def hidden_window_flags() -> int:
    """creationflags that keep a console window from popping up on Windows"""
    if platform.system() == "Windows":
        return getattr(subprocess, "CREATE_NO_WINDOW", 0)
    return 0


class Toolchain:
    """Runs external build tools and captures exit status plus output."""

    def __init__(self, env: Optional[Dict[str, str]] = None, timeout: Optional[float] = None):
        self.env = env
        self.timeout = timeout

    @staticmethod
    def _which_any(commands: Sequence[str]) -> Optional[str]:
        """Return the first absolute path found for any command variant."""
        for cmd in commands:
            path = shutil.which(cmd)
            if path:
                return path
        return None

    def resolve(self, name: str) -> str:
        if platform.system() == "Windows":
            candidates = _WINDOWS_CANDIDATES.get(name, [name])
        else:
            candidates = [name]
        path = self._which_any(candidates)
        if not path:
            raise ToolchainError(f"{name} not found in PATH")
        return path

    async def run(self, args: Sequence[str], cwd: Optional[Path] = None,
                  timeout: Optional[float] = None) -> CommandResult:
        """Run a command to completion, merging stderr into the captured output"""
        executable = self.resolve(args[0])
        timeout = timeout if timeout is not None else self.timeout
        logger.debug(f"Running {' '.join(args)} (cwd={cwd})")
        try:
            proc = await asyncio.create_subprocess_exec(
                executable, *args[1:],
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self.env,
                creationflags=hidden_window_flags(),
            )
        except OSError as e:
            raise ToolchainError(f"Failed to run {args[0]}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ToolchainError(f"{' '.join(args)} timed out after {timeout}s")

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return CommandResult(proc.returncode, output)

    async def run_checked(self, args: Sequence[str], cwd: Optional[Path] = None) -> str:
        result = await self.run(args, cwd=cwd)
        if not result.ok:
            raise ToolchainError(
                f"{' '.join(args)} failed (exit code: {result.returncode})\n{result.output.strip()}"
            )
        return result.output

    def spawn(self, args: Sequence[str], cwd: Path, log_path: Optional[Path] = None) -> subprocess.Popen:
        """Start a long-running dev server without waiting for it"""
        executable = self.resolve(args[0])
        if log_path:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            output = open(log_path, "ab")
        else:
            output = subprocess.DEVNULL
        try:
            process = subprocess.Popen(
                [executable, *args[1:]],
                cwd=str(cwd),
                stdout=output,
                stderr=subprocess.STDOUT,
                env=self.env or os.environ.copy(),
                creationflags=hidden_window_flags(),
                shell=False,
            )
        except OSError as e:
            raise ToolchainError(f"Failed to start {' '.join(args)}: {e}") from e
        finally:
            # The child keeps its own handle to the log file
            if log_path:
                output.close()
        logger.info(f"Spawned {' '.join(args)} in {cwd} (PID: {process.pid})")
        return process

    async def go_mod_cache(self) -> Path:
        output = await self.run_checked(["go", "env", "GOMODCACHE"])
        cache = output.strip()
        if not cache:
            raise ToolchainError("go env GOMODCACHE returned an empty path")
        return Path(cache)

    async def list_modules(self, backend_dir: Path) -> str:
        return await self.run_checked(["go", "list", "-m", "all"], cwd=backend_dir)

    async def go_mod_download(self, backend_dir: Path) -> CommandResult:
        return await self.run(["go", "mod", "download"], cwd=backend_dir)

    async def npm_install(self, frontend_dir: Path) -> CommandResult:
        return await self.run(["npm", "install"], cwd=frontend_dir)

    async def npm_ls(self, frontend_dir: Path) -> bool:
        """npm ls exits 0 only when every declared dependency is installed"""
        result = await self.run(["npm", "ls", "--depth=0"], cwd=frontend_dir)
        return result.ok

    async def get_npm_registry(self, frontend_dir: Path) -> str:
        result = await self.run(["npm", "config", "get", "registry"], cwd=frontend_dir)
        return result.output.strip() if result.ok else ""

    async def set_npm_registry(self, frontend_dir: Path, url: str):
        await self.run_checked(["npm", "config", "set", "registry", url or DEFAULT_NPM_REGISTRY],
                               cwd=frontend_dir)

    async def get_goproxy(self) -> str:
        result = await self.run(["go", "env", "GOPROXY"])
        return result.output.strip() if result.ok else ""

    async def set_goproxy(self, url: str):
        await self.run_checked(["go", "env", "-w", f"GOPROXY={url or DEFAULT_GOPROXY}"])
