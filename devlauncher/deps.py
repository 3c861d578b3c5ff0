"""
Dependency Cache Verifier
=========================

Decides whether the backend's Go modules are present in the local module
cache without running anything that could trigger a download. Every
``module@version`` listed in go.mod is looked up in GOMODCACHE. The set counts
as installed once at least 90% of the entries are found (never fewer than one).

The Go cache escapes uppercase letters so that module paths stay distinct on
case-insensitive filesystems: ``github.com/Masterminds/semver`` is stored
as ``github.com/!masterminds/semver``.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .errors import LauncherError
from .project import ProjectFiles
from .toolchain import Toolchain

logger = logging.getLogger(__name__)

PROBE_CONCURRENCY = 20
INSTALLED_RATIO_PERCENT = 90


@dataclass(frozen=True)
class DependencyDescriptor:
    module_name: str
    version: str

    @property
    def cache_dir_name(self) -> str:
        return f"{self.module_name}@{self.version}"


@dataclass
class DependencyReport:
    installed: bool
    total: int = 0
    exist_count: int = 0
    threshold: int = 0
    reason: str = ""


@dataclass
class DependencyStatus:
    frontend: DependencyReport
    backend: DependencyReport

    @property
    def summary(self) -> str:
        if self.frontend.installed and self.backend.installed:
            return "ok"
        if self.frontend.installed or self.backend.installed:
            return "partial"
        return "missing"


def encode_module_path(path: str) -> str:
    """Escape uppercase ASCII letters as ``!`` + lowercase, leaving everything else alone."""
    return "".join(f"!{ch.lower()}" if "A" <= ch <= "Z" else ch for ch in path)


def required_threshold(total: int) -> int:
    """Number of cache hits needed: 90% of ``total`` rounded down, at least 1"""
    return max(1, total * INSTALLED_RATIO_PERCENT // 100)


def parse_go_mod(text: str) -> Tuple[str, List[DependencyDescriptor]]:
    """Return the module path and the required (module, version) pairs."""
    module_path = ""
    deps: List[DependencyDescriptor] = []
    in_require = False

    def add(name: str, version: str):
        if name.startswith("./") or name.startswith("../"):
            return
        deps.append(DependencyDescriptor(name, version))

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("//"):
            continue
        if line.startswith("module ") and not module_path:
            module_path = line.split()[1].strip('"')
            continue
        if line.startswith("require ("):
            in_require = True
            continue
        if in_require:
            if line == ")":
                # Only the first require block is read
                break
            parts = line.split()
            if len(parts) >= 2:
                add(parts[0], parts[1])
            continue
        if line.startswith("require ") and "(" not in line:
            parts = line.split()
            if len(parts) >= 3:
                add(parts[1], parts[2])

    return module_path, deps


def _dir_exists(path: Path) -> bool:
    try:
        return path.is_dir()
    except OSError:
        return False


async def verify_module_cache(descriptors: Sequence[DependencyDescriptor], cache_root: Path,
                              limit: int = PROBE_CONCURRENCY) -> DependencyReport:
    """Probe the cache for every descriptor, at most ``limit`` lookups in flight."""
    semaphore = asyncio.Semaphore(limit)

    async def probe(descriptor: DependencyDescriptor) -> bool:
        async with semaphore:
            target = cache_root / encode_module_path(descriptor.cache_dir_name)
            return await asyncio.to_thread(_dir_exists, target)

    results = await asyncio.gather(*(probe(d) for d in descriptors))
    total = len(descriptors)
    exist_count = sum(1 for found in results if found)
    threshold = required_threshold(total)
    installed = exist_count >= threshold
    logger.debug(f"Module cache: {exist_count}/{total} present (need {threshold})")
    return DependencyReport(installed=installed, total=total, exist_count=exist_count,
                            threshold=threshold,
                            reason="" if installed else f"only {exist_count}/{total} modules cached")


async def check_backend_dependencies(project: ProjectFiles, toolchain: Toolchain) -> DependencyReport:
    """Never raises: anything that prevents a verdict reads as not installed."""
    try:
        if not (project.go_mod.is_file() and project.go_sum.is_file()):
            return DependencyReport(installed=False, reason="go.mod or go.sum missing")
        _, descriptors = parse_go_mod(project.read_go_mod())
        cache_root = await toolchain.go_mod_cache()
    except LauncherError as e:
        logger.warning(f"Backend dependency check could not run: {e}")
        return DependencyReport(installed=False, reason=str(e))
    return await verify_module_cache(descriptors, cache_root)


async def check_frontend_dependencies(project: ProjectFiles, toolchain: Toolchain) -> DependencyReport:
    try:
        if not (project.package_json.is_file() and project.node_modules.is_dir()):
            return DependencyReport(installed=False, reason="package.json or node_modules missing")
        ok = await toolchain.npm_ls(project.frontend_dir)
    except LauncherError as e:
        logger.warning(f"Frontend dependency check could not run: {e}")
        return DependencyReport(installed=False, reason=str(e))
    return DependencyReport(installed=ok, reason="" if ok else "npm ls reported missing packages")


async def check_all(project: ProjectFiles, toolchain: Toolchain) -> DependencyStatus:
    frontend, backend = await asyncio.gather(
        check_frontend_dependencies(project, toolchain),
        check_backend_dependencies(project, toolchain),
    )
    return DependencyStatus(frontend=frontend, backend=backend)


async def install_dependencies(project: ProjectFiles, toolchain: Toolchain,
                               npm_registry: Optional[str] = None,
                               goproxy: Optional[str] = None) -> List[str]:
    """Install whichever side is missing, both sides concurrently; returns error messages."""
    status = await check_all(project, toolchain)

    async def install_frontend() -> Optional[str]:
        if status.frontend.installed:
            return None
        try:
            if npm_registry:
                await toolchain.set_npm_registry(project.frontend_dir, npm_registry)
            result = await toolchain.npm_install(project.frontend_dir)
        except LauncherError as e:
            return f"frontend: {e}"
        if not result.ok:
            return f"frontend: npm install failed (exit code: {result.returncode})\n{result.output.strip()}"
        logger.info("Frontend dependencies installed successfully")
        return None

    async def install_backend() -> Optional[str]:
        if status.backend.installed:
            return None
        try:
            if goproxy:
                await toolchain.set_goproxy(goproxy)
            result = await toolchain.go_mod_download(project.backend_dir)
        except LauncherError as e:
            return f"backend: {e}"
        if not result.ok:
            return f"backend: go mod download failed (exit code: {result.returncode})\n{result.output.strip()}"
        logger.info("Backend dependencies installed successfully")
        return None

    outcomes = await asyncio.gather(install_frontend(), install_backend())
    errors = [e for e in outcomes if e]
    for error in errors:
        logger.error(error)
    return errors
