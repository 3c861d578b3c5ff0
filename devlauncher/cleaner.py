"""
Cache Cleaner
=============

Evicts this project's modules from the shared Go module cache one directory at
a time, so modules belonging to other projects survive. The frontend side just
removes ``node_modules``. go.sum is always kept: the toolchain needs it to
re-verify downloads.
"""

import asyncio
import logging
import os
import shutil
import stat
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

from .deps import DependencyDescriptor, encode_module_path, parse_go_mod
from .errors import LauncherError
from .project import ProjectFiles
from .toolchain import Toolchain

logger = logging.getLogger(__name__)


@dataclass
class CacheCleanTally:
    success_count: int = 0
    fail_count: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "CacheCleanTally"):
        self.success_count += other.success_count
        self.fail_count += other.fail_count
        self.errors.extend(other.errors)

    def as_tuple(self):
        return self.success_count, self.fail_count


def parse_module_list(output: str, root_module: str = "") -> List[DependencyDescriptor]:
    """Parse ``go list -m all`` output, skipping the project's own module."""
    modules: List[DependencyDescriptor] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if root_module and line.startswith(root_module):
            continue
        parts = line.split()
        if len(parts) >= 2:
            modules.append(DependencyDescriptor(parts[0], parts[1]))
    return modules


def _make_writable_and_retry(func, path, _exc):
    # Go marks extracted module files and their directories read-only
    os.chmod(os.path.dirname(path), stat.S_IRWXU)
    os.chmod(path, stat.S_IRWXU)
    func(path)


def remove_tree(path: Path):
    """rmtree that treats a missing path as already removed"""
    if not os.path.lexists(path):
        return
    if path.is_symlink() or not path.is_dir():
        path.unlink()
        return
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_make_writable_and_retry)
    else:
        shutil.rmtree(path, onerror=_make_writable_and_retry)


async def remove_module_dirs(cache_root: Path, modules: Sequence[DependencyDescriptor]) -> CacheCleanTally:
    """Delete every module's cache directory; failures are counted, never raised."""
    tally = CacheCleanTally()

    async def remove(descriptor: DependencyDescriptor):
        target = cache_root / encode_module_path(descriptor.cache_dir_name)
        try:
            await asyncio.to_thread(remove_tree, target)
        except OSError as e:
            tally.fail_count += 1
            tally.errors.append(f"{descriptor.cache_dir_name}: {e}")
            logger.warning(f"Failed to remove {target}: {e}")
        else:
            tally.success_count += 1

    await asyncio.gather(*(remove(m) for m in modules))
    return tally


async def clean_backend_cache(project: ProjectFiles, toolchain: Toolchain) -> CacheCleanTally:
    try:
        cache_root = await toolchain.go_mod_cache()
        listing = await toolchain.list_modules(project.backend_dir)
        try:
            root_module, _ = parse_go_mod(project.read_go_mod())
        except LauncherError:
            root_module = ""
    except LauncherError as e:
        logger.error(f"Backend cache clean aborted: {e}")
        return CacheCleanTally(errors=[f"backend: {e}"])

    modules = parse_module_list(listing, root_module)
    logger.info(f"Removing {len(modules)} module(s) from {cache_root}")
    return await remove_module_dirs(cache_root, modules)


async def clean_frontend_cache(project: ProjectFiles) -> CacheCleanTally:
    target = project.node_modules
    try:
        await asyncio.to_thread(remove_tree, target)
    except OSError as e:
        logger.error(f"Failed to remove {target}: {e}")
        return CacheCleanTally(fail_count=1, errors=[f"frontend: {e}"])
    return CacheCleanTally(success_count=1)


async def clean_all_caches(project: ProjectFiles, toolchain: Toolchain) -> CacheCleanTally:
    """Frontend and backend cleans run concurrently; they share no state."""
    frontend, backend = await asyncio.gather(
        clean_frontend_cache(project),
        clean_backend_cache(project, toolchain),
    )
    tally = CacheCleanTally()
    tally.merge(frontend)
    tally.merge(backend)
    logger.info(f"Cache clean finished: {tally.success_count} removed, {tally.fail_count} failed")
    return tally
