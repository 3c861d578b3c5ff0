"""Shared fixtures: a throwaway project tree and mocks for the external tools."""

import socket
from unittest.mock import AsyncMock, MagicMock

import pytest

from devlauncher.config import LauncherConfig
from devlauncher.ports import ProcessTerminator
from devlauncher.project import ProjectFiles
from devlauncher.toolchain import CommandResult, Toolchain

GO_MOD = """module github.com/example/app

go 1.22

require (
\tgithub.com/Masterminds/semver/v3 v3.2.1
\tgithub.com/gin-gonic/gin v1.9.1
\tgolang.org/x/text v0.14.0 // indirect
)

require github.com/late/one v0.1.0
"""

CONFIG_YAML = """system:
  addr: 8888
  use-redis: false
redis:
  addr: 127.0.0.1:6379
  password: ''
  db: 0
"""

ENV_DEVELOPMENT = """VITE_CLI_PORT=8080
VITE_SERVER_PORT=8888
VITE_BASE_API=/api
"""


@pytest.fixture
def project_root(tmp_path):
    """A minimal backend + frontend layout."""
    root = tmp_path / "app"
    server = root / "server"
    web = root / "web"
    server.mkdir(parents=True)
    web.mkdir()
    (server / "go.mod").write_text(GO_MOD, encoding="utf-8")
    (server / "go.sum").write_text("", encoding="utf-8")
    (server / "config.yaml").write_text(CONFIG_YAML, encoding="utf-8")
    (web / "package.json").write_text('{"name": "web", "scripts": {"serve": "vite"}}', encoding="utf-8")
    (web / ".env.development").write_text(ENV_DEVELOPMENT, encoding="utf-8")
    return root


@pytest.fixture
def project(project_root):
    return ProjectFiles(project_root)


@pytest.fixture
def launcher_config(tmp_path, project_root):
    """Config pointing at the project tree, with dev server logs disabled."""
    return LauncherConfig({"project_root": str(project_root), "service_log_dir": ""},
                          path=tmp_path / "devlauncher.json")


@pytest.fixture
def fake_toolchain(tmp_path):
    """Toolchain double: async helpers are AsyncMocks, spawn returns a live-looking process."""
    toolchain = MagicMock(spec=Toolchain)
    toolchain.go_mod_cache = AsyncMock(return_value=tmp_path / "gomodcache")
    toolchain.list_modules = AsyncMock(return_value="")
    toolchain.npm_ls = AsyncMock(return_value=True)
    toolchain.npm_install = AsyncMock(return_value=CommandResult(0, "added 1 package"))
    toolchain.go_mod_download = AsyncMock(return_value=CommandResult(0, ""))
    toolchain.set_npm_registry = AsyncMock()
    toolchain.set_goproxy = AsyncMock()

    process = MagicMock()
    process.pid = 4242
    process.poll.return_value = None
    toolchain.spawn.return_value = process
    return toolchain


@pytest.fixture
def fake_terminator():
    terminator = MagicMock(spec=ProcessTerminator)
    terminator.kill_by_port.return_value = 1
    terminator.terminate.return_value = True
    return terminator


@pytest.fixture
def held_port():
    """A port with a live listener on the wildcard address."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('', 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def closed_port():
    """A port nothing listens on (bound once, then released)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        port = sock.getsockname()[1]
    return port
