"""
Tests for the toolchain wrapper and the network helpers.
"""
import sys
from unittest.mock import MagicMock, patch

import pytest
import requests

from devlauncher.errors import ToolchainError
from devlauncher.network import NetworkDiscovery, ServerHealth
from devlauncher.toolchain import CommandResult, Toolchain


class TestToolchain:
    """Subprocess execution"""

    def test_missing_tool(self):
        with patch("devlauncher.toolchain.shutil.which", return_value=None):
            with pytest.raises(ToolchainError, match="npm not found"):
                Toolchain().resolve("npm")

    @pytest.mark.asyncio
    async def test_run_merges_output_and_exit_code(self):
        toolchain = Toolchain()
        script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"
        with patch.object(toolchain, "resolve", return_value=sys.executable):
            result = await toolchain.run(["python", "-c", script])

        assert result.returncode == 3
        assert not result.ok
        assert "out" in result.output
        assert "err" in result.output

    @pytest.mark.asyncio
    async def test_run_timeout(self):
        toolchain = Toolchain(timeout=0.2)
        with patch.object(toolchain, "resolve", return_value=sys.executable):
            with pytest.raises(ToolchainError, match="timed out"):
                await toolchain.run(["python", "-c", "import time; time.sleep(5)"])

    @pytest.mark.asyncio
    async def test_go_mod_cache(self, tmp_path):
        toolchain = Toolchain()
        with patch.object(toolchain, "run", return_value=CommandResult(0, f"{tmp_path}\n")) as run:
            assert await toolchain.go_mod_cache() == tmp_path
        run.assert_called_once_with(["go", "env", "GOMODCACHE"], cwd=None)

    @pytest.mark.asyncio
    async def test_run_checked_raises_with_output(self):
        toolchain = Toolchain()
        with patch.object(toolchain, "run", return_value=CommandResult(1, "go: not a module\n")):
            with pytest.raises(ToolchainError, match="not a module"):
                await toolchain.list_modules(None)

    @pytest.mark.asyncio
    async def test_empty_mirror_restores_default(self):
        toolchain = Toolchain()
        with patch.object(toolchain, "run", return_value=CommandResult(0, "")) as run:
            await toolchain.set_goproxy("")
        run.assert_called_once_with(["go", "env", "-w", "GOPROXY=https://proxy.golang.org,direct"], cwd=None)


class TestNetworkDiscovery:
    @pytest.mark.parametrize("ip,score", [("192.168.1.5", 1), ("10.1.2.3", 2), ("172.20.0.1", 3),
                                          ("172.40.0.1", 10), ("8.8.8.8", 10)])
    def test_score(self, ip, score):
        assert NetworkDiscovery._score(ip) == score

    def test_access_url_falls_back_to_localhost(self):
        with patch.object(NetworkDiscovery, "find_best_ip", return_value=None):
            assert NetworkDiscovery.access_url(8080) == "http://localhost:8080"


class TestServerHealth:
    def test_any_response_counts(self):
        with patch("devlauncher.network.requests.get", return_value=MagicMock(status_code=404)):
            assert ServerHealth.probe_http("http://127.0.0.1:8080")

    def test_connection_error(self):
        with patch("devlauncher.network.requests.get", side_effect=requests.ConnectionError("refused")):
            assert not ServerHealth.probe_http("http://127.0.0.1:8080")
