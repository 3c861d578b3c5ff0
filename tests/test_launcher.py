"""
Tests for the non-blocking facade and the command line.
"""
import asyncio
import concurrent.futures
import json

import pytest

from devlauncher.config import LauncherConfig
from devlauncher.errors import ProjectRootNotSet
from devlauncher.launcher import BackgroundLoop, Launcher, main
from devlauncher.supervisor import ServiceState


@pytest.fixture
def launcher(launcher_config, fake_toolchain, fake_terminator):
    instance = Launcher(launcher_config, toolchain=fake_toolchain, terminator=fake_terminator)
    yield instance
    instance.close()


class TestBackgroundLoop:
    def test_submit_returns_future(self):
        loop = BackgroundLoop()
        loop.start()
        try:
            async def answer():
                await asyncio.sleep(0)
                return 42

            future = loop.submit(answer())
            assert isinstance(future, concurrent.futures.Future)
            assert future.result(timeout=5) == 42
        finally:
            loop.stop()


class TestLauncher:
    """Blocking and submit_* forms over the supervisor and helpers"""

    def test_kill_by_port(self, launcher, fake_terminator):
        future = launcher.submit_kill_by_port(8080)
        assert future.result(timeout=5) == 1
        fake_terminator.kill_by_port.assert_called_once_with(8080)

    def test_is_port_occupied(self, launcher, held_port):
        assert launcher.is_port_occupied(held_port)

    def test_dependencies_not_installed_without_cache(self, launcher):
        assert launcher.check_dependencies_installed() is False

    def test_clean_caches_returns_counts(self, launcher):
        (launcher.project.node_modules / "vite").mkdir(parents=True)
        assert launcher.clean_caches() == (1, 0)
        assert not launcher.project.node_modules.exists()

    def test_clean_caches_stops_running_services(self, launcher, fake_terminator):
        launcher.supervisor.store.update("backend", state=ServiceState.RUNNING)
        launcher.supervisor.stop_grace = 0
        launcher.supervisor.prober = lambda port: False

        launcher.clean_caches()

        assert fake_terminator.kill_by_port.call_count == 2
        assert launcher.services()["backend"].state is ServiceState.STOPPED

    def test_operations_need_project_root(self, tmp_path, fake_toolchain, fake_terminator):
        cfg = LauncherConfig(path=tmp_path / "devlauncher.json")
        with Launcher(cfg, toolchain=fake_toolchain, terminator=fake_terminator) as rootless:
            with pytest.raises(ProjectRootNotSet):
                rootless.submit_start_services()
            with pytest.raises(ProjectRootNotSet):
                rootless.clean_caches()
            with pytest.raises(ProjectRootNotSet):
                rootless.install_dependencies()
            with pytest.raises(ProjectRootNotSet):
                rootless.change_port("backend", 9000)

    def test_test_store_connection_reports_failed_connect(self, launcher, closed_port):
        steps = launcher.test_store_connection(f"127.0.0.1:{closed_port}", "", 0)
        assert [step.name for step in steps] == ["connect"]
        assert not steps[0].passed

    def test_set_project_root(self, launcher, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        warnings = launcher.set_project_root(other)

        assert len(warnings) == 2
        assert launcher.config.project_root == other.resolve()
        assert json.loads(launcher.config.path.read_text())["project_root"] == str(other.resolve())

    def test_save_redis_settings(self, launcher):
        settings = launcher.read_redis_settings()
        settings.db = 2
        assert launcher.save_redis_settings(settings) is False
        assert launcher.read_redis_settings().db == 2


class TestCommandLine:
    """python -m devlauncher"""

    def test_set_root_and_status(self, tmp_path, monkeypatch, project_root, capsys):
        monkeypatch.chdir(tmp_path)
        config_path = tmp_path / "cli.json"

        with pytest.raises(SystemExit) as exc:
            main(["--config", str(config_path), "--no-color", "set-root", str(project_root)])
        assert exc.value.code == 0
        assert json.loads(config_path.read_text())["project_root"] == str(project_root.resolve())

        with pytest.raises(SystemExit) as exc:
            main(["--config", str(config_path), "--no-color", "status"])
        assert exc.value.code == 0
        assert str(project_root.resolve()) in capsys.readouterr().out

    def test_missing_root_exits_with_error(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(tmp_path / "cli.json"), "--no-color", "clean-cache"])
        assert exc.value.code == 1
        assert "Project root directory is not configured" in capsys.readouterr().out

    def test_invalid_port_exits_with_error(self, tmp_path, monkeypatch, project_root):
        monkeypatch.chdir(tmp_path)
        config_path = tmp_path / "cli.json"
        config_path.write_text(json.dumps({"project_root": str(project_root)}))
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(config_path), "set-port", "backend", "70000"])
        assert exc.value.code == 1
