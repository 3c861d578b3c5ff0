"""
Tests for the Go module cache verifier and the dependency installer.
"""
import pytest

from devlauncher.deps import (
    DependencyDescriptor,
    check_all,
    check_backend_dependencies,
    encode_module_path,
    install_dependencies,
    parse_go_mod,
    required_threshold,
    verify_module_cache,
)
from devlauncher.errors import ToolchainError
from devlauncher.toolchain import CommandResult


class TestModulePathEncoding:
    """Uppercase escaping used by the Go module cache"""

    def test_uppercase_becomes_bang_lowercase(self):
        assert encode_module_path("github.com/Masterminds/semver") == "github.com/!masterminds/semver"
        assert encode_module_path("github.com/BurntSushi/TOML") == "github.com/!burnt!sushi/!t!o!m!l"

    def test_lowercase_path_is_unchanged(self):
        path = "golang.org/x/text@v0.14.0"
        assert encode_module_path(path) == path

    def test_encoding_is_idempotent_once_lowercase(self):
        once = encode_module_path("github.com/Azure/go-AutoRest")
        assert encode_module_path(once) == once

    def test_non_ascii_letters_are_left_alone(self):
        assert encode_module_path("example.com/Ärger") == "example.com/Ärger"


class TestThreshold:
    """90% rounded down, never below one"""

    @pytest.mark.parametrize("total,expected", [(0, 1), (1, 1), (5, 4), (10, 9), (11, 9), (100, 90)])
    def test_threshold(self, total, expected):
        assert required_threshold(total) == expected


class TestParseGoMod:
    """go.mod require parsing"""

    def test_reads_module_and_first_require_block(self, project):
        module, deps = parse_go_mod(project.read_go_mod())
        assert module == "github.com/example/app"
        assert [d.cache_dir_name for d in deps] == [
            "github.com/Masterminds/semver/v3@v3.2.1",
            "github.com/gin-gonic/gin@v1.9.1",
            "golang.org/x/text@v0.14.0",
        ]

    def test_single_line_require_and_comments(self):
        text = "module m\n// comment\nrequire github.com/a/b v1.0.0\n"
        module, deps = parse_go_mod(text)
        assert module == "m"
        assert deps == [DependencyDescriptor("github.com/a/b", "v1.0.0")]

    def test_local_replacements_are_skipped(self):
        text = "module m\nrequire (\n\t./local v0.0.0\n\t../sibling v0.0.0\n\tgithub.com/x/y v1.2.3\n)\n"
        _, deps = parse_go_mod(text)
        assert deps == [DependencyDescriptor("github.com/x/y", "v1.2.3")]


def _populate_cache(cache_root, descriptors):
    for descriptor in descriptors:
        (cache_root / encode_module_path(descriptor.cache_dir_name)).mkdir(parents=True)


class TestVerifyModuleCache:
    """Cache probing against a real directory tree"""

    @pytest.mark.asyncio
    async def test_all_present(self, tmp_path):
        descriptors = [DependencyDescriptor("github.com/Foo/bar", "v1.0.0"),
                       DependencyDescriptor("golang.org/x/net", "v0.1.0")]
        _populate_cache(tmp_path, descriptors)

        report = await verify_module_cache(descriptors, tmp_path)
        assert report.installed
        assert report.exist_count == 2
        assert report.total == 2

    @pytest.mark.asyncio
    async def test_looks_up_encoded_directory(self, tmp_path):
        descriptor = DependencyDescriptor("github.com/Foo/bar", "v1.0.0")
        (tmp_path / "github.com" / "Foo" / "bar@v1.0.0").mkdir(parents=True)

        report = await verify_module_cache([descriptor], tmp_path)
        assert not report.installed

    @pytest.mark.asyncio
    async def test_ninety_percent_is_enough(self, tmp_path):
        descriptors = [DependencyDescriptor(f"example.com/m{i}", "v1.0.0") for i in range(10)]
        _populate_cache(tmp_path, descriptors[:9])

        report = await verify_module_cache(descriptors, tmp_path, limit=3)
        assert report.installed
        assert report.threshold == 9

    @pytest.mark.asyncio
    async def test_below_threshold_is_not_installed(self, tmp_path):
        descriptors = [DependencyDescriptor(f"example.com/m{i}", "v1.0.0") for i in range(10)]
        _populate_cache(tmp_path, descriptors[:8])

        report = await verify_module_cache(descriptors, tmp_path)
        assert not report.installed
        assert "8/10" in report.reason

    @pytest.mark.asyncio
    async def test_single_missing_dependency(self, tmp_path):
        report = await verify_module_cache([DependencyDescriptor("example.com/only", "v1.0.0")], tmp_path)
        assert not report.installed
        assert report.threshold == 1


class TestBackendCheck:
    """check_backend_dependencies never raises"""

    @pytest.mark.asyncio
    async def test_installed_when_cache_populated(self, project, fake_toolchain, tmp_path):
        _, descriptors = parse_go_mod(project.read_go_mod())
        _populate_cache(tmp_path / "gomodcache", descriptors)

        report = await check_backend_dependencies(project, fake_toolchain)
        assert report.installed
        assert report.total == 3

    @pytest.mark.asyncio
    async def test_missing_go_sum(self, project, fake_toolchain):
        project.go_sum.unlink()
        report = await check_backend_dependencies(project, fake_toolchain)
        assert not report.installed
        fake_toolchain.go_mod_cache.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_go_toolchain(self, project, fake_toolchain):
        fake_toolchain.go_mod_cache.side_effect = ToolchainError("go not found in PATH")
        report = await check_backend_dependencies(project, fake_toolchain)
        assert not report.installed
        assert "go not found" in report.reason

    @pytest.mark.asyncio
    async def test_summary_partial(self, project, fake_toolchain):
        (project.frontend_dir / "node_modules").mkdir()
        status = await check_all(project, fake_toolchain)
        assert status.frontend.installed
        assert not status.backend.installed
        assert status.summary == "partial"


class TestInstallDependencies:
    """Only missing sides get installed"""

    @pytest.mark.asyncio
    async def test_installs_missing_sides(self, project, fake_toolchain):
        errors = await install_dependencies(project, fake_toolchain, npm_registry="https://registry.example/")
        assert errors == []
        fake_toolchain.set_npm_registry.assert_awaited_once_with(project.frontend_dir, "https://registry.example/")
        fake_toolchain.npm_install.assert_awaited_once()
        fake_toolchain.go_mod_download.assert_awaited_once()
        fake_toolchain.set_goproxy.assert_not_called()

    @pytest.mark.asyncio
    async def test_collects_errors_per_side(self, project, fake_toolchain):
        fake_toolchain.go_mod_download.return_value = CommandResult(1, "verifying module: checksum mismatch")
        errors = await install_dependencies(project, fake_toolchain)
        assert len(errors) == 1
        assert errors[0].startswith("backend: go mod download failed (exit code: 1)")
        assert "checksum mismatch" in errors[0]

    @pytest.mark.asyncio
    async def test_nothing_to_do_when_installed(self, project, fake_toolchain, tmp_path):
        (project.frontend_dir / "node_modules").mkdir()
        _, descriptors = parse_go_mod(project.read_go_mod())
        _populate_cache(tmp_path / "gomodcache", descriptors)

        assert await install_dependencies(project, fake_toolchain) == []
        fake_toolchain.npm_install.assert_not_called()
        fake_toolchain.go_mod_download.assert_not_called()
