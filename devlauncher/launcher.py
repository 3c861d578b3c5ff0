"""
Launcher facade and command-line entry point.

All async work runs on one event loop owned by a background thread. Every
operation has a blocking form (used by the CLI) and a ``submit_*`` form that
returns a ``concurrent.futures.Future`` immediately, so a UI thread is never
blocked by installs, cache cleans or health checks.
"""

import argparse
import asyncio
import concurrent.futures
import sys
import threading
import time
from pathlib import Path
from typing import Any, Coroutine, Dict, List, Optional, Tuple

from . import cleaner, deps
from .config import LauncherConfig
from .errors import LauncherError
from .log import Colors, Logger
from .network import NetworkDiscovery, ServerHealth
from .ports import PortManager, ProcessTerminator
from .project import ProjectFiles, RedisSettings
from .redis_check import ProtocolCheckStep, RedisCheckReport, RedisConnectionTester, format_transcript
from .supervisor import ManagedService, ServiceState, ServiceSupervisor
from .toolchain import DEFAULT_GOPROXY, DEFAULT_NPM_REGISTRY, Toolchain


class BackgroundLoop:
    """An asyncio event loop running forever on a daemon thread"""

    def __init__(self, name: str = "devlauncher-loop"):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self):
        self._thread.start()

    def submit(self, coro: Coroutine) -> concurrent.futures.Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro: Coroutine, timeout: Optional[float] = None) -> Any:
        return self.submit(coro).result(timeout)

    def stop(self):
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        if not self._thread.is_alive():
            self.loop.close()


class Launcher:
    """Blocking and non-blocking access to every launcher operation."""

    def __init__(self, config: LauncherConfig, toolchain: Optional[Toolchain] = None,
                 terminator: Optional[ProcessTerminator] = None):
        self.config = config
        self.toolchain = toolchain or Toolchain()
        self.terminator = terminator or ProcessTerminator.for_platform()
        self.project = ProjectFiles(config.project_root,
                                    backend_dir=config.get("backend_dir", "server"),
                                    frontend_dir=config.get("frontend_dir", "web"))
        self.supervisor = ServiceSupervisor(config, self.project, self.toolchain, self.terminator)
        self._loop = BackgroundLoop()
        self._loop.start()

    def close(self, stop_services: bool = False):
        self._loop.run(self.supervisor.shutdown(stop_services=stop_services))
        self._loop.stop()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Project root
    # ------------------------------------------------------------------

    def set_project_root(self, path: Path) -> List[str]:
        """Point the launcher at a project; returns warnings about its layout"""
        path = Path(path).expanduser().resolve()
        if not path.is_dir():
            raise ValueError(f"Not a directory: {path}")
        self.config.project_root = path
        self.config.save()
        self.project.root = path
        self.supervisor.refresh_ports()

        warnings = []
        if not self.project.backend_dir.is_dir():
            warnings.append(f"Backend directory not found: {self.project.backend_dir}")
        if not self.project.frontend_dir.is_dir():
            warnings.append(f"Frontend directory not found: {self.project.frontend_dir}")
        return warnings

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def check_dependencies(self) -> deps.DependencyStatus:
        return self._loop.run(deps.check_all(self.project, self.toolchain))

    def check_dependencies_installed(self) -> bool:
        """True when the backend module cache is populated"""
        return self.submit_check_dependencies().result()

    def submit_check_dependencies(self) -> concurrent.futures.Future:
        async def installed() -> bool:
            report = await deps.check_backend_dependencies(self.project, self.toolchain)
            return report.installed
        return self._loop.submit(installed())

    def install_dependencies(self, npm_registry: Optional[str] = None, goproxy: Optional[str] = None) -> List[str]:
        return self.submit_install_dependencies(npm_registry, goproxy).result()

    def submit_install_dependencies(self, npm_registry: Optional[str] = None,
                                    goproxy: Optional[str] = None) -> concurrent.futures.Future:
        self.project.require_root()
        return self._loop.submit(deps.install_dependencies(self.project, self.toolchain,
                                                           npm_registry=npm_registry, goproxy=goproxy))

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def start_services(self) -> bool:
        return self.submit_start_services().result()

    def submit_start_services(self) -> concurrent.futures.Future:
        self.project.require_root()
        return self._loop.submit(self.supervisor.start_services())

    def stop_services(self) -> int:
        return self.submit_stop_services().result()

    def submit_stop_services(self) -> concurrent.futures.Future:
        return self._loop.submit(self.supervisor.stop_services())

    def services(self) -> Dict[str, ManagedService]:
        return self.supervisor.snapshots()

    def refresh_status(self) -> Dict[str, ManagedService]:
        return self._loop.run(self.supervisor.observe())

    def change_port(self, service: str, port: int) -> bool:
        return self.submit_change_port(service, port).result()

    def submit_change_port(self, service: str, port: int) -> concurrent.futures.Future:
        self.project.require_root()
        return self._loop.submit(self.supervisor.change_port(service, port))

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    @staticmethod
    def is_port_occupied(port: int) -> bool:
        return PortManager.is_port_in_use(port)

    def kill_by_port(self, port: int) -> int:
        return self.submit_kill_by_port(port).result()

    def submit_kill_by_port(self, port: int) -> concurrent.futures.Future:
        return self._loop.submit(asyncio.to_thread(self.terminator.kill_by_port, port))

    # ------------------------------------------------------------------
    # Redis
    # ------------------------------------------------------------------

    def run_store_check(self, address: str, password: str = "", db: int = 0) -> RedisCheckReport:
        return self._loop.run(RedisConnectionTester().run(address, password, db))

    def test_store_connection(self, address: str, password: str = "", db: int = 0) -> List[ProtocolCheckStep]:
        return self.submit_test_store_connection(address, password, db).result()

    def submit_test_store_connection(self, address: str, password: str = "",
                                     db: int = 0) -> concurrent.futures.Future:
        async def steps() -> List[ProtocolCheckStep]:
            report = await RedisConnectionTester().run(address, password, db)
            return report.steps
        return self._loop.submit(steps())

    def read_redis_settings(self) -> RedisSettings:
        return self.project.read_redis_settings()

    def save_redis_settings(self, settings: RedisSettings) -> bool:
        """Write the redis block; running services are stopped first. Returns True if they were."""
        self.project.require_root()
        if not 0 <= settings.db <= 15:
            raise ValueError("Database index must be between 0 and 15")
        was_running = self._any_service_active()
        if was_running:
            self.stop_services()
        self.project.write_redis_settings(settings)
        return was_running

    # ------------------------------------------------------------------
    # Caches and mirrors
    # ------------------------------------------------------------------

    def clean_caches(self) -> Tuple[int, int]:
        return self.submit_clean_caches().result()

    def submit_clean_caches(self) -> concurrent.futures.Future:
        self.project.require_root()

        async def clean() -> Tuple[int, int]:
            if self._any_service_active():
                await self.supervisor.stop_services()
            tally = await cleaner.clean_all_caches(self.project, self.toolchain)
            return tally.as_tuple()
        return self._loop.submit(clean())

    def get_mirrors(self) -> Dict[str, str]:
        async def read() -> Dict[str, str]:
            npm, goproxy = await asyncio.gather(
                self.toolchain.get_npm_registry(self.project.frontend_dir),
                self.toolchain.get_goproxy(),
            )
            return {"npm": npm, "goproxy": goproxy}
        self.project.require_root()
        return self._loop.run(read())

    def set_npm_registry(self, url: str):
        self.project.require_root()
        self._loop.run(self.toolchain.set_npm_registry(self.project.frontend_dir, url))

    def set_goproxy(self, url: str):
        self._loop.run(self.toolchain.set_goproxy(url))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _any_service_active(self) -> bool:
        return any(svc.is_running or svc.state is ServiceState.STARTING
                   for svc in self.supervisor.snapshots().values())

    def access_url(self) -> str:
        return NetworkDiscovery.access_url(self.supervisor.snapshots()["frontend"].port)

    def http_status(self) -> Dict[str, bool]:
        """Whether each running service answers HTTP on localhost"""
        status = {}
        for name, svc in self.supervisor.snapshots().items():
            status[name] = svc.is_running and ServerHealth.probe_http(f"http://127.0.0.1:{svc.port}")
        return status


# ----------------------------------------------------------------------
# Command line
# ----------------------------------------------------------------------

_STATE_STYLE = {
    ServiceState.RUNNING: ("🟢", "OKGREEN"),
    ServiceState.STARTING: ("🟡", "WARNING"),
    ServiceState.STOPPED: ("⚪", "ENDC"),
    ServiceState.FAILED: ("🔴", "FAIL"),
}


def _print_services(launcher: Launcher, probe_http: bool = False):
    services = launcher.services()
    http = launcher.http_status() if probe_http else {}
    for name, svc in services.items():
        icon, color = _STATE_STYLE[svc.state]
        line = f"{icon} {name:<9} port {svc.port:<6} {getattr(Colors, color)}{svc.state.value}{Colors.ENDC}"
        if svc.pid:
            line += f" (PID: {svc.pid})"
        if name in http:
            line += "  http ok" if http[name] else "  http unreachable"
        print(line)
    if services["frontend"].is_running:
        print(f"{Colors.OKCYAN}🌐 {launcher.access_url()}{Colors.ENDC}")


def _cmd_status(launcher: Launcher, args) -> bool:
    root = launcher.config.project_root
    print(f"{Colors.BOLD}Project root:{Colors.ENDC} {root or '(not set)'}")
    launcher.refresh_status()
    _print_services(launcher, probe_http=True)
    return True


def _cmd_start(launcher: Launcher, args) -> bool:
    print(f"{Colors.OKCYAN}Starting backend and frontend...{Colors.ENDC}")
    ok = launcher.start_services()
    _print_services(launcher)
    if not ok:
        print(f"{Colors.FAIL}✗ One or more services failed to start (see logs){Colors.ENDC}")
    if args.watch:
        print(f"{Colors.OKCYAN}Watching services, press Ctrl+C to stop them.{Colors.ENDC}")
        try:
            while True:
                time.sleep(5)
                _print_services(launcher)
        except KeyboardInterrupt:
            print(f"\n{Colors.WARNING}Stopping services...{Colors.ENDC}")
            launcher.stop_services()
    return ok


def _cmd_stop(launcher: Launcher, args) -> bool:
    killed = launcher.stop_services()
    print(f"{Colors.OKGREEN}✓ Services stopped ({killed} process(es) killed){Colors.ENDC}")
    return True


def _cmd_check_deps(launcher: Launcher, args) -> bool:
    status = launcher.check_dependencies()
    for name, report in (("frontend", status.frontend), ("backend", status.backend)):
        if report.installed:
            print(f"{Colors.OKGREEN}✓ {name} dependencies installed{Colors.ENDC}")
        else:
            print(f"{Colors.FAIL}✗ {name} dependencies missing: {report.reason}{Colors.ENDC}")
        if report.total:
            print(f"    {report.exist_count}/{report.total} modules cached (need {report.threshold})")
    return status.summary == "ok"


def _cmd_install_deps(launcher: Launcher, args) -> bool:
    print(f"{Colors.OKCYAN}Installing dependencies...{Colors.ENDC}")
    errors = launcher.install_dependencies(npm_registry=args.npm_registry, goproxy=args.goproxy)
    if errors:
        for error in errors:
            print(f"{Colors.FAIL}✗ {error}{Colors.ENDC}")
        return False
    print(f"{Colors.OKGREEN}✓ Dependencies installed{Colors.ENDC}")
    return True


def _cmd_clean_cache(launcher: Launcher, args) -> bool:
    print(f"{Colors.WARNING}Removing node_modules and this project's Go modules...{Colors.ENDC}")
    success, failed = launcher.clean_caches()
    color = Colors.OKGREEN if failed == 0 else Colors.WARNING
    print(f"{color}Cache clean finished: {success} removed, {failed} failed{Colors.ENDC}")
    return failed == 0


def _cmd_test_redis(launcher: Launcher, args) -> bool:
    address, password, db = args.addr, args.password, args.db
    if address is None or password is None or db is None:
        saved = launcher.read_redis_settings()
        address = address if address is not None else saved.addr
        password = password if password is not None else saved.password
        db = db if db is not None else saved.db
    report = launcher.run_store_check(address, password, db)
    print(format_transcript(report))
    return report.passed


def _cmd_set_redis(launcher: Launcher, args) -> bool:
    settings = launcher.read_redis_settings()
    if args.enable is not None:
        settings.use_redis = args.enable
    if args.addr is not None:
        settings.addr = args.addr
    if args.password is not None:
        settings.password = args.password
    if args.db is not None:
        settings.db = args.db
    was_running = launcher.save_redis_settings(settings)
    print(f"{Colors.OKGREEN}✓ Redis settings saved{Colors.ENDC}")
    if was_running:
        print(f"{Colors.WARNING}Services were stopped, start them again to apply.{Colors.ENDC}")
    return True


def _cmd_set_port(launcher: Launcher, args) -> bool:
    was_running = launcher.change_port(args.service, args.port)
    print(f"{Colors.OKGREEN}✓ {args.service} port changed to {args.port}{Colors.ENDC}")
    if was_running:
        print(f"{Colors.WARNING}Services were stopped, start them again to apply.{Colors.ENDC}")
    return True


def _cmd_set_root(launcher: Launcher, args) -> bool:
    for warning in launcher.set_project_root(Path(args.path)):
        print(f"{Colors.WARNING}⚠ {warning}{Colors.ENDC}")
    print(f"{Colors.OKGREEN}✓ Project root set to {launcher.config.project_root}{Colors.ENDC}")
    return True


def _cmd_mirror(launcher: Launcher, args) -> bool:
    if args.npm is not None:
        launcher.set_npm_registry(args.npm)
    if args.goproxy is not None:
        launcher.set_goproxy(args.goproxy)
    mirrors = launcher.get_mirrors()
    print(f"npm registry: {mirrors['npm'] or DEFAULT_NPM_REGISTRY}")
    print(f"GOPROXY:      {mirrors['goproxy'] or DEFAULT_GOPROXY}")
    return True


def _cmd_kill_port(launcher: Launcher, args) -> bool:
    if not launcher.is_port_occupied(args.port):
        print(f"Port {args.port} is free")
        return True
    killed = launcher.kill_by_port(args.port)
    print(f"Killed {killed} process(es) on port {args.port}")
    return killed > 0


_COMMANDS = {
    "status": _cmd_status,
    "start": _cmd_start,
    "stop": _cmd_stop,
    "check-deps": _cmd_check_deps,
    "install-deps": _cmd_install_deps,
    "clean-cache": _cmd_clean_cache,
    "test-redis": _cmd_test_redis,
    "set-redis": _cmd_set_redis,
    "set-port": _cmd_set_port,
    "set-root": _cmd_set_root,
    "mirror": _cmd_mirror,
    "kill-port": _cmd_kill_port,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devlauncher",
        description="Manage a Go backend + Node frontend development stack",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  devlauncher set-root ~/src/myapp          # Point the launcher at a project
  devlauncher check-deps                    # Verify node_modules and the Go module cache
  devlauncher start --watch                 # Start both servers and keep watching
  devlauncher set-port frontend 8081        # Move the frontend dev server
  devlauncher test-redis --addr 127.0.0.1:6379
        """
    )

    ui_group = parser.add_argument_group('UI and Output')
    ui_group.add_argument("--no-color", action="store_true", default=None,
                          help="Disable colored output")
    ui_group.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                          default=None, help="Set logging level")
    ui_group.add_argument("--config", help="Path to launcher JSON config (defaults to .devlauncher.json)")

    advanced_group = parser.add_argument_group('Advanced Options')
    advanced_group.add_argument("--timeout", type=int, default=None,
                                help="Seconds to wait for a started service to open its port")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show service state and access URL")
    start = sub.add_parser("start", help="Start backend and frontend")
    start.add_argument("--watch", action="store_true", help="Keep monitoring until Ctrl+C")
    sub.add_parser("stop", help="Stop both services")
    sub.add_parser("check-deps", help="Check whether dependencies are installed")

    install = sub.add_parser("install-deps", help="Install missing dependencies")
    install.add_argument("--npm-registry", help="Set the npm registry before installing")
    install.add_argument("--goproxy", help="Set GOPROXY before installing")

    sub.add_parser("clean-cache", help="Remove node_modules and this project's Go modules")

    test_redis = sub.add_parser("test-redis", help="Run the Redis connection test")
    test_redis.add_argument("--addr", help="host:port (default: from config.yaml)")
    test_redis.add_argument("--password", help="Password (default: from config.yaml)")
    test_redis.add_argument("--db", type=int, help="Database index 0-15 (default: from config.yaml)")

    set_redis = sub.add_parser("set-redis", help="Update the backend's redis settings")
    toggle = set_redis.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enable", action="store_true", default=None)
    toggle.add_argument("--disable", dest="enable", action="store_false")
    set_redis.add_argument("--addr")
    set_redis.add_argument("--password")
    set_redis.add_argument("--db", type=int)

    set_port = sub.add_parser("set-port", help="Change a service's port")
    set_port.add_argument("service", choices=["backend", "frontend"])
    set_port.add_argument("port", type=int)

    set_root = sub.add_parser("set-root", help="Set the project root directory")
    set_root.add_argument("path")

    mirror = sub.add_parser("mirror", help="Show or change package mirrors (empty value restores the default)")
    mirror.add_argument("--npm", help="npm registry URL")
    mirror.add_argument("--goproxy", help="GOPROXY value")

    kill_port = sub.add_parser("kill-port", help="Kill whatever listens on a port")
    kill_port.add_argument("port", type=int)
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load JSON config (first-run friendly)
    config_path = Path(args.config) if args.config else LauncherConfig.DEFAULT_PATH
    cfg = LauncherConfig.load_or_create(config_path)

    # Merge precedence: CLI > JSON config > defaults
    def pick(key, cli_value, cfg_key=None):
        cfg_key = cfg_key or key
        return cli_value if cli_value is not None else cfg.get(cfg_key)

    if pick("no_color", args.no_color) or not sys.stdout.isatty():
        Colors.disable()
    logger = Logger(level=pick("log_level", args.log_level) or "INFO")
    timeout = pick("readiness_timeout", args.timeout)
    if timeout:
        cfg.data["readiness_timeout"] = timeout

    launcher = Launcher(cfg)
    try:
        success = _COMMANDS[args.command](launcher, args)
    except (LauncherError, ValueError) as e:
        logger.error(str(e))
        print(f"{Colors.FAIL}✗ {e}{Colors.ENDC}")
        success = False
    finally:
        launcher.close()
    sys.exit(0 if success else 1)
