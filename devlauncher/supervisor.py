"""
Service Supervisor
==================

Tracks the backend and frontend dev servers by port. Processes are spawned
through the toolchain, but "running" is always decided by whether the
service's port is occupied, so a server started outside the launcher (or an
unrelated program squatting on the port) also reads as running.

State records live in a lock-guarded store; every reader gets a copy.
"""

import asyncio
import dataclasses
import logging
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import LauncherConfig
from .errors import ToolchainError
from .ports import PortManager, ProcessTerminator
from .project import DEFAULT_BACKEND_PORT, ProjectFiles
from .toolchain import Toolchain

logger = logging.getLogger(__name__)

SERVICE_NAMES = ("backend", "frontend")

SETTLE_DELAYS = {"backend": 1.0, "frontend": 2.0}
START_STAGGER = 2.0
STOP_GRACE = 0.5
READINESS_POLL = 0.5

MONITOR_FAST_INTERVAL = 1.0
MONITOR_SLOW_INTERVAL = 5.0
MONITOR_WINDOW = 30.0

# The frontend dev server hot-reloads onto the new port after its env file changes
PORT_RELOAD_WAIT = 4.0
MONITOR_RESUME_DELAY = 1.0


class ServiceState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class ManagedService:
    name: str
    port: int
    state: ServiceState = ServiceState.STOPPED
    started_at: Optional[datetime] = None
    pid: Optional[int] = None
    owned: bool = False
    port_busy: bool = False

    @property
    def is_running(self) -> bool:
        return self.state is ServiceState.RUNNING


class ServiceStateStore:
    """Thread-safe holder of the service records and the monitor pause flag"""

    def __init__(self, backend_port: int, frontend_port: int):
        self._lock = threading.Lock()
        self._services: Dict[str, ManagedService] = {
            "backend": ManagedService("backend", backend_port),
            "frontend": ManagedService("frontend", frontend_port),
        }
        self._paused = False

    def snapshot(self, name: str) -> ManagedService:
        with self._lock:
            return dataclasses.replace(self._services[name])

    def snapshots(self) -> Dict[str, ManagedService]:
        with self._lock:
            return {name: dataclasses.replace(svc) for name, svc in self._services.items()}

    def update(self, name: str, **changes) -> ManagedService:
        with self._lock:
            record = dataclasses.replace(self._services[name], **changes)
            self._services[name] = record
            return dataclasses.replace(record)

    def reset(self, name: str) -> ManagedService:
        return self.update(name, state=ServiceState.STOPPED, started_at=None, pid=None, owned=False)

    def observe_port(self, name: str, busy: bool) -> ManagedService:
        """Fold one port observation into the record"""
        with self._lock:
            record = self._services[name]
            changes = {"port_busy": busy}
            if record.state is not ServiceState.STARTING:
                if busy and record.state is not ServiceState.RUNNING:
                    changes.update(state=ServiceState.RUNNING, started_at=datetime.now())
                elif not busy and record.state is ServiceState.RUNNING:
                    changes.update(state=ServiceState.STOPPED, started_at=None)
            record = dataclasses.replace(record, **changes)
            self._services[name] = record
            return dataclasses.replace(record)

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def set_paused(self, paused: bool):
        with self._lock:
            self._paused = paused


class ServiceSupervisor:
    """Starts, stops and watches the two dev servers."""

    def __init__(self, config: LauncherConfig, project: ProjectFiles, toolchain: Toolchain,
                 terminator: Optional[ProcessTerminator] = None,
                 prober: Callable[[int], bool] = PortManager.is_port_in_use):
        self.config = config
        self.project = project
        self.toolchain = toolchain
        self.terminator = terminator or ProcessTerminator.for_platform()
        self.prober = prober
        self.store = ServiceStateStore(project.backend_port() or DEFAULT_BACKEND_PORT,
                                       project.frontend_port())
        self._processes: Dict[str, subprocess.Popen] = {}

        self.settle_delays = dict(SETTLE_DELAYS)
        self.start_stagger = START_STAGGER
        self.stop_grace = STOP_GRACE
        self.readiness_poll = READINESS_POLL
        self.readiness_timeout = config.readiness_timeout
        self.port_reload_wait = PORT_RELOAD_WAIT
        self.resume_delay = MONITOR_RESUME_DELAY

        self._monitor_task: Optional[asyncio.Task] = None
        self._monitor_stop: Optional[asyncio.Event] = None
        self._window_start = 0.0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _service_dir(self, name: str) -> Path:
        return self.project.backend_dir if name == "backend" else self.project.frontend_dir

    def _service_command(self, name: str) -> List[str]:
        return self.config.backend_command if name == "backend" else self.config.frontend_command

    def _service_log(self, name: str) -> Optional[Path]:
        log_dir = self.config.service_log_dir
        return log_dir / f"{name}.log" if log_dir else None

    def refresh_ports(self):
        """Re-read both ports from the project's settings files"""
        self.store.update("backend", port=self.project.backend_port() or DEFAULT_BACKEND_PORT)
        self.store.update("frontend", port=self.project.frontend_port())

    def snapshots(self) -> Dict[str, ManagedService]:
        return self.store.snapshots()

    async def _is_busy(self, port: int) -> bool:
        return await asyncio.to_thread(self.prober, port)

    async def _release(self, name: str, port: int) -> int:
        """Kill the port's occupants and our own process tree for ``name``"""
        process = self._processes.pop(name, None)
        killed = await asyncio.to_thread(self.terminator.kill_by_port, port)
        if process is not None and process.poll() is None:
            await asyncio.to_thread(self.terminator.terminate, process.pid)
        self.store.reset(name)
        return killed

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_service(self, name: str) -> bool:
        """Spawn ``name`` and wait until its port is occupied; False when it failed"""
        record = self.store.snapshot(name)
        current = self._processes.get(name)
        alive = current is not None and current.poll() is None
        if record.state is ServiceState.STARTING or (record.is_running and alive):
            logger.warning(f"{name.capitalize()} is already {record.state.value}; not starting it again")
            return record.is_running

        cwd = self._service_dir(name)
        command = self._service_command(name)
        self.store.update(name, state=ServiceState.STARTING, started_at=None, pid=None, owned=False)
        if current is not None:
            # Left over from a start that never opened its port
            self._processes.pop(name, None)
            if alive:
                await asyncio.to_thread(self.terminator.terminate, current.pid)
                if self.store.snapshot(name).state is not ServiceState.STARTING:
                    return False

        port = record.port
        logger.info(f"Starting {name}: {' '.join(command)} (port {port})")
        try:
            process = self.toolchain.spawn(command, cwd, log_path=self._service_log(name))
        except ToolchainError as e:
            logger.error(f"Failed to start {name}: {e}")
            self.store.update(name, state=ServiceState.FAILED)
            return False
        self._processes[name] = process
        self.store.update(name, pid=process.pid, owned=True)

        await asyncio.sleep(self.settle_delays[name])
        return await self._await_ready(name, process)

    async def _await_ready(self, name: str, process: subprocess.Popen) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout
        while True:
            port = self.store.snapshot(name).port
            busy = await self._is_busy(port)
            if self._processes.get(name) is not process:
                # Stopped while starting; the stop already reset the record
                logger.info(f"{name.capitalize()} start abandoned")
                return False
            if busy:
                # An unrelated listener on the port also lands here
                self.store.update(name, state=ServiceState.RUNNING, started_at=datetime.now(), port_busy=True)
                logger.info(f"{name.capitalize()} is running on port {port}")
                return True
            returncode = process.poll()
            if returncode is not None:
                self._processes.pop(name, None)
                self.store.update(name, state=ServiceState.FAILED, pid=None, owned=False, port_busy=False)
                logger.error(f"{name.capitalize()} exited with code {returncode} before opening port {port}")
                return False
            if loop.time() >= deadline:
                self.store.update(name, state=ServiceState.FAILED, port_busy=False)
                logger.error(f"{name.capitalize()} did not open port {port} within {self.readiness_timeout:.0f}s")
                return False
            await asyncio.sleep(self.readiness_poll)

    async def start_services(self) -> bool:
        """Backend first, frontend after the stagger; neither waits for the other."""
        # Fail fast on a missing project root before anything is spawned
        self.project.require_root()
        self.refresh_ports()
        self.start_monitor()

        backend = asyncio.create_task(self.start_service("backend"))
        await asyncio.sleep(self.start_stagger)
        frontend = asyncio.create_task(self.start_service("frontend"))
        results = await asyncio.gather(backend, frontend)
        return all(results)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_service(self, name: str) -> int:
        port = self.store.snapshot(name).port
        logger.info(f"Stopping {name} (port {port})")
        return await self._release(name, port)

    async def stop_services(self) -> int:
        """Stop both services; returns how many port occupants were killed"""
        killed = await asyncio.gather(*(self.stop_service(name) for name in SERVICE_NAMES))
        await asyncio.sleep(self.stop_grace)
        await self.observe()
        return sum(killed)

    # ------------------------------------------------------------------
    # Port change
    # ------------------------------------------------------------------

    async def change_port(self, name: str, new_port: int) -> bool:
        """Persist a new port for ``name``; returns True when running services were stopped"""
        if name not in SERVICE_NAMES:
            raise ValueError(f"Unknown service {name!r}")
        if not 0 < new_port < 65536:
            raise ValueError("Port must be between 1 and 65535")
        self.project.require_root()

        old = self.store.snapshots()
        was_running = any(svc.is_running or svc.state is ServiceState.STARTING for svc in old.values())
        if was_running:
            logger.info("Services are running; stopping both before the port change")
            for service in SERVICE_NAMES:
                await self._release(service, old[service].port)

        if name == "backend":
            await asyncio.to_thread(self.project.write_backend_port, new_port)
            self.store.update("backend", port=new_port)
            logger.info(f"Backend port changed to {new_port}")
            return was_running

        self.store.set_paused(True)
        try:
            await asyncio.to_thread(self.project.write_frontend_port, new_port)
            self.store.update("frontend", port=new_port)
            logger.info(f"Frontend port changed to {new_port}")
            await asyncio.sleep(self.port_reload_wait)
            await asyncio.to_thread(self.terminator.kill_by_port, new_port)
            await asyncio.sleep(self.resume_delay)
            self.store.reset("frontend")
        finally:
            self.store.set_paused(False)
        return was_running

    # ------------------------------------------------------------------
    # Monitor
    # ------------------------------------------------------------------

    async def observe(self) -> Dict[str, ManagedService]:
        """Probe both ports once and fold the result into the records"""
        for name in SERVICE_NAMES:
            process = self._processes.get(name)
            if process is not None and process.poll() is not None:
                self._processes.pop(name, None)
                self.store.update(name, pid=None, owned=False)
            busy = await self._is_busy(self.store.snapshot(name).port)
            self.store.observe_port(name, busy)
        return self.store.snapshots()

    def start_monitor(self):
        """Start the monitor task, or restart its fast-polling window if it is already running"""
        loop = asyncio.get_running_loop()
        self._window_start = loop.time()
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_stop = asyncio.Event()
        self._monitor_task = loop.create_task(self._monitor_loop(self._monitor_stop))

    @property
    def monitor_running(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def _monitor_loop(self, stop: asyncio.Event):
        loop = asyncio.get_running_loop()
        settled = False
        logger.debug("Status monitor started")
        while not stop.is_set():
            if not self.store.paused:
                try:
                    records = await self.observe()
                except OSError as e:
                    logger.warning(f"Status monitor tick failed: {e}")
                else:
                    if all(svc.port_busy for svc in records.values()):
                        settled = True

            in_window = loop.time() - self._window_start < MONITOR_WINDOW
            interval = MONITOR_FAST_INTERVAL if in_window and not settled else MONITOR_SLOW_INTERVAL
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.debug("Status monitor stopped")

    async def shutdown(self, stop_services: bool = False):
        """Stop the monitor loop (and optionally the services)"""
        if self._monitor_stop is not None:
            self._monitor_stop.set()
        task = self._monitor_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=MONITOR_SLOW_INTERVAL + 1)
            except asyncio.TimeoutError:
                task.cancel()
        self._monitor_task = None
        if stop_services:
            await self.stop_services()
