"""Port occupancy checks and port-owner termination."""

import errno
import logging
import os
import platform
import socket
import subprocess
from typing import List, Optional

import psutil

from .toolchain import hidden_window_flags

logger = logging.getLogger(__name__)


class PortManager:
    """Manages port availability checks"""

    @staticmethod
    def _bind_fails(family: int, address: tuple, dualstack: bool = False) -> bool:
        try:
            with socket.socket(family, socket.SOCK_STREAM) as sock:
                if dualstack:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                sock.bind(address)
                sock.listen(1)
            return False
        except OSError as e:
            # No IPv6 on this host: nothing can be listening there
            if family == socket.AF_INET6 and e.errno in (errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT):
                return False
            return True

    @staticmethod
    def is_port_in_use(port: int) -> bool:
        """Bind the wildcard address; a failed bind means the port is taken.

        The bind covers IPv4 and IPv6 so a dev server listening only on
        ``::1`` is seen too.
        """
        if not 0 < port < 65536:
            return True
        if socket.has_dualstack_ipv6():
            return PortManager._bind_fails(socket.AF_INET6, ('::', port), dualstack=True)
        if PortManager._bind_fails(socket.AF_INET, ('', port)):
            return True
        return socket.has_ipv6 and PortManager._bind_fails(socket.AF_INET6, ('::', port))

    @staticmethod
    def find_free_port(start_port: int = 8000, max_attempts: int = 100) -> Optional[int]:
        """Find a free port starting from start_port"""
        for port in range(start_port, min(start_port + max_attempts, 65536)):
            if not PortManager.is_port_in_use(port):
                return port
        return None


def parse_netstat_listeners(output: str, port: int) -> List[int]:
    """PIDs from ``netstat -ano`` rows LISTENING on ``port`` (last column)"""
    pids: List[int] = []
    suffix = f":{port}"
    for line in output.splitlines():
        line = line.strip()
        if not line or "LISTENING" not in line:
            continue
        fields = line.split()
        if len(fields) < 5:
            continue
        if not fields[1].endswith(suffix):
            continue
        try:
            pid = int(fields[-1])
        except ValueError:
            continue
        if pid > 0 and pid not in pids:
            pids.append(pid)
    return pids


def parse_lsof_pids(output: str) -> List[int]:
    """PIDs from ``lsof -t`` output, one per line"""
    pids: List[int] = []
    for line in output.split():
        try:
            pid = int(line.strip())
        except ValueError:
            continue
        if pid not in pids:
            pids.append(pid)
    return pids


class ProcessTerminator:
    """Finds the process listening on a port and kills it together with its children."""

    def find_owners(self, port: int) -> List[int]:
        raise NotImplementedError

    def terminate(self, pid: int) -> bool:
        raise NotImplementedError

    def kill_by_port(self, port: int) -> int:
        """Kill every listener on ``port``; returns how many were killed"""
        pids = [pid for pid in self.find_owners(port) if pid != os.getpid()]
        if not pids:
            logger.info(f"No process found listening on port {port}")
            return 0
        killed = 0
        for pid in pids:
            logger.warning(f"Killing process tree {pid} on port {port}")
            if self.terminate(pid):
                killed += 1
        logger.info(f"Killed {killed}/{len(pids)} process(es) on port {port}")
        return killed

    @staticmethod
    def for_platform(system: Optional[str] = None) -> "ProcessTerminator":
        system = system or platform.system()
        if system == "Windows":
            return WindowsTerminator()
        return PosixTerminator()


class WindowsTerminator(ProcessTerminator):
    """netstat for discovery, taskkill /T for the whole tree"""

    def find_owners(self, port: int) -> List[int]:
        try:
            result = subprocess.run(
                ["netstat", "-ano", "-p", "TCP"],
                capture_output=True, text=True, shell=False,
                creationflags=hidden_window_flags(),
            )
        except OSError as e:
            logger.error(f"netstat failed: {e}")
            return []
        return parse_netstat_listeners(result.stdout, port)

    def terminate(self, pid: int) -> bool:
        try:
            result = subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(pid)],
                capture_output=True, text=True, shell=False,
                creationflags=hidden_window_flags(),
            )
        except OSError as e:
            logger.error(f"taskkill failed for PID {pid}: {e}")
            return False
        if result.returncode != 0:
            logger.error(f"taskkill failed for PID {pid}: {result.stdout.strip() or result.stderr.strip()}")
            return False
        return True


class PosixTerminator(ProcessTerminator):
    """lsof for discovery (psutil fallback), SIGKILL for the whole tree"""

    def find_owners(self, port: int) -> List[int]:
        try:
            result = subprocess.run(
                ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"],
                capture_output=True, text=True, shell=False,
            )
        except FileNotFoundError:
            logger.debug("lsof not available, falling back to psutil")
            return self._find_owners_psutil(port)
        # lsof exits 1 when nothing matches
        return parse_lsof_pids(result.stdout)

    @staticmethod
    def _find_owners_psutil(port: int) -> List[int]:
        pids: List[int] = []
        try:
            connections = psutil.net_connections(kind='inet')
        except psutil.AccessDenied:
            logger.warning("Not permitted to list connections; cannot find port owner")
            return pids
        for conn in connections:
            if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
                if conn.pid and conn.pid not in pids:
                    pids.append(conn.pid)
        return pids

    def terminate(self, pid: int) -> bool:
        try:
            parent = psutil.Process(pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return True
        except psutil.Error as e:
            logger.error(f"Cannot inspect PID {pid}: {e}")
            return False

        for proc in procs:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                logger.error(f"Access denied killing PID {proc.pid}: {e}")
                return False
        _, alive = psutil.wait_procs(procs, timeout=3)
        for proc in alive:
            logger.warning(f"Process {proc.pid} still alive after SIGKILL")
        return not alive
