"""LAN address discovery and HTTP probing for the access URLs."""

import logging
import socket
from typing import Optional

import psutil
import requests

logger = logging.getLogger(__name__)

_VIRTUAL_IFACE_KEYWORDS = ['wsl', 'hyper-v', 'virtual', 'tap', 'vpn', 'vethernet', 'docker', 'tun']


class NetworkDiscovery:
    """Handles network discovery and IP address detection using psutil for cross-platform compatibility."""

    @staticmethod
    def _score(ip: str) -> int:
        """Lower is more likely to be the LAN address"""
        if ip.startswith('192.168.'):
            return 1
        if ip.startswith('10.'):
            return 2
        if ip.startswith('172.'):
            try:
                second_octet = int(ip.split('.')[1])
                if 16 <= second_octet <= 31:
                    return 3
            except (ValueError, IndexError):
                pass
        return 10

    @staticmethod
    def find_best_ip() -> Optional[str]:
        """Find the best IP address for LAN access."""
        candidate_ips = []
        try:
            if_addrs = psutil.net_if_addrs()
            if_stats = psutil.net_if_stats()
            for iface, addrs in if_addrs.items():
                name = iface.lower()
                if iface not in if_stats or not if_stats[iface].isup or 'loopback' in name:
                    continue
                if any(keyword in name for keyword in _VIRTUAL_IFACE_KEYWORDS):
                    continue
                for addr in addrs:
                    if (addr.family == socket.AF_INET and addr.address
                            and not addr.address.startswith(('127.', '169.254.'))):
                        candidate_ips.append(addr.address)
        except (psutil.Error, OSError) as e:
            logger.debug(f"Interface enumeration failed: {e}")

        if not candidate_ips:
            # No packet is sent for a UDP connect; it only selects the outbound interface
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                    s.settimeout(1)
                    s.connect(("8.8.8.8", 80))
                    candidate_ips.append(s.getsockname()[0])
            except OSError:
                pass

        if not candidate_ips:
            return None
        return sorted(set(candidate_ips), key=lambda ip: (NetworkDiscovery._score(ip), ip))[0]

    @staticmethod
    def access_url(port: int) -> str:
        host = NetworkDiscovery.find_best_ip() or "localhost"
        return f"http://{host}:{port}"


class ServerHealth:
    """HTTP-level checks for a running dev server"""

    @staticmethod
    def probe_http(url: str, timeout: float = 2.0) -> bool:
        """True when anything answers HTTP at ``url`` (any status code)"""
        try:
            requests.get(url, timeout=timeout)
            return True
        except (requests.ConnectionError, requests.Timeout):
            return False
        except requests.RequestException as e:
            logger.debug(f"HTTP probe error for {url}: {e}")
            return False
