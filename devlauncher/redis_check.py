"""
Redis Connection Test
=====================

A step-by-step connectivity and functionality check against a Redis-compatible
server, spoken directly over a TCP socket with RESP inline commands. It is not
a client: it only verifies that the settings written into the backend's
config.yaml will work.

Steps, in order (the run stops at the first failure):

1. ``connect``    - TCP dial within 3 seconds
2. ``auth``       - always sends AUTH (``AUTH ""`` for an empty password)
3. ``select``     - SELECT <db> when db is not 0
4. ``ping``       - PING must answer +PONG
5. ``read_write`` - SET a throwaway key, GET it back, DEL it
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

DIAL_TIMEOUT = 3.0
READ_TIMEOUT = 5.0
TEST_KEY = "devlauncher_test"
STEP_NAMES = ("connect", "auth", "select", "ping", "read_write")

# Redis < 6 and Redis >= 6 phrase this differently
_NO_PASSWORD_MARKERS = ("no password is set", "without any password configured")

_STEP_TITLES = {
    "connect": "TCP connection",
    "auth": "Authentication",
    "select": "Database selection",
    "ping": "PING",
    "read_write": "Basic read/write",
}


class StepOutcome(Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass
class ProtocolCheckStep:
    name: str
    outcome: StepOutcome
    detail: str = ""

    @property
    def passed(self) -> bool:
        return self.outcome is StepOutcome.PASS


@dataclass
class RedisCheckReport:
    address: str
    db: int
    steps: List[ProtocolCheckStep] = field(default_factory=list)
    auth_mode: str = ""
    written_value: str = ""
    echoed_value: Optional[str] = None

    @property
    def passed(self) -> bool:
        return len(self.steps) == len(STEP_NAMES) and all(step.passed for step in self.steps)

    @property
    def failed_step(self) -> Optional[ProtocolCheckStep]:
        for step in self.steps:
            if not step.passed:
                return step
        return None


def validate_target(address: str, db: int) -> Tuple[str, int]:
    """Split ``host:port`` and range-check db; raises ValueError on bad input"""
    address = (address or "").strip()
    if not address:
        raise ValueError("Redis address is required")
    host, sep, port_text = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Redis address must be host:port, got {address!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in Redis address {address!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in Redis address {address!r}")
    if not 0 <= db <= 15:
        raise ValueError("Database index must be between 0 and 15")
    return host.strip("[]"), port


def quote_argument(value: str) -> str:
    """Quote an inline-command argument when it is empty or has spaces, quotes or line breaks.

    Redis unescapes ``\\r`` and ``\\n`` inside double quotes, so a password
    with a line break stays a single argument.
    """
    if value and not any(ch in value for ch in ' \t\r\n"\'\\'):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\r", "\\r").replace("\n", "\\n")
    return f'"{escaped}"'


class RedisConnectionTester:
    """Runs the step sequence over a single connection."""

    def __init__(self, dial_timeout: float = DIAL_TIMEOUT, read_timeout: float = READ_TIMEOUT):
        self.dial_timeout = dial_timeout
        self.read_timeout = read_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def _send(self, *args: str):
        line = " ".join(args) + "\r\n"
        self._writer.write(line.encode("utf-8"))
        await asyncio.wait_for(self._writer.drain(), timeout=self.read_timeout)

    async def _read_line(self) -> str:
        raw = await asyncio.wait_for(self._reader.readline(), timeout=self.read_timeout)
        if not raw:
            raise ConnectionError("connection closed by server")
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def _read_bulk(self) -> Optional[str]:
        """Read a GET reply: ``$<len>`` then the payload, ``$-1`` for nil"""
        header = await self._read_line()
        if not header.startswith("$"):
            raise ValueError(f"unexpected reply {header!r}")
        length = int(header[1:])
        if length < 0:
            return None
        payload = await asyncio.wait_for(self._reader.readexactly(length + 2), timeout=self.read_timeout)
        return payload[:-2].decode("utf-8", errors="replace")

    async def _command(self, *args: str) -> str:
        await self._send(*args)
        return await self._read_line()

    async def run(self, address: str, password: str = "", db: int = 0) -> RedisCheckReport:
        host, port = validate_target(address, db)
        report = RedisCheckReport(address=address.strip(), db=db)
        logger.info(f"Testing Redis connection to {report.address} (db {db})")

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.dial_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            reason = str(e) or type(e).__name__
            report.steps.append(ProtocolCheckStep("connect", StepOutcome.FAIL, (
                f"Connection failed: {reason}\n\n"
                f"Please check:\n"
                f"1. The Redis address is correct ({report.address})\n"
                f"2. The Redis service is running\n"
                f"3. Firewall settings\n"
                f"4. Network connectivity")))
            logger.warning(f"Redis connect to {report.address} failed: {reason}")
            return report
        report.steps.append(ProtocolCheckStep("connect", StepOutcome.PASS, "TCP connection established"))

        try:
            for step in (self._auth, self._select, self._ping, self._read_write):
                result = await step(report, password, db)
                report.steps.append(result)
                if not result.passed:
                    logger.warning(f"Redis check failed at {result.name}: {result.detail}")
                    break
        finally:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing Redis test connection: {e}")
            self._reader = self._writer = None

        if report.passed:
            logger.info(f"Redis connection test passed for {report.address}")
        return report

    async def _auth(self, report: RedisCheckReport, password: str, db: int) -> ProtocolCheckStep:
        try:
            response = await self._command("AUTH", quote_argument(password))
        except (OSError, asyncio.TimeoutError, ConnectionError) as e:
            return ProtocolCheckStep("auth", StepOutcome.FAIL, (
                f"No response to AUTH: {str(e) or type(e).__name__}\n\n"
                f"Possible causes:\n1. The Redis server is not responding\n2. Network problems"))

        if response.startswith("+OK"):
            report.auth_mode = "password" if password else "none"
            detail = "Password accepted" if password else "Authenticated (no password)"
            return ProtocolCheckStep("auth", StepOutcome.PASS, detail)

        if any(marker in response for marker in _NO_PASSWORD_MARKERS):
            if not password:
                report.auth_mode = "none"
                return ProtocolCheckStep("auth", StepOutcome.PASS, "Server has no password configured")
            return ProtocolCheckStep("auth", StepOutcome.FAIL, (
                "The Redis server has no password set, but a password was given.\n"
                "Clear the password field or configure a password on the server."))

        return ProtocolCheckStep("auth", StepOutcome.FAIL, (
            f"Authentication failed\n\nServer response: {response}\n\n"
            f"Check that the password matches the Redis server configuration."))

    async def _select(self, report: RedisCheckReport, password: str, db: int) -> ProtocolCheckStep:
        if db == 0:
            return ProtocolCheckStep("select", StepOutcome.PASS, "Using default database 0")
        try:
            response = await self._command("SELECT", str(db))
        except (OSError, asyncio.TimeoutError, ConnectionError) as e:
            return ProtocolCheckStep("select", StepOutcome.FAIL,
                                     f"Failed to read SELECT reply: {str(e) or type(e).__name__}")
        if response.startswith("+OK"):
            return ProtocolCheckStep("select", StepOutcome.PASS, f"Selected database {db}")
        return ProtocolCheckStep("select", StepOutcome.FAIL, (
            f"Database selection failed\n\nServer response: {response}\n\n"
            f"Check that database {db} is valid."))

    async def _ping(self, report: RedisCheckReport, password: str, db: int) -> ProtocolCheckStep:
        try:
            response = await self._command("PING")
        except (OSError, asyncio.TimeoutError, ConnectionError) as e:
            return ProtocolCheckStep("ping", StepOutcome.FAIL,
                                     f"Failed to read PING reply: {str(e) or type(e).__name__}")
        if response.startswith("+PONG"):
            return ProtocolCheckStep("ping", StepOutcome.PASS, "PING answered, server is responsive")
        return ProtocolCheckStep("ping", StepOutcome.FAIL,
                                 f"PING failed\n\nExpected: +PONG\nActual: {response}")

    async def _read_write(self, report: RedisCheckReport, password: str, db: int) -> ProtocolCheckStep:
        value = f"test_{int(time.time())}"
        report.written_value = value
        try:
            response = await self._command("SET", TEST_KEY, value)
            if not response.startswith("+OK"):
                return ProtocolCheckStep("read_write", StepOutcome.FAIL, f"SET failed\n\nResponse: {response}")
            await self._send("GET", TEST_KEY)
            report.echoed_value = await self._read_bulk()
        except (OSError, asyncio.TimeoutError, ConnectionError, asyncio.IncompleteReadError, ValueError) as e:
            return ProtocolCheckStep("read_write", StepOutcome.FAIL,
                                     f"Read/write test failed: {str(e) or type(e).__name__}")
        finally:
            await self._cleanup_key()

        if report.echoed_value == value:
            return ProtocolCheckStep("read_write", StepOutcome.PASS, "SET/GET round trip succeeded")
        return ProtocolCheckStep("read_write", StepOutcome.FAIL, (
            f"Read/write test failed\n\nExpected: {value}\nActual: {report.echoed_value}"))

    async def _cleanup_key(self):
        """DEL the test key; the reply is drained but not checked"""
        try:
            await self._command("DEL", TEST_KEY)
        except (OSError, asyncio.TimeoutError, ConnectionError) as e:
            logger.debug(f"Could not delete {TEST_KEY}: {e}")


def format_transcript(report: RedisCheckReport) -> str:
    """Render the report the way the launcher prints it"""
    lines: List[str] = []
    for index, name in enumerate(STEP_NAMES, start=1):
        if index > len(report.steps):
            break
        step = report.steps[index - 1]
        marker = "✅" if step.passed else "❌"
        lines.append(f"🔍 Step {index}: {_STEP_TITLES[name]}")
        lines.append(f"{marker} {step.detail}")
        lines.append("")

    if report.passed:
        lines.append("🎉 Redis connection test passed")
        lines.append(f"   Address:  {report.address}")
        lines.append(f"   Auth:     {'password' if report.auth_mode == 'password' else 'no password'}")
        lines.append(f"   Database: {report.db}")
        lines.append(f"   Written:  {report.written_value}")
        lines.append(f"   Read:     {report.echoed_value}")
    else:
        failed = report.failed_step
        lines.append(f"❌ Redis connection test failed at '{failed.name if failed else 'unknown'}'")
    return "\n".join(lines)
