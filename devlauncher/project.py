"""
Project Files
=============

Reads and writes the settings of the managed project:

- ``server/config.yaml``: backend port (``system.addr``), ``system.use-redis``
  and the ``redis`` block
- ``web/.env.development`` / ``web/.env``: frontend dev server port and the
  backend port the frontend proxies to
- ``server/go.mod``: backend module path and pinned dependencies
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ProjectConfigError, ProjectRootNotSet

logger = logging.getLogger(__name__)

DEFAULT_FRONTEND_PORT = 8080
DEFAULT_BACKEND_PORT = 8888

ENV_DEV_TEMPLATE = """# Frontend development settings
VITE_CLI_PORT={frontend_port}
VITE_SERVER_PORT={backend_port}
VITE_BASE_PATH=http://127.0.0.1
VITE_BASE_API=/api
"""


@dataclass
class RedisSettings:
    use_redis: bool = False
    addr: str = ""
    password: str = ""
    db: int = 0


def _set_env_key(lines: List[str], keys: List[str], value: int, fallback_key: str) -> List[str]:
    """Replace the first line assigning any of ``keys``, else append ``fallback_key``"""
    for i, line in enumerate(lines):
        stripped = line.strip()
        for key in keys:
            if stripped.startswith(f"{key}="):
                lines[i] = f"{key}={value}"
                return lines
    lines.append(f"{fallback_key}={value}")
    return lines


def _read_env_int(path: Path, keys: List[str]) -> Optional[int]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        line = line.strip()
        for key in keys:
            if line.startswith(f"{key}="):
                try:
                    port = int(line[len(key) + 1:].strip())
                except ValueError:
                    continue
                if port > 0:
                    return port
    return None


class ProjectFiles:
    """Accessor for the backend/frontend settings files under the project root."""

    def __init__(self, root: Optional[Path], backend_dir: str = "server", frontend_dir: str = "web"):
        self.root = Path(root) if root else None
        self.backend_dir_name = backend_dir
        self.frontend_dir_name = frontend_dir

    def require_root(self) -> Path:
        if self.root is None:
            raise ProjectRootNotSet()
        return self.root

    @property
    def backend_dir(self) -> Path:
        return self.require_root() / self.backend_dir_name

    @property
    def frontend_dir(self) -> Path:
        return self.require_root() / self.frontend_dir_name

    @property
    def config_yaml(self) -> Path:
        return self.backend_dir / "config.yaml"

    @property
    def go_mod(self) -> Path:
        return self.backend_dir / "go.mod"

    @property
    def go_sum(self) -> Path:
        return self.backend_dir / "go.sum"

    @property
    def package_json(self) -> Path:
        return self.frontend_dir / "package.json"

    @property
    def node_modules(self) -> Path:
        return self.frontend_dir / "node_modules"

    # ------------------------------------------------------------------
    # Backend config.yaml
    # ------------------------------------------------------------------

    def read_backend_config(self) -> Dict[str, Any]:
        try:
            with open(self.config_yaml, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ProjectConfigError(f"Failed to read {self.config_yaml}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ProjectConfigError(f"{self.config_yaml} does not contain a mapping")
        return data

    def write_backend_config(self, data: Dict[str, Any]):
        try:
            with open(self.config_yaml, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        except (OSError, yaml.YAMLError) as e:
            raise ProjectConfigError(f"Failed to write {self.config_yaml}: {e}") from e

    def backend_port(self) -> int:
        """Configured backend port, 0 when unknown"""
        if self.root is None:
            return 0
        try:
            system = self.read_backend_config().get("system")
        except ProjectConfigError as e:
            logger.debug(str(e))
            return 0
        if not isinstance(system, dict):
            return 0
        try:
            port = int(system.get("addr") or 0)
        except (TypeError, ValueError):
            return 0
        return port if port > 0 else 0

    def write_backend_port(self, port: int):
        """Update system.addr and point the frontend proxy at the new port"""
        data = self.read_backend_config()
        system = data.get("system")
        if isinstance(system, dict):
            system["addr"] = port
        else:
            data["system"] = {"addr": port}
        self.write_backend_config(data)
        self.write_frontend_backend_port(port)

    def read_redis_settings(self) -> RedisSettings:
        data = self.read_backend_config()
        system = data.get("system")
        if not isinstance(system, dict):
            system = {}
        redis = data.get("redis")
        if not isinstance(redis, dict):
            redis = {}
        try:
            db = int(redis.get("db") or 0)
        except (TypeError, ValueError):
            db = 0
        return RedisSettings(
            use_redis=bool(system.get("use-redis", False)),
            addr=str(redis.get("addr") or ""),
            password=str(redis.get("password") or ""),
            db=db,
        )

    def write_redis_settings(self, settings: RedisSettings):
        if not 0 <= settings.db <= 15:
            raise ValueError("Database index must be between 0 and 15")
        data = self.read_backend_config()
        system = data.get("system")
        if not isinstance(system, dict):
            system = data["system"] = {}
        system["use-redis"] = settings.use_redis
        redis = data.get("redis")
        if not isinstance(redis, dict):
            redis = data["redis"] = {}
        redis["addr"] = settings.addr.strip()
        redis["password"] = settings.password
        redis["db"] = settings.db
        self.write_backend_config(data)

    # ------------------------------------------------------------------
    # Frontend env files
    # ------------------------------------------------------------------

    def frontend_port(self) -> int:
        """Resolve the dev server port from the frontend's settings files"""
        if self.root is None:
            return DEFAULT_FRONTEND_PORT
        web = self.frontend_dir

        port = _read_env_int(web / ".env.development", ["VITE_CLI_PORT"])
        if port:
            return port

        port = _read_env_int(web / ".env", ["PORT", "VUE_APP_PORT"])
        if port:
            return port

        try:
            content = (web / "vue.config.js").read_text(encoding="utf-8")
        except OSError:
            content = ""
        if "devServer" in content:
            match = re.search(r"\bport\s*:\s*(\d+)", content)
            if match and int(match.group(1)) > 0:
                return int(match.group(1))

        try:
            package = json.loads((web / "package.json").read_text(encoding="utf-8"))
        except (OSError, ValueError):
            package = {}
        scripts = package.get("scripts") if isinstance(package, dict) else None
        serve = scripts.get("serve") if isinstance(scripts, dict) else None
        if isinstance(serve, str):
            parts = serve.split()
            for i, part in enumerate(parts[:-1]):
                if part == "--port" and parts[i + 1].isdigit():
                    return int(parts[i + 1])

        return DEFAULT_FRONTEND_PORT

    def _rewrite_env(self, path: Path, keys: List[str], value: int, fallback_key: str):
        try:
            lines = path.read_text(encoding="utf-8").split("\n")
            path.write_text("\n".join(_set_env_key(lines, keys, value, fallback_key)), encoding="utf-8")
        except OSError as e:
            raise ProjectConfigError(f"Failed to update {path}: {e}") from e

    def write_frontend_port(self, port: int):
        env = self.frontend_dir / ".env"
        if env.exists():
            self._rewrite_env(env, ["PORT", "VUE_APP_PORT"], port, "PORT")
        env_dev = self.frontend_dir / ".env.development"
        if env_dev.exists():
            self._rewrite_env(env_dev, ["VITE_CLI_PORT"], port, "VITE_CLI_PORT")
        else:
            self._create_env_dev(frontend_port=port, backend_port=DEFAULT_BACKEND_PORT)

    def write_frontend_backend_port(self, backend_port: int):
        env_dev = self.frontend_dir / ".env.development"
        if env_dev.exists():
            self._rewrite_env(env_dev, ["VITE_SERVER_PORT"], backend_port, "VITE_SERVER_PORT")
        else:
            self._create_env_dev(frontend_port=DEFAULT_FRONTEND_PORT, backend_port=backend_port)

    def _create_env_dev(self, frontend_port: int, backend_port: int):
        path = self.frontend_dir / ".env.development"
        try:
            path.write_text(ENV_DEV_TEMPLATE.format(frontend_port=frontend_port, backend_port=backend_port),
                            encoding="utf-8")
        except OSError as e:
            raise ProjectConfigError(f"Failed to create {path}: {e}") from e

    # ------------------------------------------------------------------
    # go.mod
    # ------------------------------------------------------------------

    def read_go_mod(self) -> str:
        try:
            return self.go_mod.read_text(encoding="utf-8")
        except OSError as e:
            raise ProjectConfigError(f"Cannot read {self.go_mod}: {e}") from e
