"""First-run friendly JSON settings for the launcher."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class LauncherConfig:
    """Loads and saves the launcher's JSON configuration."""

    DEFAULT_PATH = Path(".devlauncher.json")

    def __init__(self, data: Optional[Dict[str, Any]] = None, path: Optional[Path] = None):
        self.path = path or self.DEFAULT_PATH
        self.data: Dict[str, Any] = self.default()
        if data:
            self.data.update({k: v for k, v in data.items() if v is not None})

    @staticmethod
    def default() -> Dict[str, Any]:
        return {
            "project_root": "",
            "backend_dir": "server",
            "frontend_dir": "web",
            "backend_command": ["go", "run", "main.go"],
            "frontend_command": ["npm", "run", "serve"],
            "readiness_timeout": 30,
            "service_log_dir": "logs",
            "log_level": "INFO",
        }

    @classmethod
    def load_or_create(cls, path: Optional[Path] = None) -> "LauncherConfig":
        path = path or cls.DEFAULT_PATH
        config: Dict[str, Any]
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    config = json.load(f)
            except (OSError, ValueError) as e:
                # Unreadable file: fall back to defaults but do not overwrite it
                logger.warning(f"Could not read {path}, using defaults: {e}")
                return cls(path=path)
        else:
            config = {}
        merged = cls(config, path=path)
        # Write back so missing keys show up in the file
        merged.save()
        return merged

    def save(self) -> bool:
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self.data, f, indent=2)
            return True
        except OSError as e:
            logger.warning(f"Could not save launcher config to {self.path}: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    @property
    def project_root(self) -> Optional[Path]:
        root = self.data.get("project_root")
        return Path(root) if root else None

    @project_root.setter
    def project_root(self, value: Optional[Path]):
        self.data["project_root"] = str(value) if value else ""

    @property
    def backend_command(self) -> List[str]:
        return list(self.data["backend_command"])

    @property
    def frontend_command(self) -> List[str]:
        return list(self.data["frontend_command"])

    @property
    def readiness_timeout(self) -> float:
        return float(self.data.get("readiness_timeout") or 30)

    @property
    def service_log_dir(self) -> Optional[Path]:
        """Where dev server output is appended; empty disables the log files"""
        value = self.data.get("service_log_dir")
        return Path(value) if value else None
