"""Exception types shared across the launcher."""


class LauncherError(Exception):
    """Base class for launcher failures"""


class ProjectRootNotSet(LauncherError):
    """Raised when an operation needs the project root and none is configured"""

    def __init__(self, message: str = "Project root directory is not configured"):
        super().__init__(message)


class ToolchainError(LauncherError):
    """An external tool (go, npm, lsof, ...) is missing or failed"""


class ProjectConfigError(LauncherError):
    """A project settings file could not be read or written"""
