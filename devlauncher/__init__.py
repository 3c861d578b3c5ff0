"""Local dev-stack launcher: service supervision, dependency checks, Redis connection test."""

__version__ = "1.0.0"
