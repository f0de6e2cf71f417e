"""Latchkey MCP: per-user browser profiles and remote task orchestration."""

__version__ = "0.1.0"

__all__ = ["__version__"]
