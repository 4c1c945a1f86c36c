"""Core configuration."""

from .config import AppConfig

__all__ = ["AppConfig"]
