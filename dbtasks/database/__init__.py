"""Database configuration, setup and migrations."""

from .config import DatabaseConfig

__all__ = ['DatabaseConfig']
