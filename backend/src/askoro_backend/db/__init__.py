"""Database clients."""

from .postgres import ConnectionStore

__all__ = ["ConnectionStore"]
