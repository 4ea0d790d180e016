# src/coldarchive/__init__.py
from __future__ import annotations

__version__ = "0.3.0"

from .errors import ColdArchiveError

__all__ = ["__version__", "ColdArchiveError"]
