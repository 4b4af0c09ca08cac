"""
Repository subpackage for the calendar source gate.
"""

from .allowlist_repository import AllowlistRepository
from .source_repository import CalendarSourceRepository

__all__ = ["AllowlistRepository", "CalendarSourceRepository"]
