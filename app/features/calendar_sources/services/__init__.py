"""
Service layer for the calendar sources feature.
"""

from .registration_service import CalendarSourceService, get_display_url
from .review_service import AllowlistReviewService

__all__ = ["AllowlistReviewService", "CalendarSourceService", "get_display_url"]
