"""
Job runners for the calendar sources feature.
"""

from .sync_job import (
    CalendarSyncJob,
    calendar_sync_job,
    run_calendar_sync_job,
    start_calendar_sync_scheduler,
)

__all__ = [
    "CalendarSyncJob",
    "calendar_sync_job",
    "run_calendar_sync_job",
    "start_calendar_sync_scheduler",
]
