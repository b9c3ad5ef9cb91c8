"""
Agent services module.

Services:
- hold_lifecycle: tentative consult holds (start, refresh, warn, release, promote)
- assignment_service: offerable slots and fairness-ranked provider/interpreter booking
- calendar_sync_service: mirrors cancel/reschedule onto sibling appointments
- pipeline_service: monotonic sales-pipeline stage transitions
- deposit_service: deposit links and the deposit-paid transition
"""

from agent.services.assignment_service import (
    AssignmentConfigError,
    BookingEngine,
    SlotUnavailableError,
)
from agent.services.calendar_sync_service import CalendarSyncService
from agent.services.deposit_service import ensure_deposit_link, handle_deposit_paid
from agent.services.hold_lifecycle import HoldLifecycleManager
from agent.services.pipeline_service import PipelineManager, PipelineStage

__all__ = [
    # Booking
    "AssignmentConfigError",
    "BookingEngine",
    "SlotUnavailableError",
    # Holds and deposits
    "HoldLifecycleManager",
    "ensure_deposit_link",
    "handle_deposit_paid",
    # Sync and pipeline
    "CalendarSyncService",
    "PipelineManager",
    "PipelineStage",
]
