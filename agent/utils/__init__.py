"""
Utility functions for slot display and time parsing.
"""

from agent.utils.time_parsing import (
    ensure_timezone,
    extract_time_preferences,
    format_slot_display,
    parse_time_selection,
)

__all__ = [
    "ensure_timezone",
    "extract_time_preferences",
    "format_slot_display",
    "parse_time_selection",
]
