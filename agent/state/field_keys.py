"""
Well-known field store keys.

The CRM owns the storage; this module only names the subset of keys the
engine reads and writes. Values are strings or boolean-like strings.
"""

# Lead profile
TATTOO_SUMMARY = "tattoo_summary"
TATTOO_PLACEMENT = "tattoo_placement"
TATTOO_SIZE = "size_of_tattoo"
TATTOO_STYLE = "tattoo_style"
TIMELINE = "how_soon_is_client_deciding"
LANGUAGE_PREFERENCE = "language_preference"
INQUIRED_TECHNICIAN = "inquired_technician"

# Client history
RETURNING_CLIENT = "returning_client"
TOTAL_TATTOOS_COMPLETED = "total_tattoos_completed"
CLIENT_LIFETIME_VALUE = "client_lifetime_value"

# Consult path
CONSULTATION_TYPE = "consultation_type"
CONSULTATION_TYPE_LOCKED = "consultation_type_locked"
CONSULT_EXPLAINED = "consult_explained"

# Interpreter
TRANSLATOR_NEEDED = "translator_needed"
TRANSLATOR_CONFIRMED = "translator_confirmed"
TRANSLATOR_EXPLAINED = "translator_explained"
LANGUAGE_BARRIER_EXPLAINED = "language_barrier_explained"

# Money
DEPOSIT_LINK_SENT = "deposit_link_sent"
DEPOSIT_PAID = "deposit_paid"
DEPOSIT_LINK_URL = "deposit_link_url"
DEPOSIT_PAYMENT_ID = "deposit_payment_id"

# Hold
HOLD_APPOINTMENT_ID = "hold_appointment_id"
HOLD_INTERPRETER_APPOINTMENT_ID = "hold_interpreter_appointment_id"
HOLD_CALENDAR_ID = "hold_calendar_id"
HOLD_SLOT_DISPLAY = "hold_slot_display"
HOLD_CREATED_AT = "hold_created_at"
HOLD_LAST_ACTIVITY_AT = "hold_last_activity_at"
HOLD_WARNING_SENT = "hold_warning_sent"
RELEASED_SLOT_DISPLAY = "released_slot_display"
RELEASED_SLOT_CALENDAR_ID = "released_slot_calendar_id"

# Confirmed booking and outcomes
CONSULT_APPOINTMENT_ID = "consult_appointment_id"
APPOINTMENT_ID = "appointment_id"
TATTOO_BOOKED = "tattoo_booked"
TATTOO_COMPLETED = "tattoo_completed"
LEAD_LOST = "cold_nurture_lost"

# Scheduling
TIMES_SENT = "times_sent"
LAST_SENT_SLOTS = "last_sent_slots"
LAST_SEEN_SNAPSHOT = "last_seen_fields_snapshot"

# Pipeline
OPPORTUNITY_ID = "opportunity_id"
OPPORTUNITY_STAGE = "opportunity_stage"

# Sentinel size meaning "the artist will size it at the consult"
ARTIST_GUIDED_SIZE = "artist_guided"

CLEARED_HOLD_FIELDS = {
    HOLD_APPOINTMENT_ID: None,
    HOLD_INTERPRETER_APPOINTMENT_ID: None,
    HOLD_CALENDAR_ID: None,
    HOLD_SLOT_DISPLAY: None,
    HOLD_CREATED_AT: None,
    HOLD_LAST_ACTIVITY_AT: None,
    HOLD_WARNING_SENT: False,
}
