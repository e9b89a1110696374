from __future__ import annotations

"""
Message catalog for chat-facing text.
"""

MESSAGES = {
    # Reminders
    "reminder_line": "⏰ {title}: {label} (starts {start})",
    "reminder_line_location": "⏰ {title}: {label} (starts {start}, {location})",
    "btn_dismiss": "Dismiss",
    # Callback toasts
    "cb_dismissed": "Dismissed. This reminder will not show again.",
    "cb_unknown": "This reminder is no longer tracked.",
    # Sync
    "sync_summary": "Calendar sync: {ok} synced, {errors} failed.",
    "sync_error_line": "• {calendar}: {error}",
    # Lifecycle
    "startup_greeting": "Calendar reminders are running.",
    "engine_restarted": "Reminder engine restarted after repeated errors.",
}


def fmt(key: str, **kwargs) -> str:
    return MESSAGES[key].format(**kwargs)
