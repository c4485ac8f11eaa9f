from .google_calendar import CalendarAdapter, GoogleCalendarClient, build_event_body, render_summary
from .oauth import GoogleOAuth, generate_state, verify_state
from .retry import Backoff

__all__ = [
    'CalendarAdapter', 'GoogleCalendarClient', 'build_event_body', 'render_summary',
    'GoogleOAuth', 'generate_state', 'verify_state', 'Backoff'
]
