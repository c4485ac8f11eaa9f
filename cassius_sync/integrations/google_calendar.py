import json
import logging
import socket
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo

import httplib2
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from cassius_sync.errors import AppError, AuthExpiredError, RateLimitedError, CalendarTimeoutError, RetryableError
from cassius_sync.models.calendar_event import ExternalEvent

logger = logging.getLogger(__name__)

SCOPES = [
    'https://www.googleapis.com/auth/calendar.events',
    'https://www.googleapis.com/auth/calendar.readonly',
    'https://www.googleapis.com/auth/userinfo.email',
    'openid'
]
TOKEN_URI = 'https://oauth2.googleapis.com/token'
APPOINTMENT_PROPERTY = 'cassiusAppointmentId'
RATE_LIMIT_REASONS = {'rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded'}
GONE_STATUSES = (404, 410)

TYPE_LABELS = {
    'CONSULTATION': 'Consultation',
    'SUIVI': 'Suivi',
    'CHIRURGIE': 'Chirurgie',
    'CONTROLE': 'Contrôle',
    'URGENCE': 'Urgence',
    'AUTRE': 'Autre'
}


def render_summary(appointment, marker: str) -> str:
    """`[Cassius] CHIRURGIE - Martin Dupont`"""
    patient = appointment.patient
    name = patient.full_name if patient else appointment.title
    return f"{marker} {appointment.type} - {name}"


def build_event_body(appointment, marker: str, tz_name: str) -> Dict[str, Any]:
    """Google event body for an internal appointment"""
    start = appointment.date_start.replace(tzinfo=timezone.utc)
    end_naive = appointment.date_end or appointment.date_start + timedelta(hours=1)
    end = end_naive.replace(tzinfo=timezone.utc)
    lines = [
        "Rendez-vous Cassius",
        f"Type: {TYPE_LABELS.get(appointment.type, appointment.type)}"
    ]
    if appointment.patient:
        lines.append(f"Patient: {appointment.patient.full_name}")
    if appointment.description:
        lines.append("")
        lines.append(appointment.description)
    return {
        'summary': render_summary(appointment, marker),
        'description': "\n".join(lines),
        'start': {
            'dateTime': start.astimezone(ZoneInfo(tz_name)).isoformat(),
            'timeZone': tz_name,
        },
        'end': {
            'dateTime': end.astimezone(ZoneInfo(tz_name)).isoformat(),
            'timeZone': tz_name,
        },
        'extendedProperties': {
            'private': {APPOINTMENT_PROPERTY: appointment.id}
        }
    }


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        return value.isoformat() + 'Z'
    return value.isoformat()


def _error_reasons(error: HttpError) -> set:
    try:
        payload = json.loads(error.content.decode('utf-8'))
        return {item.get('reason') for item in payload.get('error', {}).get('errors', [])}
    except (ValueError, AttributeError, UnicodeDecodeError):
        return set()


def translate_http_error(error: HttpError) -> Exception:
    """Map a Google HttpError onto the sync error taxonomy"""
    status = error.resp.status
    if status == 401:
        return AuthExpiredError()
    if status == 429 or (status == 403 and _error_reasons(error) & RATE_LIMIT_REASONS):
        retry_after = error.resp.get('retry-after')
        try:
            retry_after = float(retry_after) if retry_after else None
        except ValueError:
            retry_after = None
        return RateLimitedError(retry_after=retry_after)
    if status >= 500:
        return AppError(f"Google Calendar unavailable ({status})", 502, 'GOOGLE_UNAVAILABLE')
    return AppError(f"Google Calendar API error ({status}): {error._get_reason()}", 502, 'GOOGLE_API')


class CalendarAdapter(ABC):
    """Talks to one tenant's external calendar; never mutates local state."""

    @abstractmethod
    def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> List[ExternalEvent]:
        ...

    @abstractmethod
    def upsert_event(self, calendar_id: str, appointment) -> str:
        """Create or update the event mirroring `appointment`; returns its external id."""

    @abstractmethod
    def delete_event(self, calendar_id: str, external_event_id: str) -> bool:
        ...

    @abstractmethod
    def list_calendars(self) -> List[Dict[str, Any]]:
        ...

    def refreshed_tokens(self) -> Optional[Dict[str, Any]]:
        return None


class GoogleCalendarClient(CalendarAdapter):
    def __init__(self, credentials: Credentials, marker: str = '[Cassius]', tz_name: str = 'Europe/Paris',
                 timeout: float = 20, service=None):
        self.credentials = credentials
        self.marker = marker
        self.tz_name = tz_name
        self._initial_token = credentials.token

        if service is None:
            http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
            service = build('calendar', 'v3', http=http, cache_discovery=False)
        self.service = service

    @classmethod
    def from_integration(cls, integration, config) -> 'GoogleCalendarClient':
        """Build a client from the tokens stored on a SyncIntegration"""
        if not integration.refresh_token and not integration.access_token:
            raise AuthExpiredError("Google Calendar not connected")
        credentials = Credentials(
            token=integration.access_token,
            refresh_token=integration.refresh_token,
            token_uri=TOKEN_URI,
            client_id=config.get('google.client_id'),
            client_secret=config.get('google.client_secret'),
            scopes=SCOPES,
            expiry=integration.token_expires_at
        )
        return cls(
            credentials,
            marker=config.get('google.event_marker', '[Cassius]'),
            tz_name=config.get('app.timezone', 'Europe/Paris'),
            timeout=config.get('google.request_timeout', 20)
        )

    def _execute(self, request, missing_ok: bool = False):
        try:
            return request.execute()
        except RefreshError as e:
            logger.warning(f"Google token refresh failed: {e}")
            raise AuthExpiredError() from e
        except HttpError as e:
            if missing_ok and e.resp.status in GONE_STATUSES:
                return None
            raise translate_http_error(e) from e
        # socket.timeout is only an alias of TimeoutError from Python 3.10
        except (TimeoutError, socket.timeout) as e:
            raise CalendarTimeoutError() from e
        except (httplib2.HttpLib2Error, OSError) as e:
            logger.warning(f"Google Calendar unreachable: {e}")
            raise RetryableError("Google Calendar unreachable", 503, 'UNREACHABLE') from e

    def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> List[ExternalEvent]:
        """Get events from a calendar, following pagination"""
        logger.info(f"Fetching events for calendar {calendar_id} from {time_min} to {time_max}")
        request = self.service.events().list(
            calendarId=calendar_id,
            timeMin=_rfc3339(time_min),
            timeMax=_rfc3339(time_max),
            singleEvents=True,
            maxResults=2500,
            orderBy='startTime'
        )

        events = []
        while request is not None:
            response = self._execute(request)
            events.extend(ExternalEvent.from_google(item, self.tz_name) for item in response.get('items', []))
            request = self.service.events().list_next(request, response)

        logger.info(f"Retrieved {len(events)} events from calendar {calendar_id}")
        return events

    def upsert_event(self, calendar_id: str, appointment) -> str:
        body = build_event_body(appointment, self.marker, self.tz_name)

        same_calendar = appointment.external_calendar_id in (None, calendar_id)
        if appointment.external_event_id and same_calendar:
            updated = self._execute(
                self.service.events().update(
                    calendarId=calendar_id,
                    eventId=appointment.external_event_id,
                    body=body
                ),
                missing_ok=True
            )
            if updated is not None:
                return updated['id']
            logger.info(f"Event {appointment.external_event_id} is gone, recreating it")

        created = self._execute(self.service.events().insert(calendarId=calendar_id, body=body))
        return created['id']

    def delete_event(self, calendar_id: str, external_event_id: str) -> bool:
        """Delete an event; an event that is already gone counts as deleted"""
        self._execute(
            self.service.events().delete(calendarId=calendar_id, eventId=external_event_id),
            missing_ok=True
        )
        return True

    def list_calendars(self) -> List[Dict[str, Any]]:
        calendars = []
        request = self.service.calendarList().list()
        while request is not None:
            response = self._execute(request)
            for item in response.get('items', []):
                calendars.append({
                    'id': item.get('id', ''),
                    'summary': item.get('summary') or 'Sans nom',
                    'primary': item.get('primary', False)
                })
            request = self.service.calendarList().list_next(request, response)
        return calendars

    def refreshed_tokens(self) -> Optional[Dict[str, Any]]:
        if self.credentials.token and self.credentials.token != self._initial_token:
            return {
                'access_token': self.credentials.token,
                'expires_at': self.credentials.expiry
            }
        return None
