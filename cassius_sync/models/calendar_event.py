from pydantic import BaseModel, Field
from datetime import datetime, date, timezone
from typing import Optional, Dict, Any
from zoneinfo import ZoneInfo


def to_utc_naive(value: datetime, default_tz: str = 'UTC') -> datetime:
    """Normalise a datetime to naive UTC, the storage convention of the database."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo(default_tz))
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_google_time(value: Optional[Dict[str, Any]], default_tz: str = 'UTC'):
    """Parse a Google `start`/`end` object; returns (datetime, all_day)."""
    if not value:
        return None, False
    if value.get('dateTime'):
        raw = value['dateTime'].replace('Z', '+00:00')
        return to_utc_naive(datetime.fromisoformat(raw), value.get('timeZone') or default_tz), False
    if value.get('date'):
        day = date.fromisoformat(value['date'])
        return datetime(day.year, day.month, day.day), True
    return None, False


class ExternalEvent(BaseModel):
    """Provider-neutral view of one event on the external calendar"""
    id: Optional[str] = None
    summary: str = ''
    description: Optional[str] = None
    location: Optional[str] = None
    status: str = 'confirmed'
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    etag: Optional[str] = None
    updated: Optional[datetime] = None
    html_link: Optional[str] = None
    private_properties: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_google(cls, item: Dict[str, Any], default_tz: str = 'UTC') -> 'ExternalEvent':
        start, all_day = parse_google_time(item.get('start'), default_tz)
        end, _ = parse_google_time(item.get('end'), default_tz)
        updated = None
        if item.get('updated'):
            updated = to_utc_naive(datetime.fromisoformat(item['updated'].replace('Z', '+00:00')))
        return cls(
            id=item.get('id'),
            summary=item.get('summary') or '',
            description=item.get('description'),
            location=item.get('location'),
            status=item.get('status', 'confirmed'),
            start=start,
            end=end,
            all_day=all_day,
            etag=item.get('etag'),
            updated=updated,
            html_link=item.get('htmlLink'),
            private_properties=(item.get('extendedProperties') or {}).get('private') or {}
        )

    def has_marker(self, marker: str) -> bool:
        return self.summary.strip().startswith(marker)

    def to_dict(self):
        return {
            'id': self.id,
            'summary': self.summary,
            'status': self.status,
            'start': self.start.isoformat() if self.start else None,
            'end': self.end.isoformat() if self.end else None,
            'allDay': self.all_day,
            'etag': self.etag
        }
