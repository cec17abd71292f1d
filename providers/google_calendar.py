"""Google Calendar v3 adapter."""
import logging
from datetime import date, datetime, time
from typing import Any, Dict, List

from availability.models import Calendar, Event
from providers.base import CalendarProvider

logger = logging.getLogger(__name__)


class GoogleCalendarProvider(CalendarProvider):
    """Adapter for the Google Calendar REST API."""

    name = 'google'
    BASE_URL = 'https://www.googleapis.com/calendar/v3'
    TOKEN_URL = 'https://oauth2.googleapis.com/token'

    def list_calendars(self, access_token: str) -> List[Calendar]:
        payload = self._request(
            'GET', f'{self.BASE_URL}/users/me/calendarList', access_token
        )
        return [
            Calendar(
                account_id='',
                calendar_id=item['id'],
                name=item.get('summary', item['id']),
                can_edit=item.get('accessRole') in ('owner', 'writer')
            )
            for item in payload.get('items', [])
        ]

    def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime
    ) -> List[Event]:
        """
        Fetch single (expanded) events, following pagination.

        Args:
            access_token: OAuth access token
            calendar_id: Google calendar id
            start: Window start
            end: Window end

        Returns:
            Busy events normalized into the provider zone
        """
        url = f'{self.BASE_URL}/calendars/{calendar_id}/events'
        params = {
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'timeMin': start.isoformat(),
            'timeMax': end.isoformat(),
        }

        events = []
        while True:
            payload = self._request('GET', url, access_token, params=params)
            events.extend(self._parse_events(calendar_id, payload.get('items', [])))

            page_token = payload.get('nextPageToken')
            if not page_token:
                break
            params = {**params, 'pageToken': page_token}

        logger.info(f"Fetched {len(events)} events from Google calendar {calendar_id}")
        return events

    def create_event(
        self,
        access_token: str,
        calendar_id: str,
        title: str,
        start: datetime,
        end: datetime
    ) -> None:
        body = {
            'summary': title,
            'start': {'dateTime': start.isoformat()},
            'end': {'dateTime': end.isoformat()},
        }
        self._request(
            'POST',
            f'{self.BASE_URL}/calendars/{calendar_id}/events',
            access_token,
            json=body
        )
        logger.info(f"Created Google event '{title}' in calendar {calendar_id}")

    def _is_free(self, item: Dict[str, Any]) -> bool:
        return (
            item.get('status') == 'cancelled'
            or item.get('transparency') == 'transparent'
        )

    def _to_event(self, item: Dict[str, Any]) -> Event:
        return Event(
            id=item['id'],
            name=item.get('summary'),
            start=self._parse_time(item['start']),
            end=self._parse_time(item['end'])
        )

    def _parse_time(self, value: Dict[str, Any]) -> datetime:
        """All-day events carry a bare date and span local midnights."""
        if 'dateTime' in value:
            return self._localize(value['dateTime'], value.get('timeZone'))
        day = date.fromisoformat(value['date'])
        return datetime.combine(day, time.min, tzinfo=self.tz)
