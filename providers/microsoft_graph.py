"""Microsoft Graph (Outlook) calendar adapter."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from availability.models import Calendar, Event
from providers.base import CalendarProvider

logger = logging.getLogger(__name__)


class MicrosoftGraphProvider(CalendarProvider):
    """Adapter for the Microsoft Graph v1.0 calendar endpoints."""

    name = 'microsoft'
    BASE_URL = 'https://graph.microsoft.com/v1.0'
    TOKEN_URL = 'https://login.microsoftonline.com/common/oauth2/v2.0/token'
    SCOPES = [
        'https://graph.microsoft.com/Calendars.ReadWrite',
        'https://graph.microsoft.com/User.Read',
        'offline_access',
    ]

    # Graph throttles a mailbox above 4 concurrent requests
    max_concurrency = 4

    # Ask Graph to report every event time in UTC
    PREFER_UTC = {'Prefer': 'outlook.timezone="UTC"'}

    def list_calendars(self, access_token: str) -> List[Calendar]:
        payload = self._request('GET', f'{self.BASE_URL}/me/calendars', access_token)
        return [
            Calendar(
                account_id='',
                calendar_id=item['id'],
                name=item.get('name', item['id']),
                can_edit=bool(item.get('canEdit', False))
            )
            for item in payload.get('value', [])
        ]

    def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime
    ) -> List[Event]:
        """
        Fetch the calendar view (expanded occurrences), following nextLink pages.

        Args:
            access_token: OAuth access token
            calendar_id: Graph calendar id
            start: Window start
            end: Window end

        Returns:
            Busy events normalized into the provider zone
        """
        url = f'{self.BASE_URL}/me/calendars/{calendar_id}/calendarView'
        params = {
            'startDateTime': start.isoformat(),
            'endDateTime': end.isoformat(),
        }

        events = []
        while url:
            payload = self._request(
                'GET', url, access_token, params=params, headers=self.PREFER_UTC
            )
            events.extend(self._parse_events(calendar_id, payload.get('value', [])))

            # nextLink already carries the query string
            url = payload.get('@odata.nextLink')
            params = None

        logger.info(f"Fetched {len(events)} events from Microsoft calendar {calendar_id}")
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
            'subject': title,
            'start': self._graph_time(start),
            'end': self._graph_time(end),
        }
        self._request(
            'POST',
            f'{self.BASE_URL}/me/calendars/{calendar_id}/events',
            access_token,
            json=body
        )
        logger.info(f"Created Microsoft event '{title}' in calendar {calendar_id}")

    def _is_free(self, item: Dict[str, Any]) -> bool:
        return bool(item.get('isCancelled')) or item.get('showAs') == 'free'

    def _to_event(self, item: Dict[str, Any]) -> Event:
        start = item['start']
        end = item['end']
        return Event(
            id=item['id'],
            name=item.get('subject'),
            start=self._localize(start['dateTime'], start.get('timeZone')),
            end=self._localize(end['dateTime'], end.get('timeZone'))
        )

    @staticmethod
    def _graph_time(value: datetime) -> Dict[str, str]:
        utc = value.astimezone(timezone.utc)
        return {'dateTime': utc.strftime('%Y-%m-%dT%H:%M:%S'), 'timeZone': 'UTC'}
