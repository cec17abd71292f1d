"""Calendar provider capability shared by every platform adapter."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from dateutil import parser as date_parser

from availability.models import Calendar, Event

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider call failed (network, status code or payload)."""


class AuthenticationError(ProviderError):
    """An account's refresh token could not be exchanged for an access token."""


@dataclass(frozen=True)
class TokenGrant:
    """Access token obtained from a refresh, plus a rotated refresh token if any."""
    access_token: str
    refresh_token: Optional[str] = None


class CalendarProvider(ABC):
    """Base class for calendar platform adapters."""

    name = ''
    TOKEN_URL = ''
    SCOPES: List[str] = []

    # Simultaneous requests the platform tolerates; None means unbounded
    max_concurrency: Optional[int] = None

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        tz: tzinfo,
        timeout: int = 30,
        max_concurrency: Optional[int] = None
    ):
        """
        Initialize the provider adapter.

        Args:
            client_id: OAuth client id registered with the platform
            client_secret: OAuth client secret
            tz: Zone events are normalized into
            timeout: HTTP request timeout in seconds (default: 30)
            max_concurrency: Override of the platform's request ceiling
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.tz = tz
        self.timeout = timeout
        if max_concurrency is not None:
            self.max_concurrency = max_concurrency

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for an access token.

        Raises:
            AuthenticationError: If the token endpoint rejects the exchange
        """
        data = {
            'grant_type': 'refresh_token',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh_token,
        }
        if self.SCOPES:
            data['scope'] = ' '.join(self.SCOPES)

        try:
            response = requests.post(self.TOKEN_URL, data=data, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
            access_token = payload['access_token']
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error(f"Token refresh failed for {self.name}: {e}")
            raise AuthenticationError(f"{self.name} token refresh failed: {e}")

        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get('refresh_token')
        )

    @abstractmethod
    def list_calendars(self, access_token: str) -> List[Calendar]:
        """List calendars visible to the account."""

    @abstractmethod
    def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime
    ) -> List[Event]:
        """Fetch busy events of one calendar in [start, end)."""

    @abstractmethod
    def create_event(
        self,
        access_token: str,
        calendar_id: str,
        title: str,
        start: datetime,
        end: datetime
    ) -> None:
        """Create an event on one calendar."""

    def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Issue an authorized API request and decode the JSON body.

        Raises:
            ProviderError: On network failure, non-2xx status or a body that
                is not a JSON object
        """
        request_headers = {'Authorization': f'Bearer {access_token}'}
        if headers:
            request_headers.update(headers)

        try:
            response = requests.request(
                method,
                url,
                params=params,
                json=json,
                headers=request_headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise ProviderError(f"{self.name} request to {url} failed: {e}")
        except ValueError as e:
            raise ProviderError(f"{self.name} returned malformed JSON from {url}: {e}")

        if not isinstance(payload, dict):
            raise ProviderError(f"{self.name} returned unexpected payload from {url}")
        if 'error' in payload:
            raise ProviderError(f"{self.name} error from {url}: {payload['error']}")
        return payload

    def _parse_events(self, calendar_id: str, items: List[Dict[str, Any]]) -> List[Event]:
        """
        Convert raw items to events.

        Raises:
            ProviderError: If an item cannot be converted
        """
        events = []
        for item in items:
            if self._is_free(item):
                continue
            try:
                events.append(self._to_event(item))
            except (KeyError, TypeError, ValueError) as e:
                raise ProviderError(
                    f"Malformed {self.name} event in calendar {calendar_id}: {e}"
                )
        return events

    def _is_free(self, item: Dict[str, Any]) -> bool:
        return False

    def _localize(self, timestamp: str, zone_name: Optional[str] = None) -> datetime:
        """
        Parse an ISO-8601 timestamp into the provider zone.

        Timestamps without an offset are read in `zone_name` when it names a
        known zone, else in UTC.
        """
        parsed = date_parser.isoparse(timestamp)
        if parsed.tzinfo is None:
            try:
                zone = ZoneInfo(zone_name) if zone_name else timezone.utc
            except (ZoneInfoNotFoundError, ValueError):
                zone = timezone.utc
            parsed = parsed.replace(tzinfo=zone)
        return parsed.astimezone(self.tz)

    @abstractmethod
    def _to_event(self, item: Dict[str, Any]) -> Event:
        """Convert one raw item into an Event."""
