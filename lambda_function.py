"""AWS Lambda handler for multi-calendar availability search."""
import json
import logging
import os
import time
import uuid
from datetime import datetime, timedelta, tzinfo
from typing import Any, Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from availability.finder import AvailabilityFinder
from availability.models import Account, Availability, ConfigurationError, SearchConfig
from availability.parsing import parse_date, parse_flag, parse_span, parse_time_of_day
from availability.windows import format_availability, merge_overlapping, split_availability
from providers.base import AuthenticationError, CalendarProvider
from providers.google_calendar import GoogleCalendarProvider
from providers.microsoft_graph import MicrosoftGraphProvider
from retrieval.orchestrator import RetrievalOrchestrator
from storage.account_store import AccountStore

logger = logging.getLogger(__name__)


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def _error_response(
    status_code: int,
    message: str,
    error: Exception,
    start_time: float
) -> Dict[str, Any]:
    return _response(status_code, {
        'message': message,
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': round(time.time() - start_time, 2)
    })


def load_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown time zone: {name!r}")


def build_providers(tz: tzinfo, timeout: int) -> Dict[str, CalendarProvider]:
    """Instantiate one adapter per supported platform from the environment."""
    microsoft_limit = os.environ.get('MICROSOFT_MAX_CONCURRENCY')
    return {
        GoogleCalendarProvider.name: GoogleCalendarProvider(
            client_id=os.environ.get('GOOGLE_CLIENT_ID', ''),
            client_secret=os.environ.get('GOOGLE_CLIENT_SECRET', ''),
            tz=tz,
            timeout=timeout
        ),
        MicrosoftGraphProvider.name: MicrosoftGraphProvider(
            client_id=os.environ.get('MICROSOFT_CLIENT_ID', ''),
            client_secret=os.environ.get('MICROSOFT_CLIENT_SECRET', ''),
            tz=tz,
            timeout=timeout,
            max_concurrency=int(microsoft_limit) if microsoft_limit else None
        ),
    }


def build_search_config(event: Dict[str, Any], tz: tzinfo) -> SearchConfig:
    """
    Build the search configuration from the request, falling back to defaults.

    Args:
        event: Request payload with optional start, end, window, min, max,
            duration and include_weekends keys
        tz: Zone of the search

    Returns:
        Validated SearchConfig

    Raises:
        ConfigurationError: If a value cannot be parsed or the window is invalid
    """
    if event.get('start'):
        start = parse_date(event['start'], tz)
    else:
        start = datetime.now(tz)

    if event.get('end'):
        end = parse_date(event['end'], tz)
    else:
        window = parse_span(event.get('window') or os.environ.get('DEFAULT_WINDOW', '1w'))
        end = start + window

    return SearchConfig(
        start=start,
        end=end,
        min_time=parse_time_of_day(
            event.get('min') or os.environ.get('DEFAULT_MIN_TIME', '9:00am')
        ),
        max_time=parse_time_of_day(
            event.get('max') or os.environ.get('DEFAULT_MAX_TIME', '5:00pm')
        ),
        duration=_duration(event),
        include_weekends=parse_flag(
            event.get('include_weekends', False), 'include_weekends'
        ),
        tz=tz
    )


def _duration(event: Dict[str, Any]) -> timedelta:
    return parse_span(event.get('duration') or os.environ.get('DEFAULT_DURATION', '30m'))


def _parse_windows(raw_windows: Any, tz: tzinfo) -> List[Availability]:
    if not isinstance(raw_windows, list) or not raw_windows:
        raise ConfigurationError("'windows' must be a non-empty list")

    windows = []
    for raw in raw_windows:
        try:
            windows.append(
                Availability(start=parse_date(raw['start'], tz), end=parse_date(raw['end'], tz))
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid window {raw!r}: {e}")
    return sorted(windows)


def _orchestrator(store: AccountStore, tz: tzinfo) -> RetrievalOrchestrator:
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))
    max_workers = os.environ.get('MAX_WORKERS')
    return RetrievalOrchestrator(
        providers=build_providers(tz, timeout_seconds),
        max_workers=int(max_workers) if max_workers else None,
        on_token_rotated=lambda account, token: store.update_refresh_token(
            account.account_id, token
        )
    )


def find_availability(event: Dict[str, Any], tz: tzinfo, start_time: float) -> Dict[str, Any]:
    """Retrieve events of every query-selected calendar and compute free windows."""
    config = build_search_config(event, tz)

    store = AccountStore(table_name=os.environ.get('TABLE_NAME', 'avail-accounts'))
    accounts = store.get_accounts()
    if not accounts:
        return _response(400, {
            'message': 'No linked accounts. Link an account and select calendars first.'
        })

    selections = [
        (account, store.get_query_calendar_ids(account.account_id))
        for account in accounts
    ]

    logger.info(
        f"Finding availability between {config.start.isoformat()} "
        f"and {config.end.isoformat()}",
        extra={'accounts': len(accounts)}
    )
    retrieval = _orchestrator(store, tz).fetch_events(selections, config.start, config.end)

    days = AvailabilityFinder(config).find(retrieval.events)
    windows = [window for day in days for window in day.windows]

    logger.info(f"Computed {len(windows)} windows across {len(days)} days")

    return _response(200, {
        'message': 'Availability computed',
        'days': [day.to_dict() for day in days],
        'windows': [window.to_dict() for window in windows],
        'summary': format_availability(windows),
        'failures': [failure.to_dict() for failure in retrieval.failures],
        'statistics': {
            'events_retrieved': len(retrieval.events),
            'calendars_failed': len(retrieval.failures),
            'windows_found': len(windows),
            'duration_seconds': round(time.time() - start_time, 2)
        }
    })


def split_windows(event: Dict[str, Any], tz: tzinfo) -> Dict[str, Any]:
    """Split coarse windows into fixed-length slots for finer selection."""
    windows = _parse_windows(event.get('windows'), tz)
    slots = split_availability(windows, _duration(event))
    return _response(200, {
        'message': 'Windows split',
        'slots': [slot.to_dict() for slot in slots]
    })


def create_holds(event: Dict[str, Any], tz: tzinfo, start_time: float) -> Dict[str, Any]:
    """Merge the selected slots and place hold events on the edit-selected calendar."""
    title = (event.get('title') or '').strip()
    if not title:
        raise ConfigurationError("'title' is required to create hold events")
    merged = merge_overlapping(_parse_windows(event.get('windows'), tz))

    store = AccountStore(table_name=os.environ.get('TABLE_NAME', 'avail-accounts'))
    target = store.get_hold_event_calendar()
    if target is None:
        return _response(400, {
            'message': 'No calendar is configured to be used for hold events.'
        })
    account, calendar = target

    result = _orchestrator(store, tz).create_hold_events(
        account, calendar.calendar_id, title, merged
    )

    body = {
        'message': 'Hold events created' if not result.errors
        else 'Failed to create some hold events',
        'calendar': calendar.name,
        'windows': [window.to_dict() for window in merged],
        'summary': format_availability(merged),
        'created': result.created,
        'errors': result.errors,
        'duration_seconds': round(time.time() - start_time, 2)
    }
    return _response(200 if not result.errors else 502, body)


def sync_calendars(tz: tzinfo) -> Dict[str, Any]:
    """Refresh the cached calendar list of every account, keeping selections."""
    store = AccountStore(table_name=os.environ.get('TABLE_NAME', 'avail-accounts'))
    orchestrator = _orchestrator(store, tz)

    synced = {}
    for account in store.get_accounts():
        previous = {
            calendar.calendar_id: calendar
            for calendar in store.get_calendars(account.account_id)
        }
        calendars = orchestrator.list_calendars(account)
        for calendar in calendars:
            if calendar.calendar_id in previous:
                calendar.query_selected = previous[calendar.calendar_id].query_selected
                calendar.edit_selected = previous[calendar.calendar_id].edit_selected
        synced[account.email] = store.replace_calendars(account.account_id, calendars)

    return _response(200, {'message': 'Calendars synchronized', 'calendars': synced})


def add_account(event: Dict[str, Any], tz: tzinfo) -> Dict[str, Any]:
    """
    Link an account from an already obtained refresh token.

    The token is exchanged and the calendar list fetched before anything is
    stored, so an unusable token never leaves a half-linked account.
    """
    email = (event.get('email') or '').strip()
    platform = (event.get('platform') or '').strip().lower()
    refresh_token = event.get('refresh_token') or ''
    if not email or not refresh_token:
        raise ConfigurationError("'email' and 'refresh_token' are required")
    if platform not in (GoogleCalendarProvider.name, MicrosoftGraphProvider.name):
        raise ConfigurationError(f"Unsupported platform: {platform!r}")

    store = AccountStore(table_name=os.environ.get('TABLE_NAME', 'avail-accounts'))
    account = Account(
        account_id=uuid.uuid4().hex,
        email=email,
        platform=platform,
        refresh_token=refresh_token
    )
    calendars = _orchestrator(store, tz).list_calendars(account)

    try:
        store.add_account(account)
    except ValueError as e:
        return _response(409, {'message': str(e)})
    written = store.replace_calendars(account.account_id, calendars)

    logger.info(f"Linked {platform} account {email} with {written} calendars")
    return _response(200, {
        'message': 'Account linked',
        'account_id': account.account_id,
        'calendars': [calendar.to_dict() for calendar in calendars]
    })


def list_accounts() -> Dict[str, Any]:
    """Linked accounts with their calendars and selection flags."""
    store = AccountStore(table_name=os.environ.get('TABLE_NAME', 'avail-accounts'))
    accounts = [
        {
            'account_id': account.account_id,
            'email': account.email,
            'platform': account.platform,
            'calendars': [
                calendar.to_dict()
                for calendar in store.get_calendars(account.account_id)
            ]
        }
        for account in store.get_accounts()
    ]
    return _response(200, {'accounts': accounts})


def remove_account(event: Dict[str, Any]) -> Dict[str, Any]:
    account_id = event.get('account_id')
    if not account_id:
        raise ConfigurationError("'account_id' is required")

    store = AccountStore(table_name=os.environ.get('TABLE_NAME', 'avail-accounts'))
    account = store.get_account(account_id)
    if account is None:
        return _response(404, {'message': f'No account with id {account_id}'})

    deleted = store.remove_account(account_id)
    return _response(200, {
        'message': f'Removed account {account.email}',
        'deleted_records': deleted
    })


def select_calendars(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Choose which calendars of an account are searched and, optionally, the
    calendar hold events are written to.

    Args:
        event: Request payload with `account_id`, and `query_calendars`
            (list of ids) and/or `hold_calendar` (one id)
    """
    account_id = event.get('account_id')
    query_ids = event.get('query_calendars')
    hold_id = event.get('hold_calendar')
    if not account_id:
        raise ConfigurationError("'account_id' is required")
    if query_ids is None and hold_id is None:
        raise ConfigurationError("Give 'query_calendars', 'hold_calendar' or both")
    if query_ids is not None and (
            not isinstance(query_ids, list)
            or not all(isinstance(calendar_id, str) for calendar_id in query_ids)):
        raise ConfigurationError("'query_calendars' must be a list of calendar ids")

    store = AccountStore(table_name=os.environ.get('TABLE_NAME', 'avail-accounts'))
    if store.get_account(account_id) is None:
        return _response(404, {'message': f'No account with id {account_id}'})
    calendars = {c.calendar_id: c for c in store.get_calendars(account_id)}

    if hold_id is not None:
        calendar = calendars.get(hold_id)
        if calendar is None:
            raise ConfigurationError(f"Unknown calendar: {hold_id!r}")
        if not calendar.can_edit:
            raise ConfigurationError(f"Calendar {calendar.name!r} is read-only")

    if query_ids is not None:
        try:
            store.set_query_calendars(account_id, query_ids)
        except ValueError as e:
            raise ConfigurationError(str(e))
    if hold_id is not None:
        store.set_hold_event_calendar(account_id, hold_id)

    return _response(200, {
        'message': 'Calendar selection updated',
        'calendars': [c.to_dict() for c in store.get_calendars(account_id)]
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    Args:
        event: Request payload; `action` is one of find, split, hold,
            sync_calendars, add_account, list_accounts, remove_account,
            select_calendars (default: find)
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    setup_logging(log_level)

    start_time = time.time()
    event = event or {}
    action = event.get('action', 'find')
    logger.info("Lambda execution started", extra={'action': action})

    try:
        tz = load_timezone(os.environ.get('TIMEZONE', 'UTC'))

        if action == 'find':
            return find_availability(event, tz, start_time)
        if action == 'split':
            return split_windows(event, tz)
        if action == 'hold':
            return create_holds(event, tz, start_time)
        if action == 'sync_calendars':
            return sync_calendars(tz)
        if action == 'add_account':
            return add_account(event, tz)
        if action == 'list_accounts':
            return list_accounts()
        if action == 'remove_account':
            return remove_account(event)
        if action == 'select_calendars':
            return select_calendars(event)
        raise ConfigurationError(f"Unknown action: {action!r}")

    except ConfigurationError as e:
        logger.warning(f"Rejected request: {e}")
        return _error_response(400, 'Invalid request', e, start_time)

    except AuthenticationError as e:
        logger.error(
            f"Account authentication failed: {str(e)}",
            extra={'error_type': type(e).__name__}
        )
        return _error_response(401, 'Account authentication failed', e, start_time)

    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(time.time() - start_time, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _error_response(500, 'Request failed', e, start_time)
