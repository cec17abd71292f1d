"""Concurrent retrieval of events from every linked calendar."""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import nullcontext
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from availability.models import (
    Account,
    Availability,
    Calendar,
    CalendarFailure,
    Event,
    HoldResult,
    RetrievalResult,
)
from providers.base import AuthenticationError, CalendarProvider

logger = logging.getLogger(__name__)

HOLD_TITLE_PREFIX = 'HOLD - '

TokenCallback = Callable[[Account, str], None]


class RetrievalOrchestrator:
    """
    Fan calendar calls out over a thread pool.

    Providers that declare a `max_concurrency` get a counting admission gate
    shared by every call to that provider; a permit is held only while the
    HTTP call is in flight.
    """

    def __init__(
        self,
        providers: Dict[str, CalendarProvider],
        max_workers: Optional[int] = None,
        on_token_rotated: Optional[TokenCallback] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            providers: Provider adapters keyed by account platform
            max_workers: Upper bound on the thread pool; by default the pool
                gets one thread per call, so only admission gates bound
                concurrency
            on_token_rotated: Called with the account and its new refresh
                token when a platform rotates it on refresh
        """
        self.providers = providers
        self.max_workers = max_workers
        self.on_token_rotated = on_token_rotated
        self._gates = {
            provider.name: threading.BoundedSemaphore(provider.max_concurrency)
            for provider in providers.values()
            if provider.max_concurrency
        }

    def fetch_events(
        self,
        selections: Sequence[Tuple[Account, Sequence[str]]],
        start: datetime,
        end: datetime
    ) -> RetrievalResult:
        """
        Fetch events of every selected calendar of every account.

        Args:
            selections: Pairs of account and its query-selected calendar ids
            start: Window start
            end: Window end

        Returns:
            RetrievalResult holding all events, in no particular order, and
            one CalendarFailure per calendar that could not be read

        Raises:
            AuthenticationError: If an account's token refresh fails
        """
        tasks: List[Tuple[Account, str, Future]] = []
        pool_size = self._pool_size(sum(len(ids) for _, ids in selections))

        with ThreadPoolExecutor(max_workers=pool_size) as executor:
            try:
                for account, calendar_ids in selections:
                    if not calendar_ids:
                        continue
                    provider = self._provider_for(account)
                    access_token = self._refresh(provider, account)

                    for calendar_id in calendar_ids:
                        future = executor.submit(
                            self._gated,
                            provider,
                            provider.fetch_events,
                            access_token,
                            calendar_id,
                            start,
                            end
                        )
                        tasks.append((account, calendar_id, future))

                wait([future for _, _, future in tasks])
            except BaseException:
                # running tasks finish and release their permits on exit
                for _, _, future in tasks:
                    future.cancel()
                raise

        events: List[Event] = []
        failures: List[CalendarFailure] = []
        for account, calendar_id, future in tasks:
            try:
                events.extend(future.result())
            except Exception as e:
                logger.warning(
                    f"Dropping calendar {calendar_id} of {account.email}: {e}",
                    extra={'error_type': type(e).__name__}
                )
                failures.append(
                    CalendarFailure(
                        account=account.email,
                        calendar_id=calendar_id,
                        error=str(e)
                    )
                )

        logger.info(
            f"Retrieved {len(events)} events from {len(tasks)} calendars "
            f"({len(failures)} failed)"
        )
        return RetrievalResult(events=events, failures=failures)

    def create_hold_events(
        self,
        account: Account,
        calendar_id: str,
        title: str,
        windows: Sequence[Availability]
    ) -> HoldResult:
        """
        Create one hold event per window on a single calendar.

        Args:
            account: Account owning the calendar
            calendar_id: Target calendar
            title: Event title, prefixed with "HOLD - "
            windows: Windows to hold

        Returns:
            HoldResult with the number created and per-window errors

        Raises:
            AuthenticationError: If the account's token refresh fails
        """
        if not windows:
            return HoldResult(created=0, errors=[])

        provider = self._provider_for(account)
        access_token = self._refresh(provider, account)
        event_title = f"{HOLD_TITLE_PREFIX}{title}"

        with ThreadPoolExecutor(max_workers=self._pool_size(len(windows))) as executor:
            futures = [
                (
                    window,
                    executor.submit(
                        self._gated,
                        provider,
                        provider.create_event,
                        access_token,
                        calendar_id,
                        event_title,
                        window.start,
                        window.end
                    )
                )
                for window in windows
            ]

        created = 0
        errors = []
        for window, future in futures:
            try:
                future.result()
                created += 1
            except Exception as e:
                error_msg = f"Failed to create hold event for {window}: {e}"
                logger.error(error_msg)
                errors.append(error_msg)

        logger.info(f"Created {created} of {len(windows)} hold events")
        return HoldResult(created=created, errors=errors)

    def list_calendars(self, account: Account) -> List[Calendar]:
        """
        List the calendars an account can see on its platform.

        Raises:
            AuthenticationError: If the account's token refresh fails
            ProviderError: If the calendar list cannot be read
        """
        provider = self._provider_for(account)
        access_token = self._refresh(provider, account)
        calendars = self._gated(provider, provider.list_calendars, access_token)
        return [replace(calendar, account_id=account.account_id) for calendar in calendars]

    def _pool_size(self, calls: int) -> int:
        size = max(calls, 1)
        if self.max_workers is not None:
            size = min(size, self.max_workers)
        return size

    def _gated(self, provider: CalendarProvider, call: Callable, *args):
        """Run a provider call while holding that provider's permit."""
        gate = self._gates.get(provider.name)
        with gate if gate is not None else nullcontext():
            return call(*args)

    def _refresh(self, provider: CalendarProvider, account: Account) -> str:
        try:
            grant = provider.refresh_access_token(account.refresh_token)
        except AuthenticationError as e:
            raise AuthenticationError(f"Account {account.email}: {e}")

        if (grant.refresh_token and grant.refresh_token != account.refresh_token
                and self.on_token_rotated is not None):
            self.on_token_rotated(account, grant.refresh_token)
        return grant.access_token

    def _provider_for(self, account: Account) -> CalendarProvider:
        try:
            return self.providers[account.platform]
        except KeyError:
            raise ValueError(f"Unsupported platform: {account.platform}")
