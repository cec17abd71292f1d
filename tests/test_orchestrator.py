"""Unit tests for RetrievalOrchestrator."""
import threading
import time
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from availability.models import Account, Availability, Calendar, Event
from providers.base import AuthenticationError, CalendarProvider, ProviderError, TokenGrant
from retrieval.orchestrator import RetrievalOrchestrator

TZ = ZoneInfo('America/New_York')

START = datetime(2022, 10, 5, tzinfo=TZ)
END = datetime(2022, 10, 7, tzinfo=TZ)


class FakeProvider(CalendarProvider):
    """In-memory provider that records how many calls overlap."""

    def __init__(self, name, max_concurrency=None, delay=0.0, barrier=None):
        super().__init__(client_id='id', client_secret='secret', tz=TZ)
        self.name = name
        self.max_concurrency = max_concurrency
        self.delay = delay
        self.barrier = barrier
        self.failing_calendars = set()
        self.failing_starts = set()
        self.refresh_calls = 0
        self.rotated_token = None
        self.reject_refresh = False
        self.revoked_tokens = set()
        self.fetch_calls = 0
        self.created = []
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def refresh_access_token(self, refresh_token):
        self.refresh_calls += 1
        if self.reject_refresh or refresh_token in self.revoked_tokens:
            raise AuthenticationError('invalid_grant')
        return TokenGrant(access_token=f'access-{refresh_token}', refresh_token=self.rotated_token)

    def list_calendars(self, access_token):
        return [Calendar(account_id='', calendar_id='cal-1', name='Work', can_edit=True)]

    def fetch_events(self, access_token, calendar_id, start, end):
        with self._lock:
            self.fetch_calls += 1
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            if self.barrier is not None:
                self.barrier.wait()
            time.sleep(self.delay)
            if calendar_id in self.failing_calendars:
                raise ProviderError(f'{calendar_id} unavailable')
            return [
                Event(
                    id=f'{calendar_id}-event',
                    name=calendar_id,
                    start=start + timedelta(hours=10),
                    end=start + timedelta(hours=11)
                )
            ]
        finally:
            with self._lock:
                self.in_flight -= 1

    def create_event(self, access_token, calendar_id, title, start, end):
        if start in self.failing_starts:
            raise ProviderError('conflict')
        with self._lock:
            self.created.append((calendar_id, title, start, end))

    def _to_event(self, item):
        raise NotImplementedError


def make_account(platform, email='user@example.com', token='refresh-1'):
    return Account(account_id=f'{platform}-{email}', email=email, platform=platform,
                   refresh_token=token)


class TestFetchEvents:
    """Test cases for RetrievalOrchestrator.fetch_events."""

    def test_events_from_every_calendar(self):
        google = FakeProvider('google')
        orchestrator = RetrievalOrchestrator({'google': google})
        account = make_account('google')

        result = orchestrator.fetch_events([(account, ['a', 'b', 'c'])], START, END)

        assert sorted(event.id for event in result.events) == ['a-event', 'b-event', 'c-event']
        assert result.failures == []

    def test_refresh_once_per_account(self):
        google = FakeProvider('google')
        orchestrator = RetrievalOrchestrator({'google': google})

        orchestrator.fetch_events(
            [
                (make_account('google', 'one@example.com'), ['a', 'b', 'c']),
                (make_account('google', 'two@example.com'), ['d']),
            ],
            START,
            END
        )

        assert google.refresh_calls == 2

    def test_account_without_calendars_skipped(self):
        google = FakeProvider('google')
        orchestrator = RetrievalOrchestrator({'google': google})

        result = orchestrator.fetch_events([(make_account('google'), [])], START, END)

        assert result.events == []
        assert google.refresh_calls == 0

    def test_microsoft_calls_never_exceed_four(self):
        """Test that the admission gate caps simultaneous calls."""
        microsoft = FakeProvider('microsoft', max_concurrency=4, delay=0.05)
        orchestrator = RetrievalOrchestrator({'microsoft': microsoft}, max_workers=16)
        calendars = [f'cal-{i}' for i in range(12)]

        result = orchestrator.fetch_events(
            [(make_account('microsoft'), calendars)], START, END
        )

        assert len(result.events) == 12
        assert 1 <= microsoft.peak <= 4

    def test_gate_shared_across_accounts(self):
        microsoft = FakeProvider('microsoft', max_concurrency=4, delay=0.05)
        orchestrator = RetrievalOrchestrator({'microsoft': microsoft}, max_workers=16)

        orchestrator.fetch_events(
            [
                (make_account('microsoft', 'one@example.com'), [f'a-{i}' for i in range(6)]),
                (make_account('microsoft', 'two@example.com'), [f'b-{i}' for i in range(6)]),
            ],
            START,
            END
        )

        assert microsoft.peak <= 4

    def test_ungated_provider_runs_in_parallel(self):
        """Test that providers without a ceiling are not serialized."""
        barrier = threading.Barrier(6, timeout=5)
        google = FakeProvider('google', barrier=barrier)
        orchestrator = RetrievalOrchestrator({'google': google}, max_workers=16)

        result = orchestrator.fetch_events(
            [(make_account('google'), [f'cal-{i}' for i in range(6)])], START, END
        )

        assert len(result.events) == 6
        assert result.failures == []
        assert google.peak == 6

    def test_failed_calendar_recorded(self):
        """Test that one failing calendar does not drop the others."""
        google = FakeProvider('google')
        google.failing_calendars = {'b'}
        orchestrator = RetrievalOrchestrator({'google': google})
        account = make_account('google')

        result = orchestrator.fetch_events([(account, ['a', 'b', 'c'])], START, END)

        assert sorted(event.id for event in result.events) == ['a-event', 'c-event']
        assert len(result.failures) == 1
        assert result.failures[0].account == 'user@example.com'
        assert result.failures[0].calendar_id == 'b'
        assert 'unavailable' in result.failures[0].error

    def test_permits_released_after_failures(self):
        microsoft = FakeProvider('microsoft', max_concurrency=1)
        microsoft.failing_calendars = {'a', 'b'}
        orchestrator = RetrievalOrchestrator({'microsoft': microsoft})
        account = make_account('microsoft')

        first = orchestrator.fetch_events([(account, ['a', 'b'])], START, END)
        microsoft.failing_calendars = set()
        second = orchestrator.fetch_events([(account, ['a', 'b'])], START, END)

        assert len(first.failures) == 2
        assert len(second.events) == 2

    def test_mixed_providers(self):
        google = FakeProvider('google')
        microsoft = FakeProvider('microsoft', max_concurrency=4)
        orchestrator = RetrievalOrchestrator({'google': google, 'microsoft': microsoft})

        result = orchestrator.fetch_events(
            [
                (make_account('google'), ['g1']),
                (make_account('microsoft'), ['m1', 'm2']),
            ],
            START,
            END
        )

        assert sorted(event.id for event in result.events) == ['g1-event', 'm1-event', 'm2-event']

    def test_authentication_failure_propagates(self):
        google = FakeProvider('google')
        google.reject_refresh = True
        orchestrator = RetrievalOrchestrator({'google': google})

        with pytest.raises(AuthenticationError) as exc_info:
            orchestrator.fetch_events([(make_account('google'), ['a'])], START, END)

        assert 'user@example.com' in str(exc_info.value)

    def test_authentication_failure_cancels_queued_calls(self):
        """Test that queued calls are dropped and permits come back."""
        microsoft = FakeProvider('microsoft', max_concurrency=1, delay=0.1)
        microsoft.revoked_tokens = {'revoked'}
        orchestrator = RetrievalOrchestrator({'microsoft': microsoft}, max_workers=2)
        healthy = make_account('microsoft', 'one@example.com')
        calendars = [f'cal-{i}' for i in range(12)]

        with pytest.raises(AuthenticationError) as exc_info:
            orchestrator.fetch_events(
                [
                    (healthy, calendars),
                    (make_account('microsoft', 'two@example.com', token='revoked'), ['x']),
                ],
                START,
                END
            )

        assert 'two@example.com' in str(exc_info.value)
        assert microsoft.fetch_calls < 12
        assert microsoft.in_flight == 0

        microsoft.delay = 0.01
        microsoft.peak = 0
        result = orchestrator.fetch_events([(healthy, calendars)], START, END)

        assert len(result.events) == 12
        assert result.failures == []
        assert microsoft.peak == 1

    def test_default_pool_not_capped(self):
        """Test that without max_workers every ungated call runs at once."""
        barrier = threading.Barrier(20, timeout=5)
        google = FakeProvider('google', barrier=barrier)
        orchestrator = RetrievalOrchestrator({'google': google})

        result = orchestrator.fetch_events(
            [(make_account('google'), [f'cal-{i}' for i in range(20)])], START, END
        )

        assert len(result.events) == 20
        assert result.failures == []
        assert google.peak == 20

    def test_max_workers_bounds_pool(self):
        google = FakeProvider('google', delay=0.02)
        orchestrator = RetrievalOrchestrator({'google': google}, max_workers=3)

        result = orchestrator.fetch_events(
            [(make_account('google'), [f'cal-{i}' for i in range(9)])], START, END
        )

        assert len(result.events) == 9
        assert google.peak <= 3

    def test_unsupported_platform(self):
        orchestrator = RetrievalOrchestrator({'google': FakeProvider('google')})

        with pytest.raises(ValueError):
            orchestrator.fetch_events([(make_account('icloud'), ['a'])], START, END)

    def test_rotated_token_reported(self):
        google = FakeProvider('google')
        google.rotated_token = 'refresh-2'
        rotated = []
        orchestrator = RetrievalOrchestrator(
            {'google': google},
            on_token_rotated=lambda account, token: rotated.append((account.email, token))
        )

        orchestrator.fetch_events([(make_account('google'), ['a'])], START, END)

        assert rotated == [('user@example.com', 'refresh-2')]

    def test_unchanged_token_not_reported(self):
        google = FakeProvider('google')
        google.rotated_token = 'refresh-1'
        rotated = []
        orchestrator = RetrievalOrchestrator(
            {'google': google},
            on_token_rotated=lambda account, token: rotated.append(token)
        )

        orchestrator.fetch_events([(make_account('google'), ['a'])], START, END)

        assert rotated == []


class TestCreateHoldEvents:
    """Test cases for RetrievalOrchestrator.create_hold_events."""

    def test_create_hold_events(self):
        microsoft = FakeProvider('microsoft', max_concurrency=4)
        orchestrator = RetrievalOrchestrator({'microsoft': microsoft})
        windows = [
            Availability(start=datetime(2022, 10, 5, 9, tzinfo=TZ),
                         end=datetime(2022, 10, 5, 10, tzinfo=TZ)),
            Availability(start=datetime(2022, 10, 5, 14, tzinfo=TZ),
                         end=datetime(2022, 10, 5, 15, tzinfo=TZ)),
        ]

        result = orchestrator.create_hold_events(
            make_account('microsoft'), 'cal-1', 'Interview', windows
        )

        assert result.created == 2
        assert result.errors == []
        assert {title for _, title, _, _ in microsoft.created} == {'HOLD - Interview'}
        assert sorted(start for _, _, start, _ in microsoft.created) == [
            windows[0].start, windows[1].start
        ]

    def test_partial_failure_reported(self):
        google = FakeProvider('google')
        windows = [
            Availability(start=datetime(2022, 10, 5, 9, tzinfo=TZ),
                         end=datetime(2022, 10, 5, 10, tzinfo=TZ)),
            Availability(start=datetime(2022, 10, 5, 14, tzinfo=TZ),
                         end=datetime(2022, 10, 5, 15, tzinfo=TZ)),
        ]
        google.failing_starts = {windows[1].start}
        orchestrator = RetrievalOrchestrator({'google': google})

        result = orchestrator.create_hold_events(
            make_account('google'), 'primary', 'Interview', windows
        )

        assert result.created == 1
        assert len(result.errors) == 1
        assert 'conflict' in result.errors[0]

    def test_no_windows(self):
        google = FakeProvider('google')
        orchestrator = RetrievalOrchestrator({'google': google})

        result = orchestrator.create_hold_events(make_account('google'), 'primary', 'x', [])

        assert result.created == 0
        assert google.refresh_calls == 0


class TestListCalendars:
    """Test cases for RetrievalOrchestrator.list_calendars."""

    def test_calendars_tagged_with_account(self):
        orchestrator = RetrievalOrchestrator({'google': FakeProvider('google')})
        account = make_account('google')

        calendars = orchestrator.list_calendars(account)

        assert len(calendars) == 1
        assert calendars[0].account_id == account.account_id
        assert calendars[0].can_edit
