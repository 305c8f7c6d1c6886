"""Tests for ActivityAnalyzer heuristics."""

from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.service.activity import LOGIN, ActivityAnalyzer
from sessionguard.storage.models import ClientInfo, RiskLevel


@pytest.fixture
def analyzer(clock, notifier):
    return ActivityAnalyzer(clock=clock, notifier=notifier)


def login(analyzer, clock, ip="10.0.0.1", location=None, success=True, subject="user-1"):
    return analyzer.log_activity(
        subject, LOGIN, ClientInfo(ip_address=ip, user_agent="ua", location=location), success
    )


def kinds(alerts):
    return [a.kind for a in alerts]


class TestRapidMultiIp:
    async def test_single_login_raises_nothing(self, analyzer, clock, notifier, dispatcher):
        assert login(analyzer, clock) == []
        await notifier.drain()
        assert dispatcher.alerts == []

    async def test_two_ips_within_five_minutes_is_high(self, analyzer, clock, notifier, dispatcher):
        login(analyzer, clock, ip="10.0.0.1")
        clock.advance(minutes=2)
        alerts = login(analyzer, clock, ip="10.0.0.2")
        await notifier.drain()

        assert kinds(alerts) == ["rapid_multi_ip"]
        assert alerts[0].risk_level is RiskLevel.HIGH
        assert kinds(dispatcher.alerts) == ["rapid_multi_ip"]

    async def test_exactly_five_minutes_still_counts(self, analyzer, clock):
        login(analyzer, clock, ip="10.0.0.1")
        clock.advance(minutes=5)

        assert kinds(login(analyzer, clock, ip="10.0.0.2")) == ["rapid_multi_ip"]

    async def test_same_ip_or_slow_logins_are_quiet(self, analyzer, clock):
        login(analyzer, clock, ip="10.0.0.1")
        clock.advance(minutes=1)
        assert login(analyzer, clock, ip="10.0.0.1") == []

        clock.advance(minutes=30)
        login(analyzer, clock, ip="10.0.0.9")
        clock.advance(minutes=30)
        assert login(analyzer, clock, ip="10.0.0.1") == []


class TestNewLocation:
    async def test_needs_two_known_locations(self, analyzer, clock):
        login(analyzer, clock, location="Berlin")
        clock.advance(hours=1)
        assert login(analyzer, clock, location="Paris") == []

    async def test_unseen_location_is_medium(self, analyzer, clock):
        for city in ("Berlin", "Paris"):
            login(analyzer, clock, location=city)
            clock.advance(hours=1)

        alerts = login(analyzer, clock, location="Lagos")

        assert kinds(alerts) == ["new_location"]
        assert alerts[0].risk_level is RiskLevel.MEDIUM
        assert analyzer.recent_alerts("user-1")[-1].kind == "new_location"


class TestUnusualHour:
    async def test_far_from_mean_hour_is_low_and_not_dispatched(self, clock, notifier, dispatcher):
        clock.current = datetime(2024, 3, 14, 9, 0, tzinfo=timezone.utc)
        analyzer = ActivityAnalyzer(clock=clock, notifier=notifier)
        for _ in range(5):
            login(analyzer, clock)
            clock.advance(days=1)

        clock.current = clock.current.replace(hour=22)
        alerts = login(analyzer, clock)
        await notifier.drain()

        assert kinds(alerts) == ["unusual_hour"]
        assert alerts[0].risk_level is RiskLevel.LOW
        assert dispatcher.alerts == []
        assert len(analyzer.recent_alerts("user-1")) == 1

    async def test_requires_five_prior_logins(self, analyzer, clock):
        clock.current = datetime(2024, 3, 14, 9, 0, tzinfo=timezone.utc)
        for _ in range(4):
            login(analyzer, clock)
            clock.advance(days=1)
        clock.current = clock.current.replace(hour=22)

        assert login(analyzer, clock) == []


class TestSuccessAfterFailures:
    async def test_three_failures_then_success_is_medium(self, analyzer, clock):
        for _ in range(3):
            login(analyzer, clock, success=False)
            clock.advance(seconds=10)

        alerts = login(analyzer, clock)

        assert kinds(alerts) == ["success_after_failures"]
        assert alerts[0].context["failed_attempts"] == 3

    async def test_two_failures_are_tolerated(self, analyzer, clock):
        for _ in range(2):
            login(analyzer, clock, success=False)
        assert login(analyzer, clock) == []

    async def test_failures_outside_last_five_are_ignored(self, analyzer, clock):
        for _ in range(3):
            login(analyzer, clock, success=False)
        for _ in range(3):
            clock.advance(hours=1)
            login(analyzer, clock)
        clock.advance(hours=1)

        assert login(analyzer, clock) == []


class TestBuffer:
    def test_ring_buffer_keeps_latest_fifty(self, clock):
        analyzer = ActivityAnalyzer(clock=clock)
        for i in range(60):
            analyzer.log_activity("user-1", "api_call", ClientInfo(ip_address=f"10.0.0.{i}"))

        history = analyzer.recent_activity("user-1")
        assert len(history) == 50
        assert history[0].ip_address == "10.0.0.10"

    def test_cleanup_forgets_stale_users(self, clock):
        analyzer = ActivityAnalyzer(clock=clock)
        analyzer.log_activity("old", "api_call", ClientInfo())
        clock.advance(hours=25)
        analyzer.log_activity("new", "api_call", ClientInfo())

        assert analyzer.cleanup() == 1
        assert analyzer.stats()["monitored_users"] == 1

    def test_disabled_analyzer_records_nothing(self, clock):
        analyzer = ActivityAnalyzer(clock=clock, enabled=False)
        analyzer.log_activity("user-1", LOGIN, ClientInfo())

        assert analyzer.recent_activity("user-1") == []

    def test_explicit_timestamp_is_used(self, clock):
        analyzer = ActivityAnalyzer(clock=clock)
        when = clock.now() - timedelta(hours=3)
        analyzer.log_activity("user-1", "api_call", ClientInfo(), timestamp=when)

        assert analyzer.recent_activity("user-1")[0].timestamp == when
