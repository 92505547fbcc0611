# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for cron parsing and the minute scheduler."""

from datetime import datetime, timezone

import pytest

from gitvan.cron import (
    CronScheduler,
    cron_matches,
    minute_key,
    next_fire,
    parse_minute,
    validate_cron,
)
from gitvan.errors import ValidationError
from gitvan.jobs.define import define_job


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2025, 1, 1, hour, minute, second, tzinfo=timezone.utc)


class FakeClock:
    """Wall and monotonic clock that tests move by hand."""

    def __init__(self, start: datetime):
        self.now = start
        self.mono = 0.0

    def wall(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance_to(self, moment: datetime) -> None:
        self.mono += (moment - self.now).total_seconds()
        self.now = moment


def noop(ctx, payload, meta):
    return None


NIGHTLY = define_job(noop, id="nightly", cron="0 2 * * *")
EVERY_MINUTE = define_job(noop, id="heartbeat", cron="* * * * *")


class TestExpressions:
    @pytest.mark.parametrize("expr", ["0 2 * * *", "*/15 * * * 1-5", "@daily", "@hourly"])
    def test_valid(self, expr):
        assert validate_cron(expr) == expr

    @pytest.mark.parametrize("expr", ["", "* * *", "61 * * * *", "@sometimes", "0 2 * * * *"])
    def test_invalid(self, expr):
        with pytest.raises(ValidationError):
            validate_cron(expr)

    def test_matches(self):
        assert cron_matches("0 2 * * *", at(2, 0))
        assert cron_matches("0 2 * * *", at(2, 0, 45))
        assert not cron_matches("0 2 * * *", at(2, 1))

    def test_next_fire_is_strictly_after(self):
        assert next_fire("*/15 * * * *", at(10, 7)) == at(10, 15)
        assert next_fire("*/15 * * * *", at(10, 15)) == at(10, 30)

    def test_minute_key_roundtrip(self):
        key = minute_key(at(2, 0, 30))
        assert key == "2025-01-01T02:00Z"
        assert parse_minute(key) == at(2, 0)

    def test_naive_datetimes_are_utc(self):
        assert minute_key(datetime(2025, 1, 1, 2, 0)) == "2025-01-01T02:00Z"

    def test_parse_minute_rejects_garbage(self):
        with pytest.raises(ValidationError):
            parse_minute("yesterday")


class TestScheduler:
    def scheduler(self, clock, jobs, **kwargs):
        return CronScheduler(lambda: jobs, clock=clock.wall, monotonic=clock.monotonic, **kwargs)

    def test_pause_across_boundaries_fires_missed_minute_once(self):
        clock = FakeClock(at(1, 59, 30))
        scheduler = self.scheduler(clock, [NIGHTLY])
        assert scheduler.tick() == []

        clock.advance_to(at(2, 3, 0))
        ticks = scheduler.tick()
        assert [(t.job.id, t.minute_utc) for t in ticks] == [("nightly", "2025-01-01T02:00Z")]

        clock.advance_to(at(2, 3, 40))
        assert scheduler.tick() == []

    def test_each_minute_fires_once(self):
        clock = FakeClock(at(10, 0, 5))
        scheduler = self.scheduler(clock, [EVERY_MINUTE])
        seen = [t.minute_utc for t in scheduler.tick()]
        for second in (20, 40, 59):
            clock.advance_to(at(10, 0, second))
            seen += [t.minute_utc for t in scheduler.tick()]
        clock.advance_to(at(10, 2, 1))
        seen += [t.minute_utc for t in scheduler.tick()]
        assert seen == ["2025-01-01T10:00Z", "2025-01-01T10:01Z", "2025-01-01T10:02Z"]

    def test_clock_going_backwards_fires_nothing(self):
        clock = FakeClock(at(10, 5))
        scheduler = self.scheduler(clock, [EVERY_MINUTE])
        scheduler.tick()
        clock.now = at(10, 3)
        clock.mono += 120
        assert scheduler.tick() == []

    def test_catchup_is_bounded(self):
        clock = FakeClock(at(10, 0))
        scheduler = self.scheduler(clock, [EVERY_MINUTE], catchup_minutes=5, last_minute=at(0, 0))
        ticks = scheduler.tick()
        assert [t.minute_utc for t in ticks] == [
            "2025-01-01T09:56Z", "2025-01-01T09:57Z", "2025-01-01T09:58Z",
            "2025-01-01T09:59Z", "2025-01-01T10:00Z",
        ]

    def test_resume_from_checkpoint(self):
        clock = FakeClock(at(2, 1))
        scheduler = self.scheduler(clock, [NIGHTLY], last_minute=at(1, 58))
        assert [t.minute_utc for t in scheduler.tick()] == ["2025-01-01T02:00Z"]

    def test_between_is_stateless(self):
        clock = FakeClock(at(0, 0))
        scheduler = self.scheduler(clock, [EVERY_MINUTE, NIGHTLY])
        ticks = scheduler.between(at(1, 59), at(2, 1))
        assert [(t.job.id, t.minute_utc[-6:]) for t in ticks] == [
            ("heartbeat", "01:59Z"),
            ("heartbeat", "02:00Z"),
            ("nightly", "02:00Z"),
            ("heartbeat", "02:01Z"),
        ]
        assert scheduler.last_minute is None

    def test_non_cron_jobs_ignored(self):
        clock = FakeClock(at(2, 0))
        manual = define_job(noop, id="manual")
        scheduler = self.scheduler(clock, [manual])
        assert scheduler.tick() == []
