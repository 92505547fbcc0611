# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Cron scheduling.

Expressions are standard five-field cron evaluated in UTC. The scheduler
ticks once per wall-clock minute; when the process was paused across
several minute boundaries, the missed minutes are replayed in order (up to
`catchup_minutes`) so every scheduled minute fires exactly once. The
fingerprint of a cron run is keyed on the minute, so a replay after a
crash is deduplicated by the receipt store.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from croniter import croniter

from gitvan.errors import ValidationError
from gitvan.schemas.job_def import JobDefinition

logger = logging.getLogger(__name__)

MINUTE = timedelta(minutes=1)
MACROS = ("@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def floor_minute(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(second=0, microsecond=0)


def minute_key(minute: datetime) -> str:
    """ISO form used in cron fingerprints, e.g. 2025-01-01T02:00Z."""
    return floor_minute(minute).strftime("%Y-%m-%dT%H:%MZ")


def parse_minute(value: str) -> datetime:
    """Parse `minute_key` output or any ISO timestamp."""
    text = value.strip().replace("Z", "+00:00")
    try:
        return floor_minute(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError("minute", value, "not an ISO 8601 timestamp")


def validate_cron(expr: str, field: str = "cron") -> str:
    if not isinstance(expr, str) or not expr.strip():
        raise ValidationError(field, expr, "cron expression must be a non-empty string")
    expr = expr.strip()
    if expr.startswith("@"):
        if expr not in MACROS:
            raise ValidationError(field, expr, "unknown cron macro")
        return expr
    if len(expr.split()) != 5:
        raise ValidationError(field, expr, "cron expression must have five fields")
    if not croniter.is_valid(expr):
        raise ValidationError(field, expr, "invalid cron expression")
    return expr


def cron_matches(expr: str, minute: datetime) -> bool:
    """True when `expr` fires at the given UTC minute."""
    minute = floor_minute(minute)
    following = croniter(expr, minute - timedelta(seconds=1)).get_next(datetime)
    return floor_minute(following) == minute


def next_fire(expr: str, after: Optional[datetime] = None) -> datetime:
    """First UTC minute strictly after `after` at which `expr` fires."""
    start = floor_minute(after or utc_now())
    return floor_minute(croniter(expr, start).get_next(datetime))


@dataclass
class CronTick:
    job: JobDefinition
    minute: datetime

    @property
    def minute_utc(self) -> str:
        return minute_key(self.minute)


class CronScheduler:
    """Produce due (job, minute) pairs once per minute boundary.

    Args:
        jobs: Callable returning the current cron jobs.
        clock: Wall clock returning an aware datetime.
        monotonic: Monotonic clock used to skip work between minute boundaries.
        catchup_minutes: Maximum number of missed minutes replayed after a pause.
        last_minute: Last minute already processed, e.g. from a checkpoint.
    """

    def __init__(
        self,
        jobs: Callable[[], Iterable[JobDefinition]],
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        catchup_minutes: int = 1440,
        last_minute: Optional[datetime] = None,
    ):
        self.jobs = jobs
        self.clock = clock
        self.monotonic = monotonic
        self.catchup_minutes = catchup_minutes
        self.last_minute = floor_minute(last_minute) if last_minute else None
        self._next_check: Optional[float] = None

    def pending_minutes(self, now: datetime) -> List[datetime]:
        current = floor_minute(now)
        if self.last_minute is None:
            return [current]
        if current <= self.last_minute:
            return []
        missed = int((current - self.last_minute) / MINUTE)
        if missed > self.catchup_minutes:
            logger.warning(
                f"Cron catch-up limited to {self.catchup_minutes} of {missed} missed minutes"
            )
            missed = self.catchup_minutes
        return [current - MINUTE * i for i in range(missed - 1, -1, -1)]

    def due(self, minutes: Iterable[datetime]) -> List[CronTick]:
        jobs = [job for job in self.jobs() if job.cron]
        ticks = []
        for minute in minutes:
            for job in jobs:
                if cron_matches(job.cron, minute):
                    ticks.append(CronTick(job=job, minute=minute))
        return ticks

    def tick(self) -> List[CronTick]:
        """Advance to the current minute and return the jobs due since the last tick."""
        mono = self.monotonic()
        if self._next_check is not None and mono < self._next_check:
            return []

        now = self.clock()
        minutes = self.pending_minutes(now)
        if minutes:
            self.last_minute = minutes[-1]
        seconds_left = 60 - (now.second + now.microsecond / 1_000_000)
        self._next_check = mono + max(seconds_left, 0.0)
        return self.due(minutes)

    def between(self, start: datetime, end: datetime) -> List[CronTick]:
        """Due ticks for every minute in [start, end], without touching state."""
        first, last = floor_minute(start), floor_minute(end)
        minutes = []
        cursor = first
        while cursor <= last:
            minutes.append(cursor)
            cursor += MINUTE
        return self.due(minutes)
