"""
Cron expression evaluation.

The scheduling algorithm only needs "when does this pattern fire next after
a given instant"; everything else about cron stays behind this interface.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Protocol

from apscheduler.triggers.cron import CronTrigger


class CronSchedule(Protocol):
    """Narrow cron interface used by the scheduler."""

    def next_fire_time(self, pattern: str, after: datetime) -> datetime | None:
        """Return the first fire time strictly after `after`, or None if it never fires."""
        ...


class InvalidCronPatternError(ValueError):
    """The recurrence pattern is not a valid 5-field cron expression."""


_WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _weekday_name(token: str) -> str:
    if token.isdigit() and int(token) < len(_WEEKDAY_NAMES):
        return _WEEKDAY_NAMES[int(token)]
    return token


def _crontab_weekdays(field: str) -> str:
    """Rewrite numeric crontab weekdays (0/7 = Sunday) as names.

    APScheduler numbers weekdays from Monday = 0, so digits cannot be passed
    through unchanged.
    """
    items = []
    for item in field.split(","):
        base, sep, step = item.partition("/")
        if "-" in base:
            first, last = (_weekday_name(t) for t in base.split("-", 1))
            if first == "sun" and last != "sun":
                # Sunday-first ranges have no Monday-based equivalent.
                items.append("sun")
                first = "mon"
            base = f"{first}-{last}"
        else:
            base = _weekday_name(base)
        items.append(base + sep + step)
    return ",".join(items)


class ApschedulerCron:
    """CronSchedule backed by APScheduler's crontab trigger."""

    def __init__(self, tz: tzinfo = timezone.utc) -> None:
        self._tz = tz

    def _trigger(self, pattern: str) -> CronTrigger:
        fields = pattern.split()
        if len(fields) != 5:
            raise InvalidCronPatternError(f"Expected 5 cron fields, got {pattern!r}")
        fields[4] = _crontab_weekdays(fields[4])
        try:
            return CronTrigger.from_crontab(" ".join(fields), timezone=self._tz)
        except ValueError as e:
            raise InvalidCronPatternError(f"Invalid cron pattern {pattern!r}: {e}") from e

    def validate(self, pattern: str) -> None:
        self._trigger(pattern)

    def next_fire_time(self, pattern: str, after: datetime) -> datetime | None:
        trigger = self._trigger(pattern)
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        # The trigger answers ">= now"; nudging by 1us makes it strictly after.
        candidate = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
        if candidate is None:
            return None
        return candidate.astimezone(timezone.utc)
