"""
SLA Value Objects
==================

Stateless calculations for the SLA domain: duration parsing, business hours
arithmetic, metric evaluation and notification send-time computation.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from helpdesk_sla.config import (
    Metric, NotificationType, SLAEventStatus, NOTIFICATION_PAST_TOLERANCE
)
from helpdesk_sla.core import ConfigurationException, InvalidDurationException
from helpdesk_sla.sla.domain.entities import (
    BusinessHours, Breaches, Deadlines, NotificationCandidate, NotificationRule
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def parse_duration(value: str) -> timedelta:
    """
    Parse a Go-style duration string such as "30m", "4h" or "1h30m".

    Raises:
        InvalidDurationException: if the string is empty or malformed
    """
    text = (value or "").strip()
    if not text:
        raise InvalidDurationException(value)

    sign = 1
    if text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]

    if text == "0":
        return timedelta(0)

    pos = 0
    seconds = 0.0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise InvalidDurationException(value)
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()

    if pos == 0:
        raise InvalidDurationException(value)
    return timedelta(seconds=sign * seconds)


def format_duration(delta: timedelta, include_seconds: bool = False) -> str:
    """Human friendly duration, e.g. "1 day 2 hours 5 minutes"."""
    total = int(abs(delta).total_seconds())
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)

    parts = []
    for amount, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if amount:
            parts.append(f"{amount} {unit}{'s' if amount != 1 else ''}")
    if include_seconds and seconds:
        parts.append(f"{seconds} second{'s' if seconds != 1 else ''}")

    if not parts:
        return "less than a minute" if not include_seconds else "0 seconds"
    return " ".join(parts)


def load_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationException(f"unknown timezone {name!r}") from e


class BusinessHoursCalculator:
    """
    Advances an instant by a number of open minutes on a weekly calendar.

    Walks local days in the calendar's timezone; arithmetic is done on UTC
    instants so daylight saving shifts are honoured.
    """

    # Upper bound on the number of local days walked for one calculation.
    max_days = 3 * 366

    def add_business_minutes(
        self,
        start: datetime,
        minutes: int,
        business_hours: BusinessHours,
        tz_name: str
    ) -> datetime:
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)

        if business_hours.is_always_open or minutes <= 0:
            return start + timedelta(minutes=max(minutes, 0))

        tz = load_timezone(tz_name)
        if not any(w.close > w.open for w in business_hours.hours.values()):
            raise ConfigurationException(
                f"business hours {business_hours.id} have no open window"
            )

        holidays = set(business_hours.holidays)
        remaining = timedelta(minutes=minutes)
        cursor = start.astimezone(timezone.utc)
        day = start.astimezone(tz).date()

        for _ in range(self.max_days):
            window = business_hours.hours.get(WEEKDAYS[day.weekday()])
            if window is not None and window.close > window.open and day not in holidays:
                opens = datetime.combine(day, window.open, tzinfo=tz).astimezone(timezone.utc)
                closes = datetime.combine(day, window.close, tzinfo=tz).astimezone(timezone.utc)
                if cursor < opens:
                    cursor = opens
                if cursor < closes:
                    available = closes - cursor
                    if remaining <= available:
                        return cursor + remaining
                    remaining -= available
                    cursor = closes
            day += timedelta(days=1)

        raise ConfigurationException(
            f"could not fit {minutes} business minutes into calendar {business_hours.id}"
        )


@dataclass(frozen=True)
class MetricVerdict:
    """Outcome of evaluating one metric against its deadline."""

    state: str
    met_at: Optional[datetime] = None


class SLACalculator:
    """
    Pure functions for SLA calculations.

    Stateless utility class - all breach/met decision logic in one place.
    """

    @staticmethod
    def evaluate_metric(
        deadline: Optional[datetime],
        met_at: Optional[datetime],
        current_time: datetime
    ) -> Optional[MetricVerdict]:
        """
        Decide whether a metric is met or breached.

        Returns:
            MetricVerdict with state "met" or "breached", or None when the
            metric is still running or has no deadline.
        """
        if deadline is None:
            return None

        if met_at is None:
            if current_time > deadline:
                return MetricVerdict(SLAEventStatus.BREACHED)
            return None

        if met_at > deadline:
            return MetricVerdict(SLAEventStatus.BREACHED, met_at)
        return MetricVerdict(SLAEventStatus.MET, met_at)

    @staticmethod
    def notification_delay(rule: NotificationRule) -> timedelta:
        """Delay of a rule; zero when it fires immediately."""
        if not rule.has_delay:
            return timedelta(0)
        return parse_duration(rule.time_delay)

    @staticmethod
    def is_too_late(send_at: datetime, current_time: datetime) -> bool:
        """Check if a send time lies further in the past than the tolerance."""
        return send_at < current_time - NOTIFICATION_PAST_TOLERANCE

    @staticmethod
    def build_notification_schedule(
        rules: List[NotificationRule],
        deadlines: Deadlines,
        breaches: Breaches
    ) -> List[NotificationCandidate]:
        """
        Compute send times for warning and breach notifications.

        Warnings fire `delay` before the deadline, breaches `delay` after the
        breach. Rules with an unparsable delay raise InvalidDurationException;
        callers decide whether to skip them.
        """
        candidates: List[NotificationCandidate] = []
        metrics = (Metric.FIRST_RESPONSE, Metric.RESOLUTION, Metric.NEXT_RESPONSE)

        for rule in rules:
            delay = SLACalculator.notification_delay(rule)

            for metric in metrics:
                if not rule.applies_to(metric):
                    continue
                if rule.type == NotificationType.WARNING:
                    target = deadlines.for_metric(metric)
                    if target is None:
                        continue
                    send_at = target - delay
                elif rule.type == NotificationType.BREACH:
                    target = breaches.for_metric(metric)
                    if target is None:
                        continue
                    send_at = target + delay
                else:
                    continue
                candidates.append(NotificationCandidate(
                    send_at=send_at,
                    metric=metric,
                    notification_type=rule.type,
                    recipients=list(rule.recipients)
                ))

        return candidates
