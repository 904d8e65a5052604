# insulctrl/clock.py
"""Countdown helpers computed from the appliance's own clock."""

from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Optional

from .const import COUNTDOWN_PLACEHOLDER, SECONDS_PER_DAY


def second_of_day(epoch_seconds: int, tz: Optional[tzinfo] = None) -> int:
    """Return seconds since local midnight (or midnight in ``tz``)."""
    moment = datetime.fromtimestamp(int(epoch_seconds), tz)
    return moment.hour * 3600 + moment.minute * 60 + moment.second


def format_duration(seconds: int) -> str:
    """Format a non-negative duration as zero-padded HH:MM:SS."""
    seconds = max(0, int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def seconds_until(
    device_clock: int, alarm_hour: int, alarm_minute: int, tz: Optional[tzinfo] = None
) -> int:
    """
    Seconds from the device clock to the next ``alarm_hour:alarm_minute:00``.

    The alarm instant counts when it equals "now" (result 0); anything
    earlier in the day rolls over to tomorrow, so the result is always in
    ``[0, 86400)``. Wall-clock arithmetic: DST jumps are not applied.
    """
    target = int(alarm_hour) * 3600 + int(alarm_minute) * 60
    return (target - second_of_day(device_clock, tz)) % SECONDS_PER_DAY


def countdown_to(
    device_clock: Optional[int],
    alarm_hour: int,
    alarm_minute: int,
    tz: Optional[tzinfo] = None,
) -> str:
    """Return the remaining time until the alarm as ``HH:MM:SS``.

    ``None`` or ``0`` device clock means the appliance has not reported a
    time yet and yields the ``--:--:--`` placeholder. Call this on every
    render tick; the value is never cached.
    """
    if not device_clock:
        return COUNTDOWN_PLACEHOLDER
    return format_duration(seconds_until(device_clock, alarm_hour, alarm_minute, tz))
