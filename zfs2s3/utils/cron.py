"""
Quartz-style cron expressions evaluated with APScheduler.

Expressions have 7 whitespace separated fields (the year may be omitted):

      sec  min   hour   day of month   month   day of week   year
    "0   30   9,12,15     1,15       May-Aug  Mon,Wed,Fri  2018/2"

Supported: lists, ranges, steps (``*/n``, ``a-b/n``, ``a/n``), month and
weekday names, ``?`` as an alias for ``*`` and ``L`` (last day of month).
Numeric weekdays follow Quartz: 1 = Sunday ... 7 = Saturday, and weekday
steps count from Sunday too.
All expressions are evaluated in UTC.
"""

from datetime import datetime, timedelta
from typing import Optional

from apscheduler.triggers.cron import CronTrigger


FIELD_NAMES = ('second', 'minute', 'hour', 'day', 'month', 'day_of_week', 'year')

QUARTZ_WEEKDAYS = {
    1: 'sun',
    2: 'mon',
    3: 'tue',
    4: 'wed',
    5: 'thu',
    6: 'fri',
    7: 'sat',
}

WEEKDAY_NUMBERS = {name: number for number, name in QUARTZ_WEEKDAYS.items()}

EXPRESSION_HELP = """Cron expression format:
      sec  min   hour   day of month   month   day of week   year
E.g., "0   30   9,12,15     1,15       May-Aug  Mon,Wed,Fri  2018/2\""""


class CronError(ValueError):
    """Raised when a cron expression cannot be parsed."""
    pass


def _weekday_number(value: str) -> int:
    if value.isdigit():
        number = int(value)
    else:
        number = WEEKDAY_NUMBERS.get(value, 0)
    if number not in QUARTZ_WEEKDAYS:
        raise CronError(f"Day of week out of range (1-7): {value}")
    return number


def _expand_weekday_step(body: str, step: str) -> str:
    """Expand ``a/n``, ``a-b/n`` and ``*/n`` into a list of weekday names."""
    if not step.isdigit() or int(step) < 1:
        raise CronError(f"Invalid day of week step: {step!r}")
    if body == '*':
        first, last = 1, 7
    elif '-' in body:
        start, end = body.split('-', 1)
        first, last = _weekday_number(start), _weekday_number(end)
    else:
        first, last = _weekday_number(body), 7
    if first > last:
        raise CronError(f"Invalid day of week range: {body}")
    return ','.join(QUARTZ_WEEKDAYS[n] for n in range(first, last + 1, int(step)))


def _translate_weekdays(value: str) -> str:
    """Rewrite numeric Quartz weekdays into APScheduler weekday names."""
    translated = []
    for part in value.split(','):
        body, sep, step = part.partition('/')
        if sep:
            translated.append(_expand_weekday_step(body, step))
            continue
        ends = []
        for end in body.split('-'):
            if end.isdigit():
                end = QUARTZ_WEEKDAYS[_weekday_number(end)]
            ends.append(end)
        translated.append('-'.join(ends))
    return ','.join(translated)


def _translate_field(name: str, value: str) -> str:
    if value == '?':
        return '*'
    if name == 'day' and value.upper() == 'L':
        return 'last'
    if name == 'day_of_week':
        return _translate_weekdays(value.lower())
    if name == 'month':
        return value.lower()
    return value


def build_trigger(expression: str) -> CronTrigger:
    """
    Compile a Quartz-style cron expression into an APScheduler trigger.

    Args:
        expression: Cron expression with 6 or 7 fields

    Returns:
        CronTrigger evaluated in UTC

    Raises:
        CronError: If the expression is malformed
    """
    fields = expression.split()
    if len(fields) == 6:
        fields.append('*')
    if len(fields) != 7:
        raise CronError(
            f"Invalid cron expression: {expression!r} "
            f"(expected 7 fields, got {len(fields)})\n\n{EXPRESSION_HELP}"
        )

    kwargs = {name: _translate_field(name, value) for name, value in zip(FIELD_NAMES, fields)}

    try:
        return CronTrigger(timezone='UTC', **kwargs)
    except ValueError as e:
        raise CronError(f"Invalid cron expression: {expression!r} ({e})\n\n{EXPRESSION_HELP}") from e


def next_fire_after(trigger: CronTrigger, now: datetime) -> Optional[datetime]:
    """
    Return the first fire time strictly after ``now``.

    APScheduler returns ``now`` itself when it falls on a fire time, which
    would fire the same second twice, so the search starts one microsecond
    later.

    Returns:
        Next fire time, or None if the expression never fires again
    """
    return trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
