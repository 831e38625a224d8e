"""Cron schedules for scheduled automation rules.

Config schema (``trigger_config`` of a rule with trigger type ``scheduled``):
    {
        "cron": "0 9 * * MON",       # standard 5-field cron expression
        "timezone": "Europe/Sofia"    # IANA timezone, default UTC
    }

``schedule`` is accepted as an older spelling of ``cron``.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

SCHEDULED_TRIGGER = "scheduled"


def cron_expression(trigger_config: Optional[dict]) -> Optional[str]:
    config = trigger_config or {}
    return config.get("cron") or config.get("schedule")


def validate_schedule(trigger_config: Optional[dict]) -> list[str]:
    """Return the problems with a scheduled trigger config (empty when valid)."""
    errors = []
    expr = cron_expression(trigger_config)
    if not expr:
        errors.append("Scheduled rules need a 'cron' expression in trigger_config")
    elif not croniter.is_valid(expr):
        errors.append(f"Invalid cron expression '{expr}'")

    tz = (trigger_config or {}).get("timezone", "UTC")
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        errors.append(f"Unknown timezone '{tz}'")
    return errors


def compute_next_run(trigger_config: dict, after: datetime) -> datetime:
    """Next occurrence strictly after ``after``, as an aware UTC datetime.

    The cron expression is interpreted in the config's timezone.
    """
    tz = ZoneInfo((trigger_config or {}).get("timezone", "UTC"))
    cron = croniter(cron_expression(trigger_config), after.astimezone(tz))
    return cron.get_next(datetime).astimezone(timezone.utc)
