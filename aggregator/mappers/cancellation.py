from datetime import date, datetime, time, timezone

from aggregator.schemas.listing import FlexiblePolicy, ModeratePolicy, StrictPolicy


def hours_until(check_in: date, now: datetime) -> float:
    start = datetime.combine(check_in, time.min, tzinfo=timezone.utc)
    return (start - now).total_seconds() / 3600


def is_refundable(
    policy: FlexiblePolicy | ModeratePolicy | StrictPolicy,
    check_in: date,
    now: datetime | None = None,
) -> bool:
    """True when some rule still grants a refund above 50% at `now`."""
    if not policy.rules:
        return False
    now = now or datetime.now(timezone.utc)
    remaining = hours_until(check_in, now)
    return any(
        remaining >= rule.before_hours and rule.refund_percentage > 50
        for rule in policy.rules
    )
