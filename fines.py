from datetime import date
from decimal import Decimal, ROUND_HALF_UP

CENTS = Decimal('0.01')


def days_overdue(due_date: date, as_of: date) -> int:
    """Whole calendar days past ``due_date`` as of ``as_of``; never negative."""
    return max(0, (as_of - due_date).days)


def calculate_fine(due_date: date, as_of: date, daily_rate) -> Decimal:
    """Fine owed for a loan due on ``due_date`` when settled on ``as_of``.

    Integer days times a fixed rate, no proration.
    """
    rate = Decimal(str(daily_rate))
    if rate < 0:
        raise ValueError('daily_rate must not be negative')
    return (days_overdue(due_date, as_of) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
