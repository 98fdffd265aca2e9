from datetime import datetime

from dateutil.relativedelta import relativedelta

MONTHLY = relativedelta(months=+1)


def advance_one_month(previous: datetime) -> datetime:
    """Same day next month, clamped to the month's last day.

    The clamped day carries forward: Jan 31 -> Feb 29 -> Mar 29.
    """
    return previous + MONTHLY
