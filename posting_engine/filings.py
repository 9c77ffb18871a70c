"""
Tax filing schedule.

Generates the return periods a business owes for a year according to
its jurisdiction's filing cadence, stores them as TaxFiling records and
tracks which have been filed. The readiness scorer reads these records
to find late filings.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from posting_engine.errors import NotFoundError
from posting_engine.models import Business, FilingStatus, Period, TaxFiling
from posting_engine.rates import FilingCadence, RuleStore
from posting_engine.store import RecordStore

logger = logging.getLogger(__name__)

FILING_DUE_DAY = 20


def due_date_for(period_end: date, due_day: int = FILING_DUE_DAY) -> date:
    """Returns fall due on ``due_day`` of the month after the period ends."""
    if period_end.month == 12:
        return date(period_end.year + 1, 1, due_day)
    return date(period_end.year, period_end.month + 1, due_day)


def cadence_for_liability(annual_liability: Decimal) -> FilingCadence:
    """
    Pick a cadence where the jurisdiction leaves it to the tax amount.

    - >= 4,800/yr -> monthly
    - >= 1,200/yr -> quarterly
    - otherwise   -> annual
    """
    if annual_liability >= 4800:
        return FilingCadence.MONTHLY
    elif annual_liability >= 1200:
        return FilingCadence.QUARTERLY
    else:
        return FilingCadence.ANNUAL


def periods_for(year: int, cadence: FilingCadence) -> list[Period]:
    if cadence is FilingCadence.MONTHLY:
        periods = []
        for month in range(1, 13):
            start = date(year, month, 1)
            if month == 12:
                end = date(year, 12, 31)
            else:
                end = date(year, month + 1, 1) - timedelta(days=1)
            periods.append(Period(start, end))
        return periods
    if cadence is FilingCadence.QUARTERLY:
        return [
            Period(date(year, 1, 1), date(year, 3, 31)),
            Period(date(year, 4, 1), date(year, 6, 30)),
            Period(date(year, 7, 1), date(year, 9, 30)),
            Period(date(year, 10, 1), date(year, 12, 31)),
        ]
    return [Period(date(year, 1, 1), date(year, 12, 31))]


def filing_key(business_id: str, jurisdiction: str, period: Period) -> str:
    return f"{business_id}:{jurisdiction}:{period.start.isoformat()}_{period.end.isoformat()}"


class FilingSchedule:
    """Creates, lists and closes filing obligations for businesses."""

    def __init__(
        self,
        store: RecordStore,
        rules: Optional[RuleStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.rules = rules or RuleStore()
        self.clock = clock or datetime.now

    def _business(self, business_id: str) -> Business:
        business = self.store.load(Business, business_id)
        if business is None:
            raise NotFoundError("business", business_id)
        return business

    def generate(
        self,
        business_id: str,
        year: int,
        cadence: Optional[FilingCadence] = None,
        estimated_annual_liability: Decimal = Decimal("0"),
    ) -> list[TaxFiling]:
        """
        Ensure a filing record exists for every period of ``year``.

        Existing records (including filed ones) are left as they are, so
        this can be run repeatedly.
        """
        business = self._business(business_id)
        jurisdiction = business.jurisdiction.upper()
        if cadence is None:
            rule = self.rules.get(jurisdiction, date(year, 12, 31))
            cadence = rule.filing_cadence if rule else FilingCadence.QUARTERLY
        if cadence is FilingCadence.VARIES:
            cadence = cadence_for_liability(estimated_annual_liability)

        filings = []
        created = 0
        for period in periods_for(year, cadence):
            filing = TaxFiling(
                id=filing_key(business.id, jurisdiction, period),
                business_id=business.id,
                jurisdiction=jurisdiction,
                period_start=period.start,
                period_end=period.end,
                due_date=due_date_for(period.end),
            )
            if self.store.add(filing):
                created += 1
            else:
                filing = self.store.load(TaxFiling, filing.id)
            filings.append(filing)

        if created:
            logger.info(
                "Scheduled %d %s filing(s) for %s in %d",
                created, cadence.value.lower(), business.id, year,
            )
        return filings

    def mark_filed(
        self,
        business_id: str,
        period_start: date,
        period_end: date,
        filed_on: Optional[date] = None,
    ) -> TaxFiling:
        """Record that the return for a period has been filed."""
        business = self._business(business_id)
        key = filing_key(business.id, business.jurisdiction.upper(), Period(period_start, period_end))
        day = filed_on or self.clock().date()

        def close(filing: TaxFiling) -> bool:
            filing.status = FilingStatus.FILED
            filing.filed_on = day
            return True

        try:
            filing = self.store.update(TaxFiling, key, close)
        except KeyError:
            raise NotFoundError("filing", key) from None
        logger.info("Marked %s filed on %s", key, day)
        return filing

    def filings_for(
        self, business_id: str, period: Optional[Period] = None
    ) -> list[TaxFiling]:
        filings = self.store.query(TaxFiling, business_id=business_id)
        if period is not None:
            filings = [
                f for f in filings
                if f.period_end >= period.start and f.period_start <= period.end
            ]
        return sorted(filings, key=lambda f: (f.period_start, f.jurisdiction))

    def overdue(
        self, business_id: str, as_of: Optional[date] = None
    ) -> list[TaxFiling]:
        """Unfiled returns whose due date has passed, oldest first."""
        today = as_of or self.clock().date()
        return sorted(
            (
                f for f in self.store.query(TaxFiling, business_id=business_id)
                if f.status is not FilingStatus.FILED and f.due_date < today
            ),
            key=lambda f: f.due_date,
        )
