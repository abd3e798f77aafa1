from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from bls_client import BlsPoint, BlsSeries, fetch_series
from config import Settings, get_settings
from models import Category, OfficialCpiData, PersonalCpiMonthly, Receipt
from periods import (
    InvalidPeriod,
    YearMonth,
    months_between,
    shift_date_months,
    validate_period,
)

if TYPE_CHECKING:  # pragma: no cover
    from scheduler import RecomputeTask


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")
INDEX_PLACES = Decimal("0.001")

DEFAULT_CATEGORIES: tuple[tuple[int, str, str], ...] = (
    (1, "Food at Home", "CUUR0000SAF11"),
    (2, "Food Away from Home", "CUUR0000SEFV"),
    (3, "Housing", "CUUR0000SAH"),
    (4, "Transportation", "CUUR0000SAT"),
    (5, "Medical Care", "CUUR0000SAM"),
    (6, "Recreation", "CUUR0000SAR"),
    (7, "Apparel", "CUUR0000SAA"),
    (8, "Education and Communication", "CUUR0000SAE"),
)


def get_current_user_id() -> int:
    return 1


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def to_money(value: object) -> Decimal:
    if value is None:
        return ZERO.quantize(TWO_PLACES)
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def percent_change(
    current: Decimal, previous: Optional[Decimal]
) -> Optional[Decimal]:
    """Percentage change from ``previous`` to ``current``.

    The ratio is rounded half-up to four places before scaling, so the
    result carries two places. A missing or non-positive ``previous`` means
    there is nothing to compare against and yields ``None``.
    """
    if previous is None or previous <= 0:
        return None
    ratio = ((current - previous) / previous).quantize(
        FOUR_PLACES, rounding=ROUND_HALF_UP
    )
    return (ratio * HUNDRED).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def share_percent(part: Decimal, whole: Decimal) -> Optional[Decimal]:
    if whole <= 0:
        return None
    ratio = (part / whole).quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)
    return (ratio * HUNDRED).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class CPIDataNotFound(ValueError):
    pass


@dataclass(frozen=True)
class CategoryRef:
    id: int
    name: str
    bls_series_id: Optional[str] = None


class CategoryCatalog(Protocol):
    def list_categories(self) -> list[CategoryRef]: ...


class SpendingAggregator(Protocol):
    def sum_spending(
        self, user_id: int, category_id: Optional[int], start: date, end: date
    ) -> Decimal: ...

    def earliest_transaction_date(self, user_id: int) -> Optional[date]: ...


class DatabaseCategoryCatalog:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_categories(self) -> list[CategoryRef]:
        rows = self.session.scalars(select(Category).order_by(Category.id)).all()
        return [CategoryRef(row.id, row.name, row.bls_series_id) for row in rows]


class StaticCategoryCatalog:
    def __init__(self, categories: Sequence[CategoryRef]) -> None:
        self._categories = list(categories)

    def list_categories(self) -> list[CategoryRef]:
        return list(self._categories)


class ReceiptSpendingAggregator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def sum_spending(
        self, user_id: int, category_id: Optional[int], start: date, end: date
    ) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Receipt.amount), 0)).where(
                Receipt.user_id == user_id,
                Receipt.category_id.is_not_distinct_from(category_id),
                Receipt.purchase_date.between(start, end),
            )
        ).scalar_one()
        return to_money(total)

    def earliest_transaction_date(self, user_id: int) -> Optional[date]:
        return self.session.scalar(
            select(func.min(Receipt.purchase_date)).where(Receipt.user_id == user_id)
        )


def seed_default_categories(session: Session) -> int:
    existing = set(session.scalars(select(Category.id)).all())
    added = 0
    for category_id, name, series_id in DEFAULT_CATEGORIES:
        if category_id in existing:
            continue
        session.add(Category(id=category_id, name=name, bls_series_id=series_id))
        added += 1
    if added:
        session.commit()
        logger.info(f"categories_seeded: added={added}")
    return added


class RecomputeDispatcher(Protocol):
    def submit_recompute(self, user_id: int) -> "RecomputeTask": ...


@dataclass(frozen=True)
class CategoryBreakdown:
    category_id: int
    category_name: Optional[str]
    spending: Decimal
    weight_percent: Optional[Decimal]
    mom_change_percent: Optional[Decimal]
    yoy_change_percent: Optional[Decimal]


@dataclass(frozen=True)
class PersonalCpiBreakdown:
    user_id: int
    year: int
    month: int
    total_spending: Decimal
    mom_change_percent: Optional[Decimal]
    yoy_change_percent: Optional[Decimal]
    calculated_at: datetime
    categories: list[CategoryBreakdown]


class PersonalCPIService:
    def __init__(
        self,
        session: Session,
        *,
        aggregator: Optional[SpendingAggregator] = None,
        catalog: Optional[CategoryCatalog] = None,
        dispatcher: Optional[RecomputeDispatcher] = None,
    ) -> None:
        self.session = session
        self.aggregator = aggregator or ReceiptSpendingAggregator(session)
        self.catalog = catalog or DatabaseCategoryCatalog(session)
        self.dispatcher = dispatcher

    def calculate_monthly_personal_cpi(
        self, user_id: int, year: int, month: int
    ) -> list[PersonalCpiMonthly]:
        period = YearMonth(year, month)

        spending: dict[int, Decimal] = {}
        for category in self.catalog.list_categories():
            spending[category.id] = to_money(
                self.aggregator.sum_spending(
                    user_id, category.id, period.start, period.end
                )
            )
        total = sum(spending.values(), ZERO)

        rows: list[PersonalCpiMonthly] = []
        if total > 0:
            calculated_at = datetime.utcnow()
            for category_id, amount in spending.items():
                if amount > 0:
                    rows.append(
                        self._build_row(user_id, period, category_id, amount, calculated_at)
                    )
            rows.append(self._build_row(user_id, period, None, total, calculated_at))

        self._replace_month(user_id, period, rows)
        logger.info(
            f"personal_cpi_calculated: user_id={user_id} period={period} "
            f"total={total} categories={max(len(rows) - 1, 0)}"
        )
        return rows

    def _build_row(
        self,
        user_id: int,
        period: YearMonth,
        category_id: Optional[int],
        amount: Decimal,
        calculated_at: datetime,
    ) -> PersonalCpiMonthly:
        previous = self._stored_spending(user_id, period.previous(), category_id)
        year_ago = self._stored_spending(user_id, period.shift(-12), category_id)
        return PersonalCpiMonthly(
            user_id=user_id,
            year=period.year,
            month=period.month,
            category_id=category_id,
            total_spending=amount,
            mom_change_percent=percent_change(amount, previous),
            yoy_change_percent=percent_change(amount, year_ago),
            calculated_at=calculated_at,
        )

    def _stored_spending(
        self, user_id: int, period: YearMonth, category_id: Optional[int]
    ) -> Optional[Decimal]:
        value = self.session.scalar(
            select(PersonalCpiMonthly.total_spending).where(
                PersonalCpiMonthly.user_id == user_id,
                PersonalCpiMonthly.year == period.year,
                PersonalCpiMonthly.month == period.month,
                PersonalCpiMonthly.category_id.is_not_distinct_from(category_id),
            )
        )
        return None if value is None else to_money(value)

    def _replace_month(
        self, user_id: int, period: YearMonth, rows: list[PersonalCpiMonthly]
    ) -> None:
        try:
            self.session.execute(
                delete(PersonalCpiMonthly).where(
                    PersonalCpiMonthly.user_id == user_id,
                    PersonalCpiMonthly.year == period.year,
                    PersonalCpiMonthly.month == period.month,
                )
            )
            self.session.add_all(rows)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def get_personal_cpi_summary(
        self, user_id: int, year: int, month: int
    ) -> list[PersonalCpiMonthly]:
        stmt = (
            select(PersonalCpiMonthly)
            .where(
                PersonalCpiMonthly.user_id == user_id,
                PersonalCpiMonthly.year == year,
                PersonalCpiMonthly.month == month,
            )
            .order_by(
                PersonalCpiMonthly.category_id.is_(None).desc(),
                PersonalCpiMonthly.category_id,
            )
        )
        return list(self.session.scalars(stmt).all())

    def get_overall_personal_cpi(
        self, user_id: int, year: int, month: int
    ) -> Optional[PersonalCpiMonthly]:
        return self.session.scalar(
            select(PersonalCpiMonthly).where(
                PersonalCpiMonthly.user_id == user_id,
                PersonalCpiMonthly.year == year,
                PersonalCpiMonthly.month == month,
                PersonalCpiMonthly.category_id.is_(None),
            )
        )

    def get_personal_cpi_breakdown(
        self, user_id: int, year: int, month: int
    ) -> PersonalCpiBreakdown:
        validate_period(year, month)
        rows = self.get_personal_cpi_summary(user_id, year, month)
        overall = next((row for row in rows if row.category_id is None), None)
        if overall is None:
            raise CPIDataNotFound(
                f"No personal CPI data found for {YearMonth(year, month)}"
            )

        names = {c.id: c.name for c in self.catalog.list_categories()}
        categories = [
            CategoryBreakdown(
                category_id=row.category_id,
                category_name=names.get(row.category_id),
                spending=row.total_spending,
                weight_percent=share_percent(
                    row.total_spending, overall.total_spending
                ),
                mom_change_percent=row.mom_change_percent,
                yoy_change_percent=row.yoy_change_percent,
            )
            for row in rows
            if row.category_id is not None
        ]
        return PersonalCpiBreakdown(
            user_id=user_id,
            year=year,
            month=month,
            total_spending=overall.total_spending,
            mom_change_percent=overall.mom_change_percent,
            yoy_change_percent=overall.yoy_change_percent,
            calculated_at=overall.calculated_at,
            categories=categories,
        )

    def recalculate_all_for_user(
        self, user_id: int, *, today: Optional[date] = None
    ) -> int:
        earliest = self.aggregator.earliest_transaction_date(user_id)
        if earliest is None:
            logger.info(f"recompute_skipped: user_id={user_id} reason=no_receipts")
            return 0

        today = today or local_today()
        history_months = get_settings().history_months
        window_start = shift_date_months(today, -history_months)
        if earliest < window_start:
            logger.info(
                f"recompute_clamped: user_id={user_id} earliest={earliest} "
                f"start={window_start}"
            )
            earliest = window_start

        start = YearMonth.from_date(earliest)
        end = YearMonth.from_date(today)
        months = list(months_between(start, end))
        logger.info(
            f"recompute_started: user_id={user_id} from={start} to={end} "
            f"months={len(months)}"
        )
        for processed, period in enumerate(months, start=1):
            self.calculate_monthly_personal_cpi(user_id, period.year, period.month)
            if processed % 6 == 0:
                logger.info(
                    f"recompute_progress: user_id={user_id} "
                    f"processed={processed}/{len(months)}"
                )
        logger.info(f"recompute_done: user_id={user_id} months={len(months)}")
        return len(months)

    def recalculate_all_for_user_async(self, user_id: int) -> "RecomputeTask":
        if self.dispatcher is None:
            raise RuntimeError("No background dispatcher configured")
        return self.dispatcher.submit_recompute(user_id)


SeriesFetcher = Callable[[Sequence[str], int, int], list[BlsSeries]]

# Upserts are read-then-write; keep ingestion runs in this process sequential.
_INGEST_LOCK = threading.Lock()


@dataclass
class IngestionSummary:
    start_year: int
    end_year: int
    series_requested: int
    series_stored: int = 0
    points_upserted: int = 0
    points_skipped: int = 0
    unmapped_series: list[str] = field(default_factory=list)


class OfficialCPIService:
    def __init__(
        self,
        session: Session,
        *,
        catalog: Optional[CategoryCatalog] = None,
        fetcher: Optional[SeriesFetcher] = None,
        settings: Optional[Settings] = None,
        lookback: Optional[str] = None,
        unmapped_series: Optional[str] = None,
    ) -> None:
        self.session = session
        self.catalog = catalog or DatabaseCategoryCatalog(session)
        self.fetcher = fetcher or fetch_series
        self.settings = settings or get_settings()
        self.lookback = lookback or self.settings.bls_lookback
        self.unmapped_series = unmapped_series or self.settings.bls_unmapped_series
        if self.lookback not in ("sequence", "calendar"):
            raise ValueError(f"Unsupported lookback mode: {self.lookback}")
        if self.unmapped_series not in ("overall", "skip"):
            raise ValueError(f"Unsupported unmapped series policy: {self.unmapped_series}")

    def get_official_cpi(
        self, year: int, month: int, category_id: Optional[int] = None
    ) -> Optional[OfficialCpiData]:
        return self.session.scalar(self._key_query(year, month, category_id))

    def get_overall_official_cpi(
        self, year: int, month: int
    ) -> Optional[OfficialCpiData]:
        return self.get_official_cpi(year, month, None)

    def get_all_cpi_for_month(self, year: int, month: int) -> list[OfficialCpiData]:
        stmt = (
            select(OfficialCpiData)
            .where(OfficialCpiData.year == year, OfficialCpiData.month == month)
            .order_by(
                OfficialCpiData.category_id.is_(None).desc(),
                OfficialCpiData.category_id,
            )
        )
        return list(self.session.scalars(stmt).all())

    def has_data_for_month(self, year: int, month: int) -> bool:
        count = self.session.scalar(
            select(func.count(OfficialCpiData.id)).where(
                OfficialCpiData.year == year, OfficialCpiData.month == month
            )
        )
        return bool(count)

    def get_latest_data(self) -> Optional[OfficialCpiData]:
        return self.session.scalar(
            select(OfficialCpiData)
            .where(OfficialCpiData.category_id.is_(None))
            .order_by(OfficialCpiData.year.desc(), OfficialCpiData.month.desc())
            .limit(1)
        )

    def save_official_cpi_data(
        self,
        year: int,
        month: int,
        category_id: Optional[int],
        index_value: Decimal,
        mom_change_percent: Optional[Decimal] = None,
        yoy_change_percent: Optional[Decimal] = None,
    ) -> OfficialCpiData:
        validate_period(year, month)
        try:
            row = self._upsert(
                year,
                month,
                category_id,
                index_value.quantize(INDEX_PLACES, rounding=ROUND_HALF_UP),
                mom_change_percent,
                yoy_change_percent,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(row)
        return row

    def fetch_and_store_latest_data(
        self, *, today: Optional[date] = None
    ) -> IngestionSummary:
        today = today or local_today()
        start_year = shift_date_months(today, -self.settings.history_months).year
        end_year = today.year

        series_to_category: dict[str, Optional[int]] = {
            self.settings.bls_overall_series_id: None
        }
        for category in self.catalog.list_categories():
            if not category.bls_series_id:
                logger.info(
                    f"official_cpi_category_skipped: category_id={category.id} "
                    "reason=no_series_id"
                )
                continue
            series_to_category[category.bls_series_id] = category.id

        summary = IngestionSummary(
            start_year=start_year,
            end_year=end_year,
            series_requested=len(series_to_category),
        )
        with _INGEST_LOCK:
            results = self.fetcher(list(series_to_category), start_year, end_year)
            for series in results:
                summary.points_skipped += series.skipped
                if series.series_id in series_to_category:
                    category_id = series_to_category[series.series_id]
                else:
                    summary.unmapped_series.append(series.series_id)
                    if self.unmapped_series == "skip":
                        logger.warning(
                            f"official_cpi_unmapped_series: series_id={series.series_id} "
                            "action=skipped"
                        )
                        continue
                    logger.warning(
                        f"official_cpi_unmapped_series: series_id={series.series_id} "
                        "action=merged_into_overall"
                    )
                    category_id = None
                summary.points_upserted += self._store_series(series, category_id)
                summary.series_stored += 1

        logger.info(
            f"official_cpi_ingested: years={start_year}-{end_year} "
            f"series={summary.series_stored}/{summary.series_requested} "
            f"points={summary.points_upserted} skipped={summary.points_skipped}"
        )
        return summary

    def _store_series(self, series: BlsSeries, category_id: Optional[int]) -> int:
        points = sorted(series.points, key=lambda p: (p.year, p.month))
        values = [p.value.quantize(INDEX_PLACES, rounding=ROUND_HALF_UP) for p in points]
        by_month = {(p.year, p.month): v for p, v in zip(points, values)}
        try:
            for position, point in enumerate(points):
                previous, year_ago = self._reference_values(
                    points, values, position, by_month
                )
                self._upsert(
                    point.year,
                    point.month,
                    category_id,
                    values[position],
                    percent_change(values[position], previous),
                    percent_change(values[position], year_ago),
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return len(points)

    def _reference_values(
        self,
        points: list[BlsPoint],
        values: list[Decimal],
        position: int,
        by_month: dict[tuple[int, int], Decimal],
    ) -> tuple[Optional[Decimal], Optional[Decimal]]:
        if self.lookback == "calendar":
            point = points[position]
            previous = YearMonth(point.year, point.month).previous()
            return (
                by_month.get((previous.year, previous.month)),
                by_month.get((point.year - 1, point.month)),
            )
        # sequence: neighbours in the gap-compacted list, not calendar months
        previous_value = values[position - 1] if position >= 1 else None
        year_ago_value = values[position - 12] if position >= 12 else None
        return previous_value, year_ago_value

    def _key_query(self, year: int, month: int, category_id: Optional[int]):
        return select(OfficialCpiData).where(
            OfficialCpiData.year == year,
            OfficialCpiData.month == month,
            OfficialCpiData.category_id.is_not_distinct_from(category_id),
        )

    def _upsert(
        self,
        year: int,
        month: int,
        category_id: Optional[int],
        index_value: Decimal,
        mom_change_percent: Optional[Decimal],
        yoy_change_percent: Optional[Decimal],
    ) -> OfficialCpiData:
        existing = self.session.scalar(self._key_query(year, month, category_id))
        if existing:
            existing.index_value = index_value
            existing.mom_change_percent = mom_change_percent
            existing.yoy_change_percent = yoy_change_percent
            return existing

        row = OfficialCpiData(
            year=year,
            month=month,
            category_id=category_id,
            index_value=index_value,
            mom_change_percent=mom_change_percent,
            yoy_change_percent=yoy_change_percent,
        )
        self.session.add(row)
        self.session.flush()
        return row


@dataclass
class ComparisonResult:
    user_id: int
    year: int
    month: int
    personal_total_spending: Decimal
    personal_mom_change_percent: Optional[Decimal]
    personal_yoy_change_percent: Optional[Decimal]
    official_index_value: Decimal
    official_mom_change_percent: Optional[Decimal]
    official_yoy_change_percent: Optional[Decimal]
    delta_mom: Optional[Decimal] = None
    delta_yoy: Optional[Decimal] = None
    message: str = ""


def _delta(personal: Optional[Decimal], official: Optional[Decimal]) -> Optional[Decimal]:
    if personal is None or official is None:
        return None
    return (personal - official).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def comparison_message(delta_yoy: Optional[Decimal]) -> str:
    if delta_yoy is None:
        return "Insufficient data for year-over-year comparison."
    if delta_yoy > 0:
        return (
            f"Your personal inflation is running {abs(delta_yoy):.2f}% higher "
            "than the national average this year."
        )
    if delta_yoy < 0:
        return (
            f"Your personal inflation is running {abs(delta_yoy):.2f}% lower "
            "than the national average this year."
        )
    return "Your personal inflation matches the national average this year."


class CPIComparisonService:
    def __init__(
        self,
        session: Session,
        *,
        personal: Optional[PersonalCPIService] = None,
        official: Optional[OfficialCPIService] = None,
    ) -> None:
        self.session = session
        self.personal = personal or PersonalCPIService(session)
        self.official = official or OfficialCPIService(session)

    def compare_to_official_cpi(
        self, user_id: int, year: int, month: int
    ) -> ComparisonResult:
        period = YearMonth(year, month)
        personal = self.personal.get_overall_personal_cpi(user_id, year, month)
        if personal is None:
            raise CPIDataNotFound(f"No personal CPI data found for {period}")
        official = self.official.get_overall_official_cpi(year, month)
        if official is None:
            raise CPIDataNotFound(f"No official CPI data found for {period}")

        result = ComparisonResult(
            user_id=user_id,
            year=year,
            month=month,
            personal_total_spending=personal.total_spending,
            personal_mom_change_percent=personal.mom_change_percent,
            personal_yoy_change_percent=personal.yoy_change_percent,
            official_index_value=official.index_value,
            official_mom_change_percent=official.mom_change_percent,
            official_yoy_change_percent=official.yoy_change_percent,
        )
        result.delta_mom = _delta(
            personal.mom_change_percent, official.mom_change_percent
        )
        result.delta_yoy = _delta(
            personal.yoy_change_percent, official.yoy_change_percent
        )
        result.message = comparison_message(result.delta_yoy)
        return result

    def get_comparison_time_series(
        self, user_id: int, start_date: date, end_date: date
    ) -> list[ComparisonResult]:
        """Comparisons for every month from ``start_date`` to ``end_date``.

        Months missing either side are left out. A range whose start lies after
        its end raises ``InvalidPeriod`` instead of yielding an empty list, so
        swapped query parameters are reported to the caller as a 400 and are
        not mistaken for a range without data.
        """
        if start_date > end_date:
            raise InvalidPeriod("Start date must be before end date")

        results: list[ComparisonResult] = []
        for period in months_between(
            YearMonth.from_date(start_date), YearMonth.from_date(end_date)
        ):
            try:
                results.append(
                    self.compare_to_official_cpi(user_id, period.year, period.month)
                )
            except CPIDataNotFound:
                continue
        return results
