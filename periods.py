from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional


class InvalidPeriod(ValueError):
    pass


@dataclass(frozen=True, order=True)
class YearMonth:
    year: int
    month: int

    def __post_init__(self) -> None:
        validate_period(self.year, self.month)

    @classmethod
    def from_date(cls, value: date) -> "YearMonth":
        return cls(value.year, value.month)

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        if self.month == 12:
            return date(self.year + 1, 1, 1) - date.resolution
        return date(self.year, self.month + 1, 1) - date.resolution

    def shift(self, months: int) -> "YearMonth":
        index = self.year * 12 + (self.month - 1) + months
        return YearMonth(index // 12, index % 12 + 1)

    def previous(self) -> "YearMonth":
        return self.shift(-1)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def validate_period(year: int, month: int) -> None:
    if not isinstance(year, int) or not isinstance(month, int):
        raise InvalidPeriod(f"Year and month must be integers, got {year!r}-{month!r}")
    if month < 1 or month > 12:
        raise InvalidPeriod(f"Month must be between 1 and 12, got {month}")
    if year < 1900 or year > 9999:
        raise InvalidPeriod(f"Year out of range: {year}")


def months_between(start: YearMonth, end: YearMonth) -> Iterator[YearMonth]:
    """Yield every calendar month from ``start`` to ``end`` inclusive."""
    current = start
    while current <= end:
        yield current
        current = current.shift(1)


def resolve_month(
    year: Optional[int], month: Optional[int], *, today: Optional[date] = None
) -> YearMonth:
    if year is None or month is None:
        return YearMonth.from_date(today or date.today())
    return YearMonth(year, month)


def shift_date_months(value: date, months: int) -> date:
    """Move ``value`` by whole months, clamping the day to the target month."""
    target = YearMonth.from_date(value).shift(months)
    return date(target.year, target.month, min(value.day, target.end.day))
