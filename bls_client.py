from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import get_settings


logger = logging.getLogger(__name__)

MONTHLY_PERIOD = re.compile(r"^M(0[1-9]|1[0-2])$")
SUCCESS_STATUSES = {"REQUEST_SUCCEEDED", "SUCCESS"}
MISSING_VALUES = {"", "-"}
INDEX_PLACES = Decimal("0.001")
MAX_INDEX_VALUE = Decimal("10000000")
MIN_YEAR, MAX_YEAR = 1900, 9999


class IngestionFailure(RuntimeError):
    pass


@dataclass(frozen=True)
class BlsPoint:
    year: int
    month: int
    value: Decimal


@dataclass
class BlsSeries:
    series_id: str
    points: list[BlsPoint] = field(default_factory=list)
    skipped: int = 0


def build_payload(
    series_ids: Sequence[str],
    start_year: int,
    end_year: int,
    registration_key: Optional[str] = None,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "seriesid": list(series_ids),
        "startyear": str(start_year),
        "endyear": str(end_year),
    }
    if registration_key:
        payload["registrationkey"] = registration_key
    return payload


def fetch_series(
    series_ids: Sequence[str], start_year: int, end_year: int
) -> list[BlsSeries]:
    """POST one batched request to the BLS timeseries API and parse it."""
    settings = get_settings()
    payload = build_payload(series_ids, start_year, end_year, settings.bls_api_key)
    req = Request(
        settings.bls_api_url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        method="POST",
    )
    kwargs: dict[str, Any] = {}
    if settings.bls_timeout_secs is not None:
        kwargs["timeout"] = settings.bls_timeout_secs
    logger.info(
        f"bls_request: series={len(payload['seriesid'])} "
        f"years={start_year}-{end_year}"
    )
    try:
        with urlopen(req, **kwargs) as resp:
            body = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise IngestionFailure("Failed to fetch CPI series from BLS") from exc
    return parse_response(body)


def parse_response(body: object) -> list[BlsSeries]:
    if not isinstance(body, dict):
        raise IngestionFailure("Unexpected BLS response: not a JSON object")

    status = str(body.get("status", "")).upper()
    if status not in SUCCESS_STATUSES:
        messages = body.get("message") or []
        detail = "; ".join(str(m) for m in messages) if messages else "no message"
        raise IngestionFailure(f"BLS request failed with status {status!r}: {detail}")

    try:
        raw_series = body["Results"]["series"]
    except (KeyError, TypeError) as exc:
        raise IngestionFailure("Unexpected BLS response: missing Results.series") from exc
    if not isinstance(raw_series, list):
        raise IngestionFailure("Unexpected BLS response: series is not a list")

    return [_parse_series(item) for item in raw_series]


def _parse_series(item: dict) -> BlsSeries:
    try:
        series_id = str(item["seriesID"])
        data = item.get("data") or []
    except (KeyError, TypeError, AttributeError) as exc:
        raise IngestionFailure("Unexpected BLS response: malformed series") from exc

    if not isinstance(data, list):
        raise IngestionFailure(
            f"Unexpected BLS response: data of {series_id} is not a list"
        )

    series = BlsSeries(series_id=series_id)
    for raw in data:
        if not isinstance(raw, dict):
            raise IngestionFailure(
                f"Unexpected BLS response: malformed data point in {series_id}"
            )
        point = _parse_point(raw)
        if point is None:
            series.skipped += 1
            continue
        series.points.append(point)
    series.points.sort(key=lambda p: (p.year, p.month))
    return series


def _parse_point(raw: dict) -> Optional[BlsPoint]:
    period = str(raw.get("period", ""))
    # M13 is the annual average
    if not MONTHLY_PERIOD.match(period):
        return None

    value_raw = str(raw.get("value", "")).strip()
    if value_raw in MISSING_VALUES:
        return None
    try:
        value = Decimal(value_raw).quantize(INDEX_PLACES, rounding=ROUND_HALF_UP)
        year = int(raw["year"])
    except (InvalidOperation, KeyError, TypeError, ValueError):
        return None
    # stored as Numeric(10, 3)
    if not value.is_finite() or abs(value) >= MAX_INDEX_VALUE:
        return None
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None

    return BlsPoint(year=year, month=int(period[1:]), value=value)
