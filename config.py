import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


BLS_API_V1_URL = "https://api.bls.gov/publicAPI/v1/timeseries/data/"
BLS_API_V2_URL = "https://api.bls.gov/publicAPI/v2/timeseries/data/"

LOOKBACK_MODES = ("sequence", "calendar")
UNMAPPED_SERIES_POLICIES = ("overall", "skip")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        history_months: int,
        recompute_workers: int,
        ingest_schedule_enabled: bool,
        bls_api_key: str,
        bls_api_url: str,
        bls_overall_series_id: str,
        bls_timeout_secs: Optional[float],
        bls_lookback: str,
        bls_unmapped_series: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.history_months = history_months
        self.recompute_workers = recompute_workers
        self.ingest_schedule_enabled = ingest_schedule_enabled
        self.bls_api_key = bls_api_key
        self.bls_api_url = bls_api_url
        self.bls_overall_series_id = bls_overall_series_id
        self.bls_timeout_secs = bls_timeout_secs
        self.bls_lookback = bls_lookback
        self.bls_unmapped_series = bls_unmapped_series


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PERSONAL_CPI_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _choice(name: str, default: str, allowed: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in allowed:
        raise ValueError(f"{name} must be one of {', '.join(allowed)}, got {value!r}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "personal_cpi.db"
    database_url = os.getenv("PERSONAL_CPI_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("PERSONAL_CPI_TIMEZONE", "America/New_York")
    history_months = int(os.getenv("PERSONAL_CPI_HISTORY_MONTHS", "24"))
    recompute_workers = int(os.getenv("PERSONAL_CPI_RECOMPUTE_WORKERS", "2"))
    ingest_schedule_enabled = os.getenv("PERSONAL_CPI_INGEST_SCHEDULE", "1") not in (
        "0",
        "false",
        "no",
    )
    bls_api_key = os.getenv("BLS_API_KEY", "").strip()
    bls_api_url = os.getenv(
        "BLS_API_URL", BLS_API_V2_URL if bls_api_key else BLS_API_V1_URL
    )
    bls_overall_series_id = os.getenv("BLS_OVERALL_SERIES_ID", "CUUR0000SA0")
    timeout_raw = os.getenv("BLS_TIMEOUT_SECS", "").strip()
    bls_timeout_secs = float(timeout_raw) if timeout_raw else None
    bls_lookback = _choice("BLS_LOOKBACK", "sequence", LOOKBACK_MODES)
    bls_unmapped_series = _choice(
        "BLS_UNMAPPED_SERIES", "overall", UNMAPPED_SERIES_POLICIES
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        history_months=history_months,
        recompute_workers=recompute_workers,
        ingest_schedule_enabled=ingest_schedule_enabled,
        bls_api_key=bls_api_key,
        bls_api_url=bls_api_url,
        bls_overall_series_id=bls_overall_series_id,
        bls_timeout_secs=bls_timeout_secs,
        bls_lookback=bls_lookback,
        bls_unmapped_series=bls_unmapped_series,
    )
