import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from bls_client import IngestionFailure
from database import SessionLocal, session_scope
from periods import InvalidPeriod, resolve_month, validate_period
from scheduler import SchedulerManager
from schemas import (
    ComparisonOut,
    IngestionSummaryOut,
    MessageOut,
    OfficialCpiIn,
    OfficialCpiOut,
    PersonalCpiOut,
    RecomputeTaskOut,
)
from services import (
    CPIComparisonService,
    CPIDataNotFound,
    DatabaseCategoryCatalog,
    OfficialCPIService,
    PersonalCPIService,
    get_current_user_id,
    local_today,
    seed_default_categories,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Personal CPI")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


def get_scheduler() -> SchedulerManager:
    return scheduler_manager


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        seed_default_categories(session)
    scheduler_manager.start()
    logger.info(f"app_started: version={APP_VERSION}")


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/cpi/personal", response_model=PersonalCpiOut)
def get_personal_cpi(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
):
    user_id = get_current_user_id()
    try:
        target = resolve_month(year, month, today=local_today())
        return PersonalCPIService(db).get_personal_cpi_breakdown(
            user_id, target.year, target.month
        )
    except InvalidPeriod as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CPIDataNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/cpi/comparison", response_model=ComparisonOut)
def get_comparison(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
):
    user_id = get_current_user_id()
    try:
        target = resolve_month(year, month, today=local_today())
        return CPIComparisonService(db).compare_to_official_cpi(
            user_id, target.year, target.month
        )
    except InvalidPeriod as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CPIDataNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/cpi/comparison/timeseries", response_model=list[ComparisonOut])
def get_comparison_time_series(
    start_date: date,
    end_date: date,
    db: Session = Depends(get_db),
):
    user_id = get_current_user_id()
    try:
        return CPIComparisonService(db).get_comparison_time_series(
            user_id, start_date, end_date
        )
    except InvalidPeriod as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/cpi/calculate")
def calculate_personal_cpi(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
    scheduler: SchedulerManager = Depends(get_scheduler),
):
    user_id = get_current_user_id()
    service = PersonalCPIService(db, dispatcher=scheduler)
    if year is not None and month is not None:
        try:
            service.calculate_monthly_personal_cpi(user_id, year, month)
        except InvalidPeriod as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return MessageOut(
            message=f"Personal CPI calculated successfully for {year}-{month:02d}"
        )

    task = service.recalculate_all_for_user_async(user_id)
    return JSONResponse(
        status_code=202,
        content=RecomputeTaskOut.model_validate(task).model_dump(mode="json"),
    )


@app.get("/api/cpi/calculate/status", response_model=RecomputeTaskOut)
def calculation_status(scheduler: SchedulerManager = Depends(get_scheduler)):
    task = scheduler.latest_recompute(get_current_user_id())
    if task is None:
        raise HTTPException(status_code=404, detail="No recalculation submitted")
    return RecomputeTaskOut.model_validate(task)


@app.get("/api/cpi/official", response_model=OfficialCpiOut)
def get_official_cpi(
    year: int,
    month: int,
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        validate_period(year, month)
    except InvalidPeriod as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    data = OfficialCPIService(db).get_official_cpi(year, month, category_id)
    if data is None:
        raise HTTPException(
            status_code=404,
            detail=f"No official CPI data found for {year}-{month:02d}",
        )
    return data


@app.get("/api/cpi/official/latest", response_model=OfficialCpiOut)
def get_latest_official_cpi(db: Session = Depends(get_db)):
    data = OfficialCPIService(db).get_latest_data()
    if data is None:
        raise HTTPException(status_code=404, detail="No official CPI data available")
    return data


@app.post("/api/admin/cpi/fetch", response_model=IngestionSummaryOut)
def fetch_official_data(db: Session = Depends(get_db)):
    try:
        return OfficialCPIService(db).fetch_and_store_latest_data()
    except IngestionFailure as exc:
        logger.error(f"official_ingest_failed: error={exc}")
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/api/admin/cpi/official", response_model=OfficialCpiOut)
def import_official_cpi(data: OfficialCpiIn, db: Session = Depends(get_db)):
    if data.category_id is not None:
        known = {c.id for c in DatabaseCategoryCatalog(db).list_categories()}
        if data.category_id not in known:
            raise HTTPException(
                status_code=404, detail=f"Category {data.category_id} not found"
            )
    return OfficialCPIService(db).save_official_cpi_data(
        data.year,
        data.month,
        data.category_id,
        data.index_value,
        data.mom_change_percent,
        data.yoy_change_percent,
    )
