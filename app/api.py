"""FastAPI wrapper on the roster engine.

Routes stay thin: they parse the request, call one engine operation and map
engine errors onto status codes.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure bare-module imports (e.g., "import database") resolve when served from the repo root.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import get_active_settings, get_balances, get_officer, init_database, upsert_settings  # noqa: E402
from errors import AmbiguousOverrideError, EngineError, InvalidStateError, NotFoundError, StoreFailure  # noqa: E402
from leave import deduct_leave, reconcile_leave_ledger, restore_leave  # noqa: E402
from partnerships import (  # noqa: E402
    auto_create_partnerships_from_recurring,
    create_partnership,
    remove_partnership,
    validate_partnerships,
)
from resolver import resolve_day  # noqa: E402
from schedule_edits import (  # noqa: E402
    add_officer_to_shift,
    end_recurring_assignment,
    remove_officer_from_shift,
    update_assignment,
)
from settings import ensure_default_settings, load_active_settings  # noqa: E402
from shift_catalog import list_shift_types, time_label  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_settings(database.SessionLocal)
    yield


app = FastAPI(title="Roster Engine API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _parse_date(value: Any, field: str = "date") -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer")


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    return str((payload or {}).get("actor") or "api").strip() or "api"


def _http_error(exc: EngineError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AmbiguousOverrideError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "exception_ids": list(exc.exception_ids)},
        )
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreFailure):
        return HTTPException(
            status_code=503,
            detail={"message": str(exc), "balance_adjusted": exc.balance_adjusted},
        )
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/shift-types")
def shift_types(db=Depends(get_db)) -> JSONResponse:
    payload = [
        {
            "id": shift.id,
            "name": shift.name,
            "start_time": time_label(shift.start_time),
            "end_time": time_label(shift.end_time),
        }
        for shift in list_shift_types(db)
    ]
    return JSONResponse(content=jsonable_encoder({"shift_types": payload}))


@app.get("/api/v1/schedule/{date}/{shift_type_id}")
def effective_schedule(date: str, shift_type_id: int, db=Depends(get_db)) -> JSONResponse:
    on_date = _parse_date(date)
    try:
        day = resolve_day(db, on_date, shift_type_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    issues = validate_partnerships(day.assignments)
    return JSONResponse(
        content=jsonable_encoder(
            {
                "date": on_date.isoformat(),
                "shift_type_id": shift_type_id,
                "assignments": [assignment.to_dict() for assignment in day.assignments],
                "off": [removal.to_dict() for removal in day.removals],
                "issues": [issue.to_dict() for issue in issues],
            }
        )
    )


@app.post("/api/v1/schedule/{date}/{shift_type_id}/officers")
def add_officer(date: str, shift_type_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    on_date = _parse_date(date)
    officer_id = _require_int(payload, "officer_id")
    try:
        exception = add_officer_to_shift(
            db,
            officer_id,
            on_date,
            shift_type_id,
            position=payload.get("position_name"),
            unit=payload.get("unit_number"),
            start_time=payload.get("start_time"),
            end_time=payload.get("end_time"),
            notes=payload.get("notes") or "",
            actor=_actor(payload),
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(status_code=201, content=jsonable_encoder({"exception_id": exception.id}))


@app.patch("/api/v1/schedule/{date}/{shift_type_id}/officers/{officer_id}")
def edit_assignment(
    date: str,
    shift_type_id: int,
    officer_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
) -> JSONResponse:
    on_date = _parse_date(date)
    try:
        exception = update_assignment(
            db,
            officer_id,
            on_date,
            shift_type_id,
            position=payload.get("position_name"),
            unit=payload.get("unit_number"),
            notes=payload.get("notes"),
            start_time=payload.get("start_time"),
            end_time=payload.get("end_time"),
            actor=_actor(payload),
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder({"exception_id": exception.id}))


@app.delete("/api/v1/schedule/{date}/{shift_type_id}/officers/{officer_id}")
def remove_officer(
    date: str,
    shift_type_id: int,
    officer_id: int,
    actor: str = Query("api"),
    db=Depends(get_db),
) -> JSONResponse:
    on_date = _parse_date(date)
    try:
        day_off_id = remove_officer_from_shift(db, officer_id, on_date, shift_type_id, actor=actor)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder({"removed": True, "day_off_exception_id": day_off_id}))


@app.post("/api/v1/recurring/{recurring_id}/end")
def end_recurring(recurring_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    end_date = _parse_date(payload.get("end_date"), "end_date")
    try:
        row = end_recurring_assignment(db, recurring_id, end_date, actor=_actor(payload))
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(
        content=jsonable_encoder({"id": row.id, "officer_id": row.officer_id, "end_date": row.end_date})
    )


@app.post("/api/v1/leave")
def create_leave(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    officer_id = _require_int(payload, "officer_id")
    shift_type_id = _require_int(payload, "shift_type_id")
    on_date = _parse_date(payload.get("date"))
    pto_type = payload.get("pto_type")
    if not isinstance(pto_type, str) or not pto_type.strip():
        raise HTTPException(status_code=400, detail="pto_type is required")
    try:
        result = deduct_leave(
            db,
            officer_id,
            on_date,
            shift_type_id,
            pto_type,
            start_time=payload.get("start_time"),
            end_time=payload.get("end_time"),
            actor=_actor(payload),
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(status_code=201, content=jsonable_encoder(result.to_dict()))


@app.delete("/api/v1/leave/{exception_id}")
def retract_leave(exception_id: int, actor: str = Query("api"), db=Depends(get_db)) -> JSONResponse:
    try:
        result = restore_leave(db, exception_id, actor=actor)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(result.to_dict()))


@app.get("/api/v1/leave/reconcile")
def reconcile_leave(db=Depends(get_db)) -> JSONResponse:
    mismatches = reconcile_leave_ledger(db)
    return JSONResponse(
        content=jsonable_encoder(
            {"ok": not mismatches, "mismatches": [mismatch.to_dict() for mismatch in mismatches]}
        )
    )


@app.get("/api/v1/officers/{officer_id}/balances")
def officer_balances(officer_id: int, db=Depends(get_db)) -> JSONResponse:
    officer = get_officer(db, officer_id)
    if not officer:
        raise HTTPException(status_code=404, detail="Officer not found")
    return JSONResponse(
        content=jsonable_encoder(
            {"officer_id": officer.id, "name": officer.full_name, "balances": get_balances(db, officer_id)}
        )
    )


@app.post("/api/v1/partnerships")
def pair_officers(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    officer_id = _require_int(payload, "officer_id")
    partner_id = _require_int(payload, "partner_officer_id")
    shift_type_id = _require_int(payload, "shift_type_id")
    on_date = _parse_date(payload.get("date"))
    try:
        issues = create_partnership(
            db,
            officer_id,
            partner_id,
            on_date,
            shift_type_id,
            actor=_actor(payload),
            emergency=bool(payload.get("emergency")),
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder(
            {
                "officer_id": officer_id,
                "partner_officer_id": partner_id,
                "issues": [issue.to_dict() for issue in issues],
            }
        ),
    )


@app.delete("/api/v1/partnerships")
def unpair_officers(
    officer_id: int = Query(...),
    date: str = Query(...),
    shift_type_id: int = Query(...),
    actor: str = Query("api"),
    db=Depends(get_db),
) -> JSONResponse:
    on_date = _parse_date(date)
    try:
        former_partner = remove_partnership(db, officer_id, on_date, shift_type_id, actor=actor)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder({"officer_id": officer_id, "former_partner_id": former_partner}))


@app.post("/api/v1/partnerships/auto-create")
def auto_create_partnerships(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    on_date = _parse_date(payload.get("date"))
    result = auto_create_partnerships_from_recurring(db, on_date, actor=_actor(payload))
    return JSONResponse(content=jsonable_encoder(result))


@app.get("/api/v1/settings/active")
def active_settings(db=Depends(get_db)) -> JSONResponse:
    settings = get_active_settings(db)
    if not settings:
        raise HTTPException(status_code=404, detail="No active settings found")
    payload = {
        "id": settings.id,
        "name": settings.name,
        "params": load_active_settings(db),
        "lastEditedBy": settings.lastEditedBy,
        "lastEditedAt": settings.lastEditedAt.isoformat() if settings.lastEditedAt else None,
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.put("/api/v1/settings/active")
def set_active_settings(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = _actor(payload)
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    settings = upsert_settings(db, name=name, params_dict=params, edited_by=actor)
    database.record_audit_log(
        db, user_id=actor, action="SETTINGS_EDIT", target_type="Settings", target_id=settings.id, payload={"name": name}
    )
    db.commit()
    return JSONResponse(
        content=jsonable_encoder(
            {
                "id": settings.id,
                "name": settings.name,
                "params": load_active_settings(db),
                "lastEditedBy": settings.lastEditedBy,
                "lastEditedAt": settings.lastEditedAt.isoformat() if settings.lastEditedAt else None,
            }
        )
    )
