"""JSON endpoints for editing human effects and reading the roll-ups."""

import logging
import math
from typing import Any, Dict, Generator, List, Optional

import pandas as pd
from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from dts.analytics.rollups import division_rollup, hazard_rollup
from dts.database.connection import SessionLocal
from dts.human_effects.definitions import DimensionRegistry, TableId, save_config, table_id_from_string
from dts.human_effects.errors import HEError, HEErrorKind, invalid_value
from dts.human_effects.service import (
    clear_human_effects,
    export_human_effects_csv,
    import_human_effects_csv,
    load_human_effects,
    save_human_effects,
)

app = FastAPI(title="DTS Human Effects API", version="0.1.0")
logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Country-Accounts-Id"

# Metric column summed by the analytics endpoints, per table.
_ROLLUP_COLUMNS = {"direct": "value", "indirect": "secondary"}


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_tenant(
    country_accounts_id: Optional[str] = Header(None, alias=TENANT_HEADER),
) -> Optional[str]:
    return country_accounts_id


def _registry(session: Session, tenant: Optional[str]) -> DimensionRegistry:
    return DimensionRegistry.load(session, tenant)


def _json_sanitize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: _json_sanitize(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_json_sanitize(value) for value in obj]
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    return obj


def _rows_from_df(df: pd.DataFrame) -> List[Dict[str, Any]]:
    if df.empty:
        return []
    df = df.astype(object).where(df.notna(), None)
    return _json_sanitize(df.to_dict(orient="records"))


@app.exception_handler(HEError)
def _he_error_handler(request: Request, exc: HEError) -> JSONResponse:
    if exc.kind == HEErrorKind.UNKNOWN_TABLE:
        return JSONResponse(status_code=400, content={"ok": False, "error": exc.to_dict()})
    if exc.kind == HEErrorKind.UNKNOWN_ROW:
        return JSONResponse(status_code=404, content={"ok": False, "error": exc.to_dict()})
    if exc.is_user_error or exc.kind == HEErrorKind.UNKNOWN_DIMENSION:
        return JSONResponse(status_code=400, content={"ok": False, "error": exc.to_dict()})
    logger.error("Unhandled %r on %s %s", exc, request.method, request.url.path)
    return JSONResponse(status_code=500, content={"ok": False, "detail": "Server error"})


@app.exception_handler(Exception)
def _server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"ok": False, "detail": "Server error"})


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/records/{record_id}/human-effects")
def get_human_effects(
    record_id: int,
    table: Optional[str] = Query(None),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    registry = _registry(session, tenant)
    return load_human_effects(session, registry, record_id, table, tenant)


@app.post("/records/{record_id}/human-effects/save")
def post_human_effects(
    record_id: int,
    payload: dict = Body(...),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    registry = _registry(session, tenant)
    return save_human_effects(session, registry, record_id, payload, tenant)


@app.post("/records/{record_id}/human-effects/clear")
def post_clear_human_effects(
    record_id: int,
    table: str = Query(...),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    return clear_human_effects(session, record_id, table, tenant)


@app.get("/records/{record_id}/human-effects/csv")
def get_human_effects_csv(
    record_id: int,
    table: str = Query(...),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    registry = _registry(session, tenant)
    text = export_human_effects_csv(session, registry, record_id, table, tenant)
    filename = f"record-{record_id}-{table_id_from_string(table).value}.csv"
    return PlainTextResponse(
        text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/records/{record_id}/human-effects/csv")
def post_human_effects_csv(
    record_id: int,
    body: bytes = Body(..., media_type="text/csv"),
    table: str = Query(...),
    replace: bool = Query(True),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    try:
        text = body.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        logger.info("Rejected CSV upload for record %s: %s", record_id, exc)
        return {"ok": False, "error": invalid_value("CSV file must be UTF-8 encoded").to_dict()}
    registry = _registry(session, tenant)
    return import_human_effects_csv(session, registry, record_id, table, text, tenant, replace=replace)


@app.get("/settings/disaggregations")
def get_disaggregation_settings(
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    registry = _registry(session, tenant)
    return {
        "custom": registry.custom.to_json() if registry.custom else None,
        "hidden": registry.hidden.to_json(),
    }


@app.post("/settings/disaggregations")
def post_disaggregation_settings(
    payload: dict = Body(...),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    try:
        save_config(session, tenant, custom=payload.get("custom"), hidden=payload.get("hidden"))
        session.commit()
    except HEError as exc:
        session.rollback()
        if exc.kind != HEErrorKind.INVALID_CONFIG:
            raise
        return JSONResponse(status_code=400, content={"ok": False, "error": exc.to_dict()})
    return {"ok": True}


def _rollup_column(column: str) -> str:
    return _ROLLUP_COLUMNS.get(column, "value")


@app.get("/analytics/hazards")
def get_hazard_rollup(
    table: str = Query(TableId.DEATHS.value),
    metric: str = Query("direct"),
    include_unapproved: bool = Query(False),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    table_id = table_id_from_string(table)
    df = hazard_rollup(
        session, table_id, _rollup_column(metric), tenant, approved_only=not include_unapproved,
    )
    return {"table": table_id.value, "rows": _rows_from_df(df)}


@app.get("/analytics/divisions")
def get_division_rollup(
    table: str = Query(TableId.DEATHS.value),
    metric: str = Query("direct"),
    include_unapproved: bool = Query(False),
    session: Session = Depends(get_db),
    tenant: Optional[str] = Depends(get_tenant),
):
    if not tenant:
        return JSONResponse(
            status_code=400, content={"ok": False, "detail": f"{TENANT_HEADER} header is required"},
        )
    table_id = table_id_from_string(table)
    df = division_rollup(
        session, tenant, table_id, _rollup_column(metric), approved_only=not include_unapproved,
    )
    return {"table": table_id.value, "rows": _rows_from_df(df)}
