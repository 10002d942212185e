"""Load and save glue between the HTTP layer and the human-effects core."""

import logging
from typing import Any

from sqlalchemy.orm import Session

from dts.database.models import DisasterRecord
from dts.human_effects.batch import BatchRequest, apply_batch, clear_table, load_table, set_group_totals
from dts.human_effects.csv_io import export_csv, import_csv
from dts.human_effects.definitions import DimensionRegistry, TableId, table_id_from_string
from dts.human_effects.errors import HEError, HEErrorKind, invalid_value
from dts.human_effects.presence import (
    presence_from_rows,
    presence_get,
    presence_set,
    total_group_get,
    total_group_keys,
    total_group_set,
    validate_table,
    validate_total_group,
)

logger = logging.getLogger(__name__)


def _check_record(session: Session, record_id: int, country_accounts_id: str | None) -> DisasterRecord:
    record = session.get(DisasterRecord, record_id)
    if record is None or (
        country_accounts_id is not None and record.country_accounts_id != country_accounts_id
    ):
        raise HEError(HEErrorKind.UNKNOWN_ROW, "Disaster record not found")
    return record


def load_human_effects(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table: str | None,
    country_accounts_id: str | None = None,
) -> dict[str, Any]:
    """Everything the editing grid needs for one table."""
    table_id = table_id_from_string(table) if table else TableId.DEATHS
    _check_record(session, record_id, country_accounts_id)
    current = load_table(session, registry, record_id, table_id, country_accounts_id)
    presence = presence_get(session, record_id, table_id, registry, country_accounts_id)
    validation = validate_table(current.defs, current.ids, current.data, current.is_totals)
    warnings = validate_total_group(presence, current.defs, current.data, current.is_totals)
    return {
        "table": table_id.value,
        "recordId": record_id,
        "defs": [
            {
                "key": d.key,
                "label": d.label,
                "kind": d.kind,
                "role": d.role,
                "custom": d.custom,
                "domain": [{"key": o.key, "label": o.label} for o in d.domain],
            }
            for d in current.defs
        ],
        "ids": current.ids,
        "data": [[_json_cell(v) for v in row] for row in current.data],
        "categoryPresence": presence,
        "totalGroupFlags": total_group_get(session, record_id, table_id),
        "validation": validation.to_dict(),
        "warnings": [w.to_dict() for w in warnings],
    }


def _json_cell(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _mark_present(session: Session, registry: DimensionRegistry, record_id: int, table_id: TableId) -> None:
    """Flag every key that now holds data; existing flags are left alone."""
    current = load_table(session, registry, record_id, table_id)
    derived = presence_from_rows(current.defs, current.data)
    flags = {key: True for key, present in derived.items() if present}
    if flags:
        presence_set(session, record_id, table_id, flags, registry)


def _total_group_warnings(
    session: Session, registry: DimensionRegistry, record_id: int, table_id: TableId,
) -> list:
    current = load_table(session, registry, record_id, table_id)
    flags = presence_get(session, record_id, table_id, registry)
    return validate_total_group(flags, current.defs, current.data, current.is_totals)


def save_human_effects(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    payload: dict[str, Any],
    country_accounts_id: str | None = None,
) -> dict[str, Any]:
    """Apply a save request and commit, or roll back and report the error.

    ``payload`` is ``{table, columns?, data: {deletes?, updates?, newRows?,
    categoryPresence?, totalGroupFlags?}}``. Unknown tables propagate as
    ``HEError`` so the caller can answer with a client error.

    When ``totalGroupFlags`` is sent it replaces the stored total group
    (``null`` removes it). With a group set, the totals row is rewritten from
    that group's sums after the batch, in the same transaction.
    """
    table_id = table_id_from_string(payload.get("table") or "")
    defs = registry.definitions_for(table_id)
    data = payload.get("data")

    try:
        if not isinstance(data, dict):
            raise invalid_value("no data passed")
        columns = payload.get("columns")
        expected = [d.key for d in defs]
        if columns is not None and list(columns) != expected:
            raise invalid_value(f"columns passed do not match expected: {expected} got {columns}")

        _check_record(session, record_id, country_accounts_id)
        request = BatchRequest.from_payload(data, defs)
        if "totalGroupFlags" in data:
            group = total_group_keys(
                total_group_set(session, registry, record_id, table_id, data["totalGroupFlags"])
            )
        else:
            group = total_group_keys(total_group_get(session, record_id, table_id))
        result = apply_batch(session, registry, record_id, table_id, request)
        if group:
            set_group_totals(session, registry, record_id, table_id, group)

        explicit = data.get("categoryPresence")
        if explicit not in (None, {}):
            presence_set(session, record_id, table_id, explicit, registry)
        elif result.modified:
            _mark_present(session, registry, record_id, table_id)
        warnings = _total_group_warnings(session, registry, record_id, table_id)
        session.commit()
    except HEError as exc:
        session.rollback()
        if not exc.is_user_error:
            logger.error("Human effects save failed for record %s: %r", record_id, exc)
            raise
        logger.info("Rejected human effects save for record %s: %s", record_id, exc.message)
        return {"ok": False, "error": exc.to_dict()}

    return {
        "ok": True,
        "ids": result.created,
        "warnings": [w.to_dict() for w in warnings],
    }


def clear_human_effects(
    session: Session, record_id: int, table: str, country_accounts_id: str | None = None,
) -> dict[str, Any]:
    table_id = table_id_from_string(table)
    try:
        _check_record(session, record_id, country_accounts_id)
        removed = clear_table(session, record_id, table_id)
        session.commit()
    except HEError as exc:
        session.rollback()
        return {"ok": False, "error": exc.to_dict()}
    return {"ok": True, "removed": removed}


def export_human_effects_csv(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table: str,
    country_accounts_id: str | None = None,
) -> str:
    table_id = table_id_from_string(table)
    _check_record(session, record_id, country_accounts_id)
    return export_csv(session, registry, record_id, table_id)


def import_human_effects_csv(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table: str,
    text: str,
    country_accounts_id: str | None = None,
    replace: bool = True,
) -> dict[str, Any]:
    """Load an uploaded CSV into one table, all or nothing.

    A header naming an unknown column is reported back like any other input
    error.
    """
    table_id = table_id_from_string(table)
    try:
        _check_record(session, record_id, country_accounts_id)
        result = import_csv(session, registry, record_id, table_id, text, replace=replace)
        _mark_present(session, registry, record_id, table_id)
        warnings = _total_group_warnings(session, registry, record_id, table_id)
        session.commit()
    except HEError as exc:
        session.rollback()
        if not (exc.is_user_error or exc.kind == HEErrorKind.UNKNOWN_DIMENSION):
            logger.error("CSV import failed for record %s: %r", record_id, exc)
            raise
        logger.info("Rejected CSV import for record %s: %s", record_id, exc.message)
        return {"ok": False, "error": exc.to_dict()}
    return {
        "ok": True,
        "imported": len(result.created),
        "warnings": [w.to_dict() for w in warnings],
    }
