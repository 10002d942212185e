"""Diff-based batch updates for the human-effects tables.

A save from the editing grid arrives as one batch of deletes, sparse cell
updates and new rows for a single ``(record, table)``. The batch is applied in
the fixed order delete -> update -> insert so that a tuple freed by a delete
can be reused by an insert in the same batch. Every dimension tuple must stay
unique per ``(record, table)``; the ``uq_effect_dimension_tuple`` constraint on
``dimension_key`` backs that up against concurrent writers.

The engine never commits. It runs inside the caller's transaction and any
``HEError`` it raises means the caller has to roll back.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dts.database.models import CategoryPresence, DisasterRecord, EffectRow, TotalGroup
from dts.human_effects.definitions import DimensionDef, DimensionRegistry, TableId
from dts.human_effects.errors import HEError, HEErrorKind, invalid_value

logger = logging.getLogger(__name__)

TOTALS_KEY = "{}"

_TRUE_STRINGS = {"true", "1", "yes"}
_FALSE_STRINGS = {"false", "0", "no"}


def parse_value(defn: DimensionDef, raw: Any, row_id: str | None = None) -> Any:
    """Validate one cell value against its definition.

    ``None`` and the empty string both mean "unset".
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if raw == "":
            return None

    if defn.kind == "enum":
        if not isinstance(raw, str) or raw not in defn.domain_keys():
            raise invalid_value(f'Invalid enum value "{raw}" for field "{defn.key}"', row_id)
        return raw

    if defn.kind == "number":
        if isinstance(raw, bool):
            raise invalid_value(f'Invalid number value "{raw}" for field "{defn.key}"', row_id)
        if isinstance(raw, (int, float)):
            number = float(raw)
        elif isinstance(raw, str):
            try:
                number = float(raw)
            except ValueError:
                raise invalid_value(f'Invalid number string "{raw}" for field "{defn.key}"', row_id) from None
        else:
            raise invalid_value(f'Invalid number value "{raw}" for field "{defn.key}"', row_id)
        if math.isnan(number) or math.isinf(number):
            raise invalid_value(f'Number for field "{defn.key}" must be finite', row_id)
        if number < 0:
            raise invalid_value(f'Negative count {raw} for field "{defn.key}"', row_id)
        return number

    if defn.kind == "date":
        if isinstance(raw, datetime):
            return raw.date()
        if isinstance(raw, date):
            return raw
        if not isinstance(raw, str):
            raise invalid_value(f'Invalid date type "{raw}" for field "{defn.key}"', row_id)
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            raise invalid_value(f'Invalid date format "{raw}" for field "{defn.key}"', row_id) from None

    if defn.kind == "boolean":
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.lower() in _TRUE_STRINGS | _FALSE_STRINGS:
            return raw.lower() in _TRUE_STRINGS
        raise invalid_value(f'Invalid boolean value "{raw}" for field "{defn.key}"', row_id)

    raise ValueError(f"Unknown definition kind: {defn.kind}")


def _key_part(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    return value


def dimension_key(values: dict[str, Any]) -> str:
    """Canonical serialization of a dimension tuple; unset axes are left out."""
    present = {k: _key_part(v) for k, v in values.items() if v is not None}
    return json.dumps(present, sort_keys=True, separators=(",", ":"))


def get_value(row: EffectRow, defn: DimensionDef) -> Any:
    if defn.custom:
        return (row.custom or {}).get(defn.key)
    return getattr(row, defn.column)


def set_value(row: EffectRow, defn: DimensionDef, value: Any) -> None:
    if defn.custom:
        custom = dict(row.custom or {})
        if value is None:
            custom.pop(defn.key, None)
        else:
            custom[defn.key] = value
        # reassign so the JSON column is flagged dirty
        row.custom = custom or None
        return
    setattr(row, defn.column, value)


def row_dimension_values(row: EffectRow, dimensions: list[DimensionDef]) -> dict[str, Any]:
    """Every dimension value of a row, including custom values no longer configured."""
    values = {d.key: get_value(row, d) for d in dimensions if not d.custom}
    values.update(row.custom or {})
    return values


@dataclass
class BatchRequest:
    """One save: deletes, then sparse updates, then new rows, keyed by dimension key."""

    deletes: list[int] = field(default_factory=list)
    updates: dict[int, dict[str, Any]] = field(default_factory=dict)
    new_rows: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.deletes or self.updates or self.new_rows)

    @classmethod
    def from_payload(cls, payload: dict | None, defs: list[DimensionDef]) -> "BatchRequest":
        """Convert the positional wire format into typed per-key values.

        ``updates`` is ``{rowId: {colIndex: value}}`` and ``newRows`` is either
        ``{clientKey: [values...]}`` or a plain list of value lists, positions
        following ``defs``.
        """
        payload = payload or {}
        if not isinstance(payload, dict):
            raise invalid_value("Batch must be an object of deletes, updates and newRows")
        request = cls()

        deletes = payload.get("deletes") or []
        if not isinstance(deletes, list):
            raise invalid_value("deletes must be a list of row ids")
        for raw_id in deletes:
            request.deletes.append(_parse_row_id(raw_id))

        updates = payload.get("updates") or {}
        if not isinstance(updates, dict):
            raise invalid_value("updates must be an object of row id to changed cells")
        for raw_id, cells in updates.items():
            row_id = _parse_row_id(raw_id)
            if not isinstance(cells, dict):
                raise invalid_value("Row update must be an object of column index to value", str(raw_id))
            typed: dict[str, Any] = {}
            for raw_index, value in cells.items():
                index = _parse_column_index(raw_index, len(defs), str(raw_id))
                typed[defs[index].key] = value
            request.updates[row_id] = typed

        new_rows = payload.get("newRows") or {}
        if isinstance(new_rows, list):
            new_rows = {str(i): row for i, row in enumerate(new_rows)}
        elif not isinstance(new_rows, dict):
            raise invalid_value("newRows must be a list or an object of value lists")
        for client_key, values in new_rows.items():
            if not isinstance(values, list) or len(values) != len(defs):
                raise invalid_value(
                    f"New row must have {len(defs)} values, one per column", str(client_key),
                )
            request.new_rows[str(client_key)] = {d.key: v for d, v in zip(defs, values)}

        return request


def _parse_row_id(raw: Any) -> int:
    if isinstance(raw, bool):
        raise invalid_value(f"Invalid row id: {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise invalid_value(f"Invalid row id: {raw!r}") from None


def _parse_column_index(raw: Any, count: int, row_id: str) -> int:
    try:
        index = int(raw)
    except (TypeError, ValueError):
        raise invalid_value(f"Invalid column index: {raw!r}", row_id) from None
    if index < 0 or index >= count:
        raise invalid_value(f"Column index {index} out of range (0-{count - 1})", row_id)
    return index


@dataclass
class BatchResult:
    deleted: list[int] = field(default_factory=list)
    updated: list[int] = field(default_factory=list)
    created: dict[str, int] = field(default_factory=dict)

    @property
    def modified(self) -> bool:
        return bool(self.deleted or self.updated or self.created)


@dataclass
class TableData:
    defs: list[DimensionDef]
    ids: list[int]
    data: list[list[Any]]
    # True for the stored totals row, judged on every column including hidden ones
    is_totals: list[bool] = field(default_factory=list)


def _rows_for(session: Session, record_id: int, table_id: TableId) -> list[EffectRow]:
    stmt = (
        select(EffectRow)
        .where(EffectRow.record_id == record_id, EffectRow.table_id == table_id.value)
        .order_by(EffectRow.id)
    )
    return list(session.scalars(stmt))


def _typed_values(
    registry: DimensionRegistry, table_id: TableId, values: dict[str, Any], row_id: str,
) -> list[tuple[DimensionDef, Any]]:
    parsed = []
    for key, raw in values.items():
        defn = registry.definition(table_id, key)
        parsed.append((defn, parse_value(defn, raw, row_id)))
    return parsed


def apply_batch(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table_id: TableId,
    request: BatchRequest,
) -> BatchResult:
    """Apply one batch to ``(record_id, table_id)``, all or nothing."""
    if not isinstance(table_id, TableId):
        raise HEError(HEErrorKind.UNKNOWN_TABLE, f"Unknown human effects table: {table_id!r}")
    if session.get(DisasterRecord, record_id) is None:
        raise HEError(HEErrorKind.UNKNOWN_ROW, f"Disaster record not found: {record_id}")

    dimensions = registry.dimensions_for(table_id)
    result = BatchResult()
    existing = {row.id: row for row in _rows_for(session, record_id, table_id)}

    for row_id in request.deletes:
        row = existing.pop(row_id, None)
        if row is None:
            raise HEError(HEErrorKind.UNKNOWN_ROW, f"Row not found for id: {row_id}", str(row_id))
        session.delete(row)
        result.deleted.append(row_id)
    if result.deleted:
        session.flush()

    # Rows in the order their tuples are checked: untouched, updated, new.
    touched: list[tuple[str, EffectRow]] = []
    for row_id, values in request.updates.items():
        row = existing.get(row_id)
        if row is None:
            raise HEError(HEErrorKind.UNKNOWN_ROW, f"Row not found for id: {row_id}", str(row_id))
        for defn, value in _typed_values(registry, table_id, values, str(row_id)):
            set_value(row, defn, value)
        row.dimension_key = dimension_key(row_dimension_values(row, dimensions))
        touched.append((str(row_id), row))
        result.updated.append(row_id)

    created: list[tuple[str, EffectRow]] = []
    for client_key, values in request.new_rows.items():
        row = EffectRow(record_id=record_id, table_id=table_id.value)
        for defn, value in _typed_values(registry, table_id, values, client_key):
            set_value(row, defn, value)
        row.dimension_key = dimension_key(row_dimension_values(row, dimensions))
        created.append((client_key, row))

    updated_ids = set(request.updates)
    occupied: dict[str, str] = {
        row.dimension_key: str(row.id) for row in existing.values() if row.id not in updated_ids
    }
    for label, row in touched + created:
        holder = occupied.get(row.dimension_key)
        if holder is not None:
            raise HEError(
                HEErrorKind.DUPLICATE_DIMENSION_TUPLE,
                f"Two or more rows have the same disaggregation values ({row.dimension_key}), "
                f"already used by row {holder}",
                label,
            )
        occupied[row.dimension_key] = label

    for _, row in created:
        session.add(row)
    try:
        session.flush()
    except IntegrityError as exc:
        logger.warning(
            "Unique constraint rejected batch for record %s table %s: %s",
            record_id, table_id.value, exc.orig,
        )
        raise HEError(
            HEErrorKind.DUPLICATE_DIMENSION_TUPLE,
            "Two or more rows have the same disaggregation values.",
        ) from exc

    for client_key, row in created:
        result.created[client_key] = row.id

    logger.info(
        "Applied batch to record %s table %s: %d deleted, %d updated, %d created",
        record_id, table_id.value, len(result.deleted), len(result.updated), len(result.created),
    )
    return result


def group_totals(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table_id: TableId,
    group: list[str],
) -> dict[str, float | None] | None:
    """Metric sums over the rows that set exactly the ``group`` columns.

    Returns ``None`` when no row belongs to the group.
    """
    dimensions = registry.dimensions_for(table_id)
    metrics = registry.metrics_for(table_id)
    wanted = set(group)
    members = [
        row for row in _rows_for(session, record_id, table_id)
        if {k for k, v in row_dimension_values(row, dimensions).items() if v is not None} == wanted
    ]
    if not members:
        return None
    sums: dict[str, float | None] = {}
    for defn in metrics:
        values = [v for v in (get_value(row, defn) for row in members) if v is not None]
        sums[defn.key] = sum(values) if values else None
    return sums


def set_group_totals(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table_id: TableId,
    group: list[str],
) -> EffectRow | None:
    """Rewrite the totals row from the sums of ``group``, creating it if needed."""
    sums = group_totals(session, registry, record_id, table_id, group)
    if sums is None:
        logger.info(
            "No rows in total group %s for record %s table %s; totals row left as is",
            group, record_id, table_id.value,
        )
        return None
    row = session.scalars(
        select(EffectRow).where(
            EffectRow.record_id == record_id,
            EffectRow.table_id == table_id.value,
            EffectRow.dimension_key == TOTALS_KEY,
        )
    ).first()
    if row is None:
        row = EffectRow(record_id=record_id, table_id=table_id.value, dimension_key=TOTALS_KEY)
        session.add(row)
    for defn in registry.metrics_for(table_id):
        set_value(row, defn, sums[defn.key])
    session.flush()
    logger.info("Totals of record %s table %s set from group %s: %s", record_id, table_id.value, group, sums)
    return row


def _sort_key(values: list[Any]) -> tuple:
    return tuple((0,) if v is None else (1, v) for v in values)


def load_table(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table_id: TableId,
    country_accounts_id: str | None = None,
) -> TableData:
    """Current rows as positional lists aligned to ``definitions_for``."""
    defs = registry.definitions_for(table_id)
    stmt = (
        select(EffectRow)
        .join(DisasterRecord, DisasterRecord.id == EffectRow.record_id)
        .where(EffectRow.record_id == record_id, EffectRow.table_id == table_id.value)
    )
    if country_accounts_id is not None:
        stmt = stmt.where(DisasterRecord.country_accounts_id == country_accounts_id)

    combined = [
        (row.id, [get_value(row, d) for d in defs], row.dimension_key == TOTALS_KEY)
        for row in session.scalars(stmt)
    ]
    combined.sort(key=lambda item: (_sort_key(item[1]), item[0]))
    return TableData(
        defs=defs,
        ids=[row_id for row_id, _, _ in combined],
        data=[values for _, values, _ in combined],
        is_totals=[is_totals for _, _, is_totals in combined],
    )


def clear_table(session: Session, record_id: int, table_id: TableId) -> int:
    """Delete every row of one table for a record, and its total group.

    Returns how many rows went.
    """
    if not isinstance(table_id, TableId):
        raise HEError(HEErrorKind.UNKNOWN_TABLE, f"Unknown human effects table: {table_id!r}")
    res = session.execute(
        delete(EffectRow).where(
            EffectRow.record_id == record_id, EffectRow.table_id == table_id.value,
        )
    )
    session.execute(
        delete(TotalGroup).where(
            TotalGroup.record_id == record_id, TotalGroup.table_id == table_id.value,
        )
    )
    logger.info("Cleared %d rows from record %s table %s", res.rowcount, record_id, table_id.value)
    return res.rowcount


def delete_all_data(session: Session, record_id: int) -> None:
    """Remove all human-effects rows, total groups and presence flags of a record."""
    for table_id in TableId:
        clear_table(session, record_id, table_id)
    session.execute(delete(CategoryPresence).where(CategoryPresence.record_id == record_id))
