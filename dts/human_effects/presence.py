"""Category presence flags, the stored total group and the advisory table validations.

A presence flag records that a disaggregation category (or metric) is in use
for a record's table. The editing layer sets the flags explicitly; they are
not derived from, and never modify, the effect rows.

The total group names the disaggregation whose rows add up to the totals row,
e.g. ``sex`` alone. It is stored per ``(record, table)`` as the editing grid
sends it: ``[{"dbName": key, "isSet": bool}, ...]``.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from dts.database.models import CategoryPresence, DisasterRecord, TotalGroup
from dts.human_effects.definitions import DimensionDef, DimensionRegistry, TableId
from dts.human_effects.errors import invalid_value

logger = logging.getLogger(__name__)


def presence_set(
    session: Session,
    record_id: int,
    table_id: TableId,
    flags: dict[str, bool],
    registry: DimensionRegistry,
) -> None:
    """Upsert flags for one record and table; last write wins per key."""
    if not isinstance(flags, dict):
        raise invalid_value("categoryPresence must be an object of key to true/false")
    for key, present in flags.items():
        registry.definition(table_id, key)
        if not isinstance(present, bool):
            raise invalid_value(f'Presence flag for "{key}" must be true or false, got {present!r}')

    rows = session.scalars(
        select(CategoryPresence).where(
            CategoryPresence.record_id == record_id,
            CategoryPresence.table_id == table_id.value,
        )
    )
    current = {row.key: row for row in rows}
    for key, present in flags.items():
        row = current.get(key)
        if row is None:
            session.add(CategoryPresence(
                record_id=record_id, table_id=table_id.value, key=key, present=present,
            ))
        else:
            row.present = present
    session.flush()
    logger.debug("Presence for record %s table %s set: %s", record_id, table_id.value, flags)


def presence_get(
    session: Session,
    record_id: int,
    table_id: TableId,
    registry: DimensionRegistry,
    country_accounts_id: str | None = None,
) -> dict[str, bool]:
    """Flags for every key of the table, ``False`` where nothing was stored."""
    flags = {d.key: False for d in registry.all_definitions_for(table_id)}

    stmt = select(CategoryPresence).where(
        CategoryPresence.record_id == record_id,
        CategoryPresence.table_id == table_id.value,
    )
    if country_accounts_id is not None:
        stmt = stmt.join(DisasterRecord, DisasterRecord.id == CategoryPresence.record_id).where(
            DisasterRecord.country_accounts_id == country_accounts_id
        )
    for row in session.scalars(stmt):
        flags[row.key] = row.present
    return flags


def presence_delete_all(session: Session, record_id: int) -> None:
    session.execute(delete(CategoryPresence).where(CategoryPresence.record_id == record_id))


def presence_from_rows(defs: list[DimensionDef], rows: list[list[Any]]) -> dict[str, bool]:
    """Keys that hold at least one value in the given positional rows."""
    flags = {d.key: False for d in defs}
    for values in rows:
        for defn, value in zip(defs, values):
            if value is not None:
                flags[defn.key] = True
    return flags


def parse_total_group(
    registry: DimensionRegistry, table_id: TableId, flags: Any,
) -> list[dict[str, Any]] | None:
    """Check a total group sent by the grid, returning it in stored form."""
    if flags is None:
        return None
    if not isinstance(flags, list):
        raise invalid_value("totalGroupFlags must be a list of {dbName, isSet}")
    parsed = []
    seen = set()
    for item in flags:
        if not (
            isinstance(item, dict)
            and isinstance(item.get("dbName"), str)
            and isinstance(item.get("isSet"), bool)
        ):
            raise invalid_value(f"Invalid total group entry: {item!r}")
        key = item["dbName"]
        defn = registry.definition(table_id, key)
        if not defn.is_dimension:
            raise invalid_value(f'Total group entry "{key}" is not a disaggregation')
        if key in seen:
            raise invalid_value(f'Total group names "{key}" twice')
        # dated snapshots are not additive
        if item["isSet"] and defn.kind == "date":
            raise invalid_value(f'Total group can not include the date column "{key}"')
        seen.add(key)
        parsed.append({"dbName": key, "isSet": item["isSet"]})
    return parsed


def total_group_keys(flags: list[dict[str, Any]] | None) -> list[str]:
    return [item["dbName"] for item in flags or [] if item["isSet"]]


def total_group_get(session: Session, record_id: int, table_id: TableId) -> list[dict[str, Any]] | None:
    """The stored total group, or ``None`` when none was chosen."""
    row = session.scalars(
        select(TotalGroup).where(
            TotalGroup.record_id == record_id, TotalGroup.table_id == table_id.value,
        )
    ).first()
    if row is None:
        return None
    if not isinstance(row.flags, list):
        logger.error("Stored total group for record %s table %s is not a list: %r",
                     record_id, table_id.value, row.flags)
        return None
    return row.flags


def total_group_set(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table_id: TableId,
    flags: Any,
) -> list[dict[str, Any]] | None:
    """Replace the stored total group; ``None`` removes it."""
    parsed = parse_total_group(registry, table_id, flags)
    session.execute(
        delete(TotalGroup).where(
            TotalGroup.record_id == record_id, TotalGroup.table_id == table_id.value,
        )
    )
    if parsed is not None:
        session.add(TotalGroup(record_id=record_id, table_id=table_id.value, flags=parsed))
    session.flush()
    logger.debug("Total group for record %s table %s set: %s", record_id, table_id.value, parsed)
    return parsed


@dataclass
class RowIssue:
    row_id: int | str
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"rowId": self.row_id, "code": self.code, "message": self.message}


@dataclass
class GroupIssue:
    group_key: str
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"groupKey": self.group_key, "code": self.code, "message": self.message}


@dataclass
class TableValidation:
    row_errors: list[RowIssue]
    group_errors: list[GroupIssue]
    row_warnings: list[RowIssue]
    group_warnings: list[GroupIssue]

    @property
    def ok(self) -> bool:
        return not (self.row_errors or self.group_errors)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "rowErrors": [e.to_dict() for e in self.row_errors],
            "groupErrors": [e.to_dict() for e in self.group_errors],
            "rowWarnings": [e.to_dict() for e in self.row_warnings],
            "groupWarnings": [e.to_dict() for e in self.group_warnings],
        }


def group_key(defs: list[DimensionDef], values: list[Any]) -> str:
    """"1" per set dimension and "0" per unset one; the totals row is all zeroes."""
    return "".join(
        "0" if value is None else "1"
        for defn, value in zip(defs, values)
        if defn.is_dimension
    )


def _is_totals(defs: list[DimensionDef], values: list[Any]) -> bool:
    return "1" not in group_key(defs, values)


def _totals_flags(
    defs: list[DimensionDef], rows: list[list[Any]], is_totals: list[bool] | None,
) -> list[bool]:
    # Without stored flags, rows can only be judged on the columns passed in.
    # A row that sets nothing but hidden columns then looks like a totals row.
    if is_totals is not None:
        return list(is_totals)
    return [_is_totals(defs, values) for values in rows]


def validate_total_group(
    flags: dict[str, bool],
    defs: list[DimensionDef],
    rows: list[list[Any]],
    is_totals: list[bool] | None = None,
) -> list[GroupIssue]:
    """Warn when a disaggregation is marked present but the totals row is missing.

    ``is_totals`` marks the stored totals row among ``rows``; pass it whenever
    ``defs`` leaves hidden columns out.
    """
    dimension_keys = {d.key for d in defs if d.is_dimension}
    marked = sorted(key for key, present in flags.items() if present and key in dimension_keys)
    if not marked:
        return []
    if any(_totals_flags(defs, rows, is_totals)):
        return []
    return [GroupIssue(
        group_key="0" * len(dimension_keys),
        code="total_group_missing",
        message=f"Disaggregated data is marked present ({', '.join(marked)}) but there is no totals row.",
    )]


def validate_table(
    defs: list[DimensionDef],
    ids: list[int | str],
    rows: list[list[Any]],
    is_totals: list[bool] | None = None,
) -> TableValidation:
    """Advisory checks shown next to the editing grid; nothing here blocks a save.

    Rows that set only hidden columns are neither the totals row nor part of
    any visible group, so they are left out of the checks.
    """
    result = TableValidation([], [], [], [])
    dims = [i for i, d in enumerate(defs) if d.is_dimension]
    metrics = [i for i, d in enumerate(defs) if d.is_metric]

    totals: list[Any] | None = None
    data: list[tuple[int | str, list[Any]]] = []
    for row_id, values, row_is_totals in zip(ids, rows, _totals_flags(defs, rows, is_totals)):
        if row_is_totals and totals is None:
            totals = values
        elif row_is_totals:
            result.row_errors.append(RowIssue(
                row_id, "no_dimension_data", "Row exists with no dimension data and it is not the totals row.",
            ))
        elif not _is_totals(defs, values):
            data.append((row_id, values))

    seen: dict[tuple, int | str] = {}
    duplicates: set[int | str] = set()
    for row_id, values in data:
        tuple_ = tuple(values[i] for i in dims)
        if tuple_ in seen:
            duplicates.update((seen[tuple_], row_id))
        else:
            seen[tuple_] = row_id
    for row_id in duplicates:
        result.row_errors.append(RowIssue(
            row_id, "duplicate_dimension", "Two or more rows have the same disaggregation values.",
        ))

    for row_id, values in data:
        filled = [values[i] for i in metrics if values[i] is not None]
        if not filled:
            result.row_errors.append(RowIssue(row_id, "row_with_no_metric_value", "Row has no values for metrics."))
        elif not any(v > 0 for v in filled):
            result.row_errors.append(RowIssue(row_id, "row_with_all_metrics_zeroes", "Row has zeroes for all metrics."))

    if totals is not None:
        sums: dict[str, dict[int, float]] = defaultdict(lambda: defaultdict(float))
        members: dict[str, list[int | str]] = defaultdict(list)
        for row_id, values in data:
            gk = group_key(defs, values)
            members[gk].append(row_id)
            for i in metrics:
                sums[gk][i] += values[i] or 0

        for gk, metric_sums in sums.items():
            group_defs = [defs[i] for i, flag in zip(dims, gk) if flag == "1"]
            # dated snapshots are not additive
            if any(d.kind == "date" for d in group_defs):
                continue
            names = ",".join(d.key for d in group_defs)
            for i, value in metric_sums.items():
                total = totals[i] or 0
                if value > total:
                    result.group_errors.append(GroupIssue(
                        gk, "subtotal_larger_than_total",
                        f'Total for group ({names}), column "{defs[i].key}" exceeds overall total {value} > {total}',
                    ))
                    for row_id in members[gk]:
                        result.row_errors.append(RowIssue(
                            row_id, "subtotal_larger_than_total",
                            f"Row belongs to group ({names}) whose {defs[i].key} exceeds the overall total",
                        ))
                elif value < total:
                    result.group_warnings.append(GroupIssue(
                        gk, "subtotal_lower_than_total",
                        "Subtotal is lower than the total, please check if this is intentional.",
                    ))
                    for row_id in members[gk]:
                        result.row_warnings.append(RowIssue(
                            row_id, "subtotal_lower_than_total",
                            "Subtotal is lower than the total, please check if this is intentional.",
                        ))

    result.row_errors.sort(key=lambda e: str(e.row_id))
    return result
