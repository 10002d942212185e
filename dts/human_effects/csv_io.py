"""CSV download and upload for one human-effects table of a record."""

import io
import logging

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from dts.database.models import EffectRow
from dts.human_effects.batch import BatchRequest, BatchResult, apply_batch, clear_table, get_value
from dts.human_effects.definitions import DimensionRegistry, TableId
from dts.human_effects.errors import invalid_value

logger = logging.getLogger(__name__)


def _format_cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def export_frame(
    session: Session, registry: DimensionRegistry, record_id: int, table_id: TableId,
) -> pd.DataFrame:
    """All rows with every column, hidden disaggregations included."""
    defs = registry.all_definitions_for(table_id)
    stmt = (
        select(EffectRow)
        .where(EffectRow.record_id == record_id, EffectRow.table_id == table_id.value)
        .order_by(EffectRow.id)
    )
    records = [
        {d.key: _format_cell(get_value(row, d)) for d in defs}
        for row in session.scalars(stmt)
    ]
    return pd.DataFrame(records, columns=[d.key for d in defs])


def export_csv(
    session: Session, registry: DimensionRegistry, record_id: int, table_id: TableId,
) -> str:
    df = export_frame(session, registry, record_id, table_id)
    logger.info("Exporting %d rows of %s for record %s", len(df), table_id.value, record_id)
    return df.to_csv(index=False)


def read_csv_rows(text: str) -> pd.DataFrame:
    """Parse an upload keeping every cell as a trimmed string."""
    if not text.strip():
        raise invalid_value("Empty file")
    # header=None so repeated header names survive and can be reported
    try:
        raw = pd.read_csv(io.StringIO(text), dtype=str, header=None, keep_default_na=False)
    except pd.errors.ParserError as exc:
        raise invalid_value(f"Could not parse CSV: {exc}") from exc
    raw = raw.fillna("").apply(lambda col: col.str.strip())
    df = raw.iloc[1:].reset_index(drop=True)
    df.columns = list(raw.iloc[0])
    return df


def import_csv(
    session: Session,
    registry: DimensionRegistry,
    record_id: int,
    table_id: TableId,
    text: str,
    replace: bool = True,
) -> BatchResult:
    """Insert the uploaded rows through the batch engine.

    With ``replace`` the table is cleared first, in the same transaction. A
    file holding only the header imports zero rows, so with ``replace`` it
    empties the table.
    """
    df = read_csv_rows(text)
    if len(set(df.columns)) != len(df.columns):
        raise invalid_value(f"Duplicate columns in header: {list(df.columns)}")
    for col in df.columns:
        registry.definition(table_id, col)

    request = BatchRequest(
        new_rows={f"line{i + 2}": row for i, row in enumerate(df.to_dict(orient="records"))}
    )
    if replace:
        clear_table(session, record_id, table_id)
    result = apply_batch(session, registry, record_id, table_id, request)
    logger.info("Imported %d rows into %s for record %s", len(result.created), table_id.value, record_id)
    return result
