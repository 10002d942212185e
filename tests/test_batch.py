"""Tests for the row diff / batch update engine."""

from datetime import date

import pytest

from dts.database.models import EffectRow, TotalGroup
from dts.human_effects.batch import (
    TOTALS_KEY,
    BatchRequest,
    apply_batch,
    clear_table,
    delete_all_data,
    dimension_key,
    group_totals,
    load_table,
    parse_value,
    set_group_totals,
)
from dts.human_effects.config import parse_custom_config, parse_hidden_config
from dts.human_effects.definitions import DimensionRegistry, TableId
from dts.human_effects.errors import HEError, HEErrorKind


def _insert(session, registry, record, rows, table_id=TableId.DEATHS):
    result = apply_batch(session, registry, record.id, table_id, BatchRequest(new_rows=rows))
    session.commit()
    return result


def _rows(session):
    return session.query(EffectRow).order_by(EffectRow.id).all()


# --- parse_value ---

def test_parse_value_number(registry):
    defn = registry.definition(TableId.DEATHS, "deaths")
    assert parse_value(defn, 12) == 12.0
    assert parse_value(defn, " 7 ") == 7.0
    assert parse_value(defn, "") is None
    assert parse_value(defn, None) is None


@pytest.mark.parametrize("raw", [-1, "-3", float("nan"), float("inf"), True, "many"])
def test_parse_value_number_rejected(registry, raw):
    defn = registry.definition(TableId.DEATHS, "deaths")
    with pytest.raises(HEError) as excinfo:
        parse_value(defn, raw, "r1")
    assert excinfo.value.kind == HEErrorKind.INVALID_VALUE
    assert excinfo.value.row_id == "r1"


def test_parse_value_enum(registry):
    defn = registry.definition(TableId.DEATHS, "sex")
    assert parse_value(defn, "f") == "f"
    with pytest.raises(HEError, match="Invalid enum value"):
        parse_value(defn, "x")


def test_parse_value_date(registry):
    defn = registry.definition(TableId.MISSING, "as_of")
    assert parse_value(defn, "2024-05-01") == date(2024, 5, 1)
    assert parse_value(defn, "2024-05-01T10:00:00Z") == date(2024, 5, 1)
    with pytest.raises(HEError, match="Invalid date format"):
        parse_value(defn, "01/05/2024")


def test_dimension_key_is_canonical():
    assert dimension_key({"sex": None, "age": None}) == TOTALS_KEY
    assert dimension_key({"sex": "m", "age": "0-14"}) == dimension_key({"age": "0-14", "sex": "m"})
    assert dimension_key({"as_of": date(2024, 1, 2)}) == '{"as_of":"2024-01-02"}'


# --- from_payload ---

def test_from_payload_positional(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    request = BatchRequest.from_payload(
        {
            "deletes": ["3"],
            "updates": {"5": {"0": "f", "5": 2}},
            "newRows": {"tmp-1": [None, "65+", None, None, None, 4]},
        },
        defs,
    )
    assert request.deletes == [3]
    assert request.updates == {5: {"sex": "f", "deaths": 2}}
    assert request.new_rows["tmp-1"]["age"] == "65+"
    assert request.new_rows["tmp-1"]["deaths"] == 4


def test_from_payload_new_rows_as_list(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    request = BatchRequest.from_payload({"newRows": [[None] * 5 + [1]]}, defs)
    assert list(request.new_rows) == ["0"]


@pytest.mark.parametrize(
    "payload",
    [
        {"updates": {"1": {"6": 1}}},
        {"updates": {"abc": {"0": "m"}}},
        {"newRows": {"a": [1, 2]}},
        {"deletes": [True]},
        {"deletes": 7},
        {"updates": [1]},
        {"newRows": 5},
        {"newRows": "m"},
    ],
)
def test_from_payload_rejects_malformed(registry, payload):
    defs = registry.definitions_for(TableId.DEATHS)
    with pytest.raises(HEError) as excinfo:
        BatchRequest.from_payload(payload, defs)
    assert excinfo.value.kind == HEErrorKind.INVALID_VALUE


# --- apply_batch ---

def test_insert_totals_and_breakdown(session, registry, record):
    result = _insert(session, registry, record, {
        "t": {"deaths": 10},
        "m": {"sex": "m", "deaths": 6},
        "f": {"sex": "f", "deaths": 4},
    })
    assert set(result.created) == {"t", "m", "f"}

    table = load_table(session, registry, record.id, TableId.DEATHS)
    assert table.data[0] == [None, None, None, None, None, 10.0]
    assert [row[0] for row in table.data] == [None, "f", "m"]
    assert table.ids[0] == result.created["t"]


def test_duplicate_tuple_in_one_batch(session, registry, record):
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(new_rows={
            "a": {"sex": "m", "deaths": 1},
            "b": {"sex": "m", "deaths": 2},
        }))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.DUPLICATE_DIMENSION_TUPLE
    assert excinfo.value.row_id == "b"
    assert _rows(session) == []


def test_duplicate_tuple_against_existing_row(session, registry, record):
    _insert(session, registry, record, {"a": {"age": "15-64", "deaths": 3}})
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(new_rows={
            "b": {"age": "15-64", "deaths": 5},
        }))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.DUPLICATE_DIMENSION_TUPLE
    assert len(_rows(session)) == 1


def test_same_tuple_allowed_in_other_table(session, registry, record):
    _insert(session, registry, record, {"a": {"sex": "m", "deaths": 3}})
    _insert(session, registry, record, {"a": {"sex": "m", "injured": 3}}, TableId.INJURED)
    assert len(_rows(session)) == 2


def test_delete_then_insert_same_tuple(session, registry, record):
    created = _insert(session, registry, record, {"a": {"sex": "m", "deaths": 3}}).created
    result = apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
        deletes=[created["a"]],
        new_rows={"b": {"sex": "m", "deaths": 8}},
    ))
    session.commit()
    assert result.deleted == [created["a"]]
    rows = _rows(session)
    assert len(rows) == 1
    assert rows[0].value == 8.0


def test_update_changes_value_and_tuple(session, registry, record):
    created = _insert(session, registry, record, {"a": {"sex": "m", "deaths": 3}}).created
    apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
        updates={created["a"]: {"sex": "o", "deaths": 4}},
    ))
    session.commit()
    row = _rows(session)[0]
    assert (row.sex, row.value) == ("o", 4.0)
    assert row.dimension_key == '{"sex":"o"}'


def test_update_into_existing_tuple_rejected(session, registry, record):
    created = _insert(session, registry, record, {
        "a": {"sex": "m", "deaths": 3},
        "b": {"sex": "f", "deaths": 2},
    }).created
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
            updates={created["b"]: {"sex": "m"}},
        ))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.DUPLICATE_DIMENSION_TUPLE
    assert excinfo.value.row_id == str(created["b"])


def test_swap_in_one_batch_trips_constraint(session, registry, record):
    created = _insert(session, registry, record, {
        "a": {"sex": "m", "deaths": 3},
        "b": {"sex": "f", "deaths": 2},
    }).created
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
            updates={created["a"]: {"sex": "f"}, created["b"]: {"sex": "m"}},
        ))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.DUPLICATE_DIMENSION_TUPLE


def test_negative_value_rolls_back_whole_batch(session, registry, record):
    created = _insert(session, registry, record, {"a": {"deaths": 3}}).created
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
            deletes=[created["a"]],
            new_rows={"b": {"sex": "m", "deaths": -1}},
        ))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.INVALID_VALUE
    assert excinfo.value.row_id == "b"
    assert [r.id for r in _rows(session)] == [created["a"]]


def test_enum_outside_domain(session, registry, record):
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
            new_rows={"a": {"age": "100+", "deaths": 1}},
        ))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.INVALID_VALUE


def test_unknown_column(session, registry, record):
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
            new_rows={"a": {"injured": 1}},
        ))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.UNKNOWN_DIMENSION


def test_unknown_row_ids(session, registry, record, other_record):
    created = _insert(session, registry, other_record, {"a": {"deaths": 3}}).created
    for request in (
        BatchRequest(deletes=[created["a"]]),
        BatchRequest(updates={created["a"]: {"deaths": 1}}),
        BatchRequest(deletes=[9999]),
    ):
        with pytest.raises(HEError) as excinfo:
            apply_batch(session, registry, record.id, TableId.DEATHS, request)
        session.rollback()
        assert excinfo.value.kind == HEErrorKind.UNKNOWN_ROW


def test_unknown_record(session, registry):
    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, 12345, TableId.DEATHS, BatchRequest(new_rows={"a": {"deaths": 1}}))
    assert excinfo.value.kind == HEErrorKind.UNKNOWN_ROW


def test_hidden_dimension_still_writable(session, record):
    registry = DimensionRegistry(hidden=parse_hidden_config({"cols": ["disability"]}))
    _insert(session, registry, record, {"a": {"disability": "psychosocial", "deaths": 2}})
    assert _rows(session)[0].disability == "psychosocial"
    # hidden columns are not part of the grid
    table = load_table(session, registry, record.id, TableId.DEATHS)
    assert len(table.defs) == 5


def test_custom_dimension_values(session, record):
    registry = DimensionRegistry(custom=parse_custom_config({
        "version": 1,
        "config": [{"uiName": "Region type", "dbName": "region_type",
                    "enum": [{"key": "urban"}, {"key": "rural"}]}],
    }))
    _insert(session, registry, record, {
        "u": {"region_type": "urban", "deaths": 2},
        "r": {"region_type": "rural", "deaths": 1},
    })
    rows = _rows(session)
    assert rows[0].custom == {"region_type": "urban"}
    assert rows[0].dimension_key == '{"region_type":"urban"}'

    table = load_table(session, registry, record.id, TableId.DEATHS)
    keys = [d.key for d in table.defs]
    assert [row[keys.index("region_type")] for row in table.data] == ["rural", "urban"]

    with pytest.raises(HEError) as excinfo:
        apply_batch(session, registry, record.id, TableId.DEATHS, BatchRequest(
            new_rows={"x": {"region_type": "urban", "deaths": 5}},
        ))
    session.rollback()
    assert excinfo.value.kind == HEErrorKind.DUPLICATE_DIMENSION_TUPLE


def test_load_table_tenant_scoped(session, registry, record):
    _insert(session, registry, record, {"a": {"deaths": 1}})
    assert load_table(session, registry, record.id, TableId.DEATHS, "tenant-b").ids == []
    assert len(load_table(session, registry, record.id, TableId.DEATHS, "tenant-a").ids) == 1


def test_clear_table_and_delete_all(session, registry, record):
    _insert(session, registry, record, {"a": {"deaths": 1}, "b": {"sex": "m", "deaths": 1}})
    _insert(session, registry, record, {"a": {"injured": 1}}, TableId.INJURED)

    assert clear_table(session, record.id, TableId.DEATHS) == 2
    session.commit()
    assert [r.table_id for r in _rows(session)] == ["Injured"]

    delete_all_data(session, record.id)
    session.commit()
    assert _rows(session) == []


def test_load_table_marks_stored_totals_row(session, record):
    registry = DimensionRegistry(hidden=parse_hidden_config({"cols": ["disability"]}))
    _insert(session, registry, record, {
        "t": {"deaths": 9},
        "h": {"disability": "none", "deaths": 5},
        "m": {"sex": "m", "deaths": 4},
    })
    table = load_table(session, registry, record.id, TableId.DEATHS)
    # the hidden-only row and the totals row look the same on the visible columns
    assert table.data[:2] == [[None] * 4 + [5.0], [None] * 4 + [9.0]]
    assert table.is_totals == [False, True, False]


# --- total group ---

def test_group_totals_sums_exact_group(session, registry, record):
    _insert(session, registry, record, {
        "m": {"sex": "m", "deaths": 6},
        "f": {"sex": "f", "deaths": 4},
        "ma": {"sex": "m", "age": "0-14", "deaths": 1},
        "a": {"age": "65+", "deaths": 2},
    })
    assert group_totals(session, registry, record.id, TableId.DEATHS, ["sex"]) == {"deaths": 10.0}
    assert group_totals(session, registry, record.id, TableId.DEATHS, ["age", "sex"]) == {"deaths": 1.0}
    assert group_totals(session, registry, record.id, TableId.DEATHS, ["disability"]) is None


def test_set_group_totals_creates_and_updates_totals_row(session, registry, record):
    _insert(session, registry, record, {"m": {"sex": "m", "deaths": 6}, "f": {"sex": "f", "deaths": 4}})
    set_group_totals(session, registry, record.id, TableId.DEATHS, ["sex"])
    session.commit()
    totals = [r for r in _rows(session) if r.dimension_key == TOTALS_KEY]
    assert [r.value for r in totals] == [10.0]

    _insert(session, registry, record, {"o": {"sex": "o", "deaths": 1}})
    set_group_totals(session, registry, record.id, TableId.DEATHS, ["sex"])
    session.commit()
    totals = [r for r in _rows(session) if r.dimension_key == TOTALS_KEY]
    assert [r.value for r in totals] == [11.0]


def test_set_group_totals_both_metrics(session, registry, record):
    _insert(session, registry, record, {
        "m": {"sex": "m", "direct": 6, "indirect": 1},
        "f": {"sex": "f", "direct": 4},
    }, TableId.AFFECTED)
    row = set_group_totals(session, registry, record.id, TableId.AFFECTED, ["sex"])
    assert (row.value, row.secondary) == (10.0, 1.0)


def test_set_group_totals_empty_group_leaves_totals(session, registry, record):
    _insert(session, registry, record, {"t": {"deaths": 3}})
    assert set_group_totals(session, registry, record.id, TableId.DEATHS, ["sex"]) is None
    assert [r.value for r in _rows(session)] == [3.0]


def test_clear_table_resets_total_group(session, registry, record):
    session.add(TotalGroup(record_id=record.id, table_id="Deaths", flags=[{"dbName": "sex", "isSet": True}]))
    session.add(TotalGroup(record_id=record.id, table_id="Injured", flags=[{"dbName": "age", "isSet": True}]))
    session.commit()
    clear_table(session, record.id, TableId.DEATHS)
    session.commit()
    assert [g.table_id for g in session.query(TotalGroup).all()] == ["Injured"]

    delete_all_data(session, record.id)
    session.commit()
    assert session.query(TotalGroup).count() == 0
