"""Tests for category presence flags and the advisory table validations."""

import pytest

from dts.human_effects.config import parse_hidden_config
from dts.human_effects.definitions import DimensionRegistry, TableId
from dts.human_effects.errors import HEError, HEErrorKind
from dts.human_effects.presence import (
    group_key,
    parse_total_group,
    presence_delete_all,
    presence_from_rows,
    presence_get,
    presence_set,
    total_group_get,
    total_group_keys,
    total_group_set,
    validate_table,
    validate_total_group,
)

NONE5 = [None] * 5


def test_presence_defaults_to_false(session, registry, record):
    flags = presence_get(session, record.id, TableId.DEATHS, registry)
    assert set(flags) == {"sex", "age", "disability", "global_poverty_line", "national_poverty_line", "deaths"}
    assert not any(flags.values())


def test_presence_set_is_idempotent(session, registry, record):
    presence_set(session, record.id, TableId.DEATHS, {"sex": True}, registry)
    presence_set(session, record.id, TableId.DEATHS, {"sex": True}, registry)
    session.commit()
    assert presence_get(session, record.id, TableId.DEATHS, registry)["sex"] is True


def test_presence_last_write_wins(session, registry, record):
    presence_set(session, record.id, TableId.DEATHS, {"sex": True, "age": True}, registry)
    presence_set(session, record.id, TableId.DEATHS, {"sex": False}, registry)
    flags = presence_get(session, record.id, TableId.DEATHS, registry)
    assert flags["sex"] is False
    assert flags["age"] is True


def test_presence_is_per_table(session, registry, record):
    presence_set(session, record.id, TableId.DEATHS, {"sex": True}, registry)
    assert presence_get(session, record.id, TableId.INJURED, registry)["sex"] is False


def test_presence_unknown_key(session, registry, record):
    with pytest.raises(HEError) as excinfo:
        presence_set(session, record.id, TableId.DEATHS, {"injured": True}, registry)
    assert excinfo.value.kind == HEErrorKind.UNKNOWN_DIMENSION


@pytest.mark.parametrize("flags", [{"sex": "false"}, {"sex": 1}, {"sex": None}, ["sex"], "sex"])
def test_presence_rejects_non_boolean_flags(session, registry, record, flags):
    with pytest.raises(HEError) as excinfo:
        presence_set(session, record.id, TableId.DEATHS, flags, registry)
    assert excinfo.value.kind == HEErrorKind.INVALID_VALUE
    assert presence_get(session, record.id, TableId.DEATHS, registry)["sex"] is False


def test_presence_tenant_scoped(session, registry, record):
    presence_set(session, record.id, TableId.DEATHS, {"sex": True}, registry)
    assert presence_get(session, record.id, TableId.DEATHS, registry, "tenant-b")["sex"] is False
    assert presence_get(session, record.id, TableId.DEATHS, registry, "tenant-a")["sex"] is True


def test_presence_delete_all(session, registry, record):
    presence_set(session, record.id, TableId.DEATHS, {"sex": True}, registry)
    presence_delete_all(session, record.id)
    assert presence_get(session, record.id, TableId.DEATHS, registry)["sex"] is False


def test_presence_from_rows(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    flags = presence_from_rows(defs, [NONE5 + [3.0], ["m", None, None, None, None, 2.0]])
    assert flags["sex"] is True
    assert flags["deaths"] is True
    assert flags["age"] is False


def test_group_key(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    assert group_key(defs, ["m", None, None, None, "below", 1.0]) == "10001"
    assert group_key(defs, NONE5 + [1.0]) == "00000"


# --- validate_total_group ---

def test_total_group_missing(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    issues = validate_total_group({"sex": True}, defs, [["m", None, None, None, None, 2.0]])
    assert [i.code for i in issues] == ["total_group_missing"]


def test_total_group_present(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    rows = [NONE5 + [3.0], ["m", None, None, None, None, 2.0]]
    assert validate_total_group({"sex": True}, defs, rows) == []


def test_total_group_no_flags(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    assert validate_total_group({}, defs, [["m", None, None, None, None, 2.0]]) == []
    # metric flags alone do not ask for a totals row
    assert validate_total_group({"deaths": True}, defs, []) == []


# --- validate_table ---

def _codes(issues):
    return sorted(i.code for i in issues)


def test_validate_table_consistent(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    rows = [NONE5 + [10.0], ["m", None, None, None, None, 6.0], ["f", None, None, None, None, 4.0]]
    result = validate_table(defs, [1, 2, 3], rows)
    assert result.ok
    assert result.group_warnings == []


def test_validate_table_subtotal_larger(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    rows = [NONE5 + [5.0], ["m", None, None, None, None, 6.0], ["f", None, None, None, None, 4.0]]
    result = validate_table(defs, [1, 2, 3], rows)
    assert not result.ok
    assert _codes(result.group_errors) == ["subtotal_larger_than_total"]
    assert {e.row_id for e in result.row_errors} == {2, 3}


def test_validate_table_subtotal_lower_is_warning(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    rows = [NONE5 + [12.0], ["m", None, None, None, None, 6.0]]
    result = validate_table(defs, [1, 2], rows)
    assert result.ok
    assert _codes(result.group_warnings) == ["subtotal_lower_than_total"]
    assert [w.row_id for w in result.row_warnings] == [2]


def test_validate_table_row_errors(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    rows = [
        NONE5 + [1.0],
        NONE5 + [2.0],
        ["m", None, None, None, None, None],
        ["f", None, None, None, None, 0.0],
    ]
    result = validate_table(defs, [1, 2, 3, 4], rows)
    assert {(e.row_id, e.code) for e in result.row_errors} >= {
        (2, "no_dimension_data"),
        (3, "row_with_no_metric_value"),
        (4, "row_with_all_metrics_zeroes"),
    }


def test_validate_table_duplicates(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    rows = [["m", None, None, None, None, 1.0], ["m", None, None, None, None, 2.0]]
    result = validate_table(defs, [1, 2], rows)
    assert [(e.row_id, e.code) for e in result.row_errors] == [
        (1, "duplicate_dimension"), (2, "duplicate_dimension"),
    ]


def test_validate_table_skips_dated_groups(registry):
    defs = registry.definitions_for(TableId.MISSING)
    rows = [
        NONE5 + [None, 3.0],
        NONE5 + ["2024-01-01", 5.0],
        NONE5 + ["2024-01-08", 7.0],
    ]
    result = validate_table(defs, [1, 2, 3], rows)
    assert result.group_errors == []
    assert result.group_warnings == []


def test_validate_table_duplicates_reported_once_per_row(registry):
    defs = registry.definitions_for(TableId.DEATHS)
    rows = [["m", None, None, None, None, float(n)] for n in (1, 2, 3)]
    result = validate_table(defs, [1, 2, 3], rows)
    assert [(e.row_id, e.code) for e in result.row_errors] == [
        (1, "duplicate_dimension"), (2, "duplicate_dimension"), (3, "duplicate_dimension"),
    ]


# --- hidden columns ---

@pytest.fixture()
def hidden_registry():
    return DimensionRegistry(hidden=parse_hidden_config({"cols": ["disability"]}))


def test_total_group_missing_with_hidden_only_row(hidden_registry):
    defs = hidden_registry.definitions_for(TableId.DEATHS)
    # disability="none" is hidden, so that row shows no visible values
    rows = [[None, None, None, None, 5.0], ["m", None, None, None, 3.0]]
    issues = validate_total_group({"sex": True}, defs, rows, [False, False])
    assert [i.code for i in issues] == ["total_group_missing"]


def test_validate_table_skips_hidden_only_rows(hidden_registry):
    defs = hidden_registry.definitions_for(TableId.DEATHS)
    rows = [
        [None, None, None, None, 8.0],
        [None, None, None, None, 5.0],
        [None, None, None, None, 2.0],
        ["m", None, None, None, 8.0],
    ]
    result = validate_table(defs, [1, 2, 3, 4], rows, [True, False, False, False])
    assert result.ok
    assert result.row_errors == []
    assert result.group_warnings == []


def test_validate_table_compares_against_stored_totals_row(hidden_registry):
    defs = hidden_registry.definitions_for(TableId.DEATHS)
    rows = [[None, None, None, None, 5.0], [None, None, None, None, 8.0], ["m", None, None, None, 6.0]]
    result = validate_table(defs, [1, 2, 3], rows, [False, True, False])
    assert _codes(result.group_warnings) == ["subtotal_lower_than_total"]
    assert [w.row_id for w in result.row_warnings] == [3]


# --- total group ---

def test_total_group_get_without_data(session, record):
    assert total_group_get(session, record.id, TableId.DEATHS) is None


def test_total_group_set_and_update(session, registry, record):
    flags = [{"dbName": "sex", "isSet": True}, {"dbName": "age", "isSet": False}]
    total_group_set(session, registry, record.id, TableId.DEATHS, flags)
    session.commit()
    assert total_group_get(session, record.id, TableId.DEATHS) == flags

    total_group_set(session, registry, record.id, TableId.DEATHS, [{"dbName": "age", "isSet": True}])
    session.commit()
    assert total_group_get(session, record.id, TableId.DEATHS) == [{"dbName": "age", "isSet": True}]
    assert total_group_get(session, record.id, TableId.INJURED) is None

    total_group_set(session, registry, record.id, TableId.DEATHS, None)
    session.commit()
    assert total_group_get(session, record.id, TableId.DEATHS) is None


def test_total_group_keys():
    assert total_group_keys(None) == []
    assert total_group_keys([{"dbName": "sex", "isSet": True}, {"dbName": "age", "isSet": False}]) == ["sex"]


@pytest.mark.parametrize(
    "flags",
    [
        "invalid",
        [{"dbName": "sex", "isSet": "true"}],
        [{"dbName": "sex"}],
        ["sex"],
        [{"dbName": "deaths", "isSet": True}],
        [{"dbName": "sex", "isSet": True}, {"dbName": "sex", "isSet": False}],
    ],
)
def test_parse_total_group_rejects(registry, flags):
    with pytest.raises(HEError) as excinfo:
        parse_total_group(registry, TableId.DEATHS, flags)
    assert excinfo.value.kind == HEErrorKind.INVALID_VALUE


def test_parse_total_group_rejects_dated_group(registry):
    with pytest.raises(HEError) as excinfo:
        parse_total_group(registry, TableId.MISSING, [{"dbName": "as_of", "isSet": True}])
    assert excinfo.value.kind == HEErrorKind.INVALID_VALUE


def test_parse_total_group_unknown_column(registry):
    with pytest.raises(HEError) as excinfo:
        parse_total_group(registry, TableId.DEATHS, [{"dbName": "colour", "isSet": True}])
    assert excinfo.value.kind == HEErrorKind.UNKNOWN_DIMENSION
