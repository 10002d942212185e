"""Disaggregation dimension definitions for the human-effects tables.

Every table shares the built-in dimensions (sex, age, disability, poverty
lines), then any tenant custom dimensions, then its own dimensions and
metrics. The order returned by ``definitions_for`` is the positional column
order used by the editing grid and the save payload.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from dts.database.models import HumanDsgConfig
from dts.human_effects.config import (
    CustomDimensionsConfig,
    HiddenColumnsConfig,
    parse_custom_config,
    parse_hidden_config,
)
from dts.human_effects.errors import HEError, HEErrorKind

logger = logging.getLogger(__name__)


class TableId(str, Enum):
    DEATHS = "Deaths"
    INJURED = "Injured"
    MISSING = "Missing"
    AFFECTED = "Affected"
    DISPLACED = "Displaced"
    DISPLACEMENT_STOCKS = "DisplacementStocks"


def table_id_from_string(value: str) -> TableId:
    try:
        return TableId(value)
    except ValueError:
        raise HEError(HEErrorKind.UNKNOWN_TABLE, f"Unknown human effects table: {value!r}") from None


@dataclass(frozen=True)
class EnumOption:
    key: str
    label: str


@dataclass(frozen=True)
class DimensionDef:
    key: str
    label: str
    kind: str  # enum | number | date | boolean
    role: str = "dimension"  # dimension | metric
    domain: tuple[EnumOption, ...] = ()
    shared: bool = False
    custom: bool = False
    column: str | None = None  # EffectRow attribute; custom values live in EffectRow.custom

    @property
    def is_dimension(self) -> bool:
        return self.role == "dimension"

    @property
    def is_metric(self) -> bool:
        return self.role == "metric"

    def domain_keys(self) -> set[str]:
        return {option.key for option in self.domain}


def _enum(key: str, label: str, options: list[tuple[str, str]], shared: bool = False) -> DimensionDef:
    return DimensionDef(
        key=key,
        label=label,
        kind="enum",
        domain=tuple(EnumOption(k, v) for k, v in options),
        shared=shared,
        column=key,
    )


def _metric(key: str, label: str, column: str = "value") -> DimensionDef:
    return DimensionDef(key=key, label=label, kind="number", role="metric", column=column)


def _as_of() -> DimensionDef:
    return DimensionDef(key="as_of", label="As of", kind="date", column="as_of")


SHARED_DIMENSIONS: tuple[DimensionDef, ...] = (
    _enum("sex", "Sex", [
        ("m", "M-Male"),
        ("f", "F-Female"),
        ("o", "O-Other Non-binary"),
    ], shared=True),
    _enum("age", "Age", [
        ("0-14", "Children, (0-14)"),
        ("15-64", "Adult, (15-64)"),
        ("65+", "Elder (65-)"),
    ], shared=True),
    _enum("disability", "Disability", [
        ("none", "No disabilities"),
        ("physical_dwarfism", "Physical, dwarfism"),
        ("physical_problems_in_body_functioning", "Physical, Problems in body functioning"),
        ("physical_problems_in_body_structures", "Physical, Problems in body structures"),
        ("physical_other_physical_disability", "Physical, Other physical disability"),
        ("sensorial_visual_impairments_blindness", "Sensorial, visual impairments, blindness"),
        ("sensorial_visual_impairments_partial_sight_loss", "Sensorial, visual impairments, partial sight loss"),
        ("sensorial_visual_impairments_colour_blindness", "Sensorial, visual impairments, colour blindness"),
        ("sensorial_hearing_impairments_deafness_hard_of_hearing",
         "Sensorial, Hearing impairments, Deafness, hard of hearing"),
        ("sensorial_hearing_impairments_deafness_other_hearing_disability",
         "Sensorial, Hearing impairments, Deafness, other hearing disability"),
        ("sensorial_other_sensory_impairments", "Sensorial, other sensory impairments"),
        ("psychosocial", "Psychosocial"),
        ("intellectual_cognitive", "Intellectual/ Cognitive"),
        ("multiple_deaf_blindness", "Multiple, Deaf blindness"),
        ("multiple_other_multiple", "Multiple, other multiple"),
        ("others", "Others"),
    ], shared=True),
    _enum("global_poverty_line", "Global poverty line", [
        ("below", "Below"),
        ("above", "Above"),
    ], shared=True),
    _enum("national_poverty_line", "National poverty line", [
        ("below", "Below"),
        ("above", "Above"),
    ], shared=True),
)

TABLE_DEFINITIONS: dict[TableId, tuple[DimensionDef, ...]] = {
    TableId.DEATHS: (
        _metric("deaths", "Deaths"),
    ),
    TableId.INJURED: (
        _metric("injured", "Injured"),
    ),
    TableId.MISSING: (
        _as_of(),
        _metric("missing", "Missing"),
    ),
    TableId.AFFECTED: (
        _metric("direct", "Directly Affected (Old DesInventar)"),
        _metric("indirect", "Indirectly Affected (Old DesInventar)", column="secondary"),
    ),
    TableId.DISPLACED: (
        _enum("assisted", "Assisted", [
            ("assisted", "Assisted"),
            ("not_assisted", "Not Assisted"),
        ]),
        _enum("timing", "Timing", [
            ("pre-emptive", "Pre-emptive"),
            ("reactive", "Reactive"),
        ]),
        _enum("duration", "Duration", [
            ("short", "Short Term"),
            ("medium_short", "Medium Short Term"),
            ("medium_long", "Medium Long Term"),
            ("long", "Long Term"),
            ("permanent", "Permanent"),
        ]),
        _as_of(),
        _metric("displaced", "Displaced"),
    ),
    TableId.DISPLACEMENT_STOCKS: (
        _as_of(),
        _metric("displacement_stocks", "Displacement stocks"),
    ),
}

RESERVED_KEYS = frozenset(
    [d.key for d in SHARED_DIMENSIONS]
    + [d.key for defs in TABLE_DEFINITIONS.values() for d in defs]
)


def _check_table(table_id) -> TableId:
    if not isinstance(table_id, TableId):
        raise HEError(HEErrorKind.UNKNOWN_TABLE, f"Unknown human effects table: {table_id!r}")
    return table_id


class DimensionRegistry:
    """Resolves the ordered definitions for each table for one tenant."""

    def __init__(
        self,
        custom: CustomDimensionsConfig | None = None,
        hidden: HiddenColumnsConfig | None = None,
    ):
        self.custom = custom
        self.hidden = hidden or HiddenColumnsConfig()

        self._custom_defs: tuple[DimensionDef, ...] = ()
        if custom is not None:
            clashes = [d.db_name for d in custom.dimensions if d.db_name in RESERVED_KEYS]
            if clashes:
                raise HEError(
                    HEErrorKind.INVALID_CONFIG,
                    f"Custom disaggregations shadow built-in columns: {clashes}",
                )
            self._custom_defs = tuple(
                DimensionDef(
                    key=d.db_name,
                    label=d.ui_name,
                    kind="enum",
                    domain=tuple(EnumOption(o.key, o.label) for o in d.enum),
                    custom=True,
                )
                for d in custom.dimensions
            )

        hideable = {d.key for d in SHARED_DIMENSIONS} | {d.key for d in self._custom_defs}
        unknown = [c for c in self.hidden.cols if c not in hideable]
        if unknown:
            raise HEError(HEErrorKind.INVALID_CONFIG, f"Cannot hide unknown disaggregations: {unknown}")
        self._hidden = frozenset(self.hidden.cols)

    @classmethod
    def load(cls, session: Session, country_accounts_id: str | None = None) -> "DimensionRegistry":
        """Build the registry from the tenant's stored config, or the system default row."""
        row = None
        if country_accounts_id is not None:
            row = session.scalars(
                select(HumanDsgConfig).where(HumanDsgConfig.country_accounts_id == country_accounts_id)
            ).first()
        if row is None:
            row = session.scalars(
                select(HumanDsgConfig).where(HumanDsgConfig.country_accounts_id.is_(None))
            ).first()
        if row is None:
            return cls()
        return cls(custom=parse_custom_config(row.custom), hidden=parse_hidden_config(row.hidden))

    def is_hidden(self, key: str) -> bool:
        return key in self._hidden

    def all_definitions_for(self, table_id: TableId) -> list[DimensionDef]:
        """All definitions, including hidden ones still referenced by stored rows."""
        table_id = _check_table(table_id)
        return [*SHARED_DIMENSIONS, *self._custom_defs, *TABLE_DEFINITIONS[table_id]]

    def definitions_for(self, table_id: TableId) -> list[DimensionDef]:
        return [d for d in self.all_definitions_for(table_id) if d.key not in self._hidden]

    def dimensions_for(self, table_id: TableId) -> list[DimensionDef]:
        return [d for d in self.all_definitions_for(table_id) if d.is_dimension]

    def metrics_for(self, table_id: TableId) -> list[DimensionDef]:
        return [d for d in self.all_definitions_for(table_id) if d.is_metric]

    def definition(self, table_id: TableId, key: str) -> DimensionDef:
        for defn in self.all_definitions_for(table_id):
            if defn.key == key:
                return defn
        raise HEError(
            HEErrorKind.UNKNOWN_DIMENSION,
            f"Unknown column {key!r} for table {table_id.value}",
        )


def save_config(
    session: Session,
    country_accounts_id: str | None,
    custom: dict | None = None,
    hidden: dict | None = None,
) -> DimensionRegistry:
    """Validate and store a tenant's disaggregation settings.

    The new settings are checked by building a registry from them before
    anything is written.
    """
    custom_cfg = parse_custom_config(custom)
    hidden_cfg = parse_hidden_config(hidden)
    registry = DimensionRegistry(custom=custom_cfg, hidden=hidden_cfg)

    if country_accounts_id is None:
        condition = HumanDsgConfig.country_accounts_id.is_(None)
    else:
        condition = HumanDsgConfig.country_accounts_id == country_accounts_id
    row = session.scalars(select(HumanDsgConfig).where(condition)).first()
    if row is None:
        row = HumanDsgConfig(country_accounts_id=country_accounts_id)
        session.add(row)
    row.custom = custom_cfg.to_json() if custom_cfg else None
    row.hidden = hidden_cfg.to_json()
    session.flush()
    logger.info(
        "Saved disaggregation config for %s: %d custom, %d hidden",
        country_accounts_id or "<default>",
        len(custom_cfg.dimensions) if custom_cfg else 0,
        len(hidden_cfg.cols),
    )
    return registry
