"""Tenant disaggregation configuration: custom dimensions and hidden columns.

Both blobs are stored as JSON in ``human_dsg_config`` and validated against a
fixed envelope when loaded. Unknown versions are rejected instead of being
parsed on a best-effort basis.
"""

import logging
import re
from typing import List, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from dts.human_effects.errors import HEError, HEErrorKind

logger = logging.getLogger(__name__)

SUPPORTED_CUSTOM_VERSION = 1

_DB_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,62}$")


class CustomEnumOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str = Field(min_length=1)
    label: str = ""


class CustomDimension(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ui_name: str = Field(validation_alias=AliasChoices("uiName", "ui_name"))
    db_name: str = Field(validation_alias=AliasChoices("dbName", "db_name"))
    enum: List[CustomEnumOption]

    @field_validator("db_name")
    @classmethod
    def _db_name_is_identifier(cls, value: str) -> str:
        if not _DB_NAME_RE.match(value):
            raise ValueError(f"dbName {value!r} must be a lowercase identifier")
        return value

    @field_validator("enum")
    @classmethod
    def _at_least_two_options(cls, value: List[CustomEnumOption]) -> List[CustomEnumOption]:
        if len(value) < 2:
            raise ValueError("a custom disaggregation needs at least 2 options")
        keys = [option.key for option in value]
        if len(set(keys)) != len(keys):
            raise ValueError("custom disaggregation options must have unique keys")
        return value


class CustomDimensionsConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: Literal[1]
    dimensions: List[CustomDimension] = Field(
        default_factory=list, validation_alias=AliasChoices("dimensions", "config"),
    )

    @field_validator("dimensions")
    @classmethod
    def _unique_db_names(cls, value: List[CustomDimension]) -> List[CustomDimension]:
        names = [d.db_name for d in value]
        if len(set(names)) != len(names):
            raise ValueError("custom disaggregations must have unique dbName values")
        return value

    def to_json(self) -> dict:
        return {
            "version": self.version,
            "dimensions": [
                {
                    "uiName": d.ui_name,
                    "dbName": d.db_name,
                    "enum": [{"key": o.key, "label": o.label} for o in d.enum],
                }
                for d in self.dimensions
            ],
        }


class HiddenColumnsConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    cols: List[str] = Field(default_factory=list)

    def to_json(self) -> dict:
        return {"cols": list(self.cols)}


def parse_custom_config(raw: dict | None) -> CustomDimensionsConfig | None:
    """Validate a stored custom-dimension blob, ``None`` meaning no custom dimensions."""
    if raw is None:
        return None
    if isinstance(raw, dict) and raw.get("version") != SUPPORTED_CUSTOM_VERSION:
        raise HEError(
            HEErrorKind.INVALID_CONFIG,
            f"Unsupported custom disaggregation config version: {raw.get('version')!r}",
        )
    try:
        return CustomDimensionsConfig.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Rejected custom disaggregation config: %s", exc)
        raise HEError(HEErrorKind.INVALID_CONFIG, f"Invalid custom disaggregation config: {exc}") from exc


def parse_hidden_config(raw: dict | None) -> HiddenColumnsConfig:
    if raw is None:
        return HiddenColumnsConfig()
    try:
        return HiddenColumnsConfig.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Rejected hidden columns config: %s", exc)
        raise HEError(HEErrorKind.INVALID_CONFIG, f"Invalid hidden columns config: {exc}") from exc
