"""Error types for the human-effects core and hierarchy roll-ups."""

from enum import Enum


class HEErrorKind(str, Enum):
    DUPLICATE_DIMENSION_TUPLE = "duplicate_dimension_tuple"
    INVALID_VALUE = "invalid_value"
    UNKNOWN_TABLE = "unknown_table"
    UNKNOWN_DIMENSION = "unknown_dimension"
    UNKNOWN_ROW = "unknown_row"
    INVALID_CONFIG = "invalid_config"
    CYCLIC_HIERARCHY = "cyclic_hierarchy"


# Kinds a user can fix by editing their input; everything else is a
# configuration or data-integrity problem.
USER_ERROR_KINDS = frozenset({
    HEErrorKind.DUPLICATE_DIMENSION_TUPLE,
    HEErrorKind.INVALID_VALUE,
    HEErrorKind.UNKNOWN_ROW,
})


class HEError(Exception):
    """Structured error raised by the registry, batch engine and aggregator."""

    def __init__(self, kind: HEErrorKind, message: str, row_id: str | None = None):
        super().__init__(message)
        self.kind = HEErrorKind(kind)
        self.message = message
        self.row_id = row_id

    @property
    def is_user_error(self) -> bool:
        return self.kind in USER_ERROR_KINDS

    def to_dict(self) -> dict:
        return {
            "code": self.kind.value,
            "message": self.message,
            "rowId": self.row_id,
        }

    def __repr__(self) -> str:
        return f"HEError({self.kind.value!r}, {self.message!r}, row_id={self.row_id!r})"


def invalid_value(message: str, row_id: str | None = None) -> HEError:
    return HEError(HEErrorKind.INVALID_VALUE, message, row_id)
