"""Data quality checks for the taxonomy and division imports."""

import logging

import pandas as pd

logger = logging.getLogger(__name__)


class QualityCheckError(Exception):
    pass


def check_not_empty(df: pd.DataFrame, name: str) -> None:
    """Verify DataFrame is not empty."""
    if df.empty:
        raise QualityCheckError(f"{name} is empty")
    logger.info("PASS: %s has %d rows", name, len(df))


def check_no_nulls(df: pd.DataFrame, columns: list[str], name: str) -> None:
    """Verify specified columns have no null values."""
    for col in columns:
        null_count = df[col].isna().sum()
        if null_count > 0:
            raise QualityCheckError(f"{name}.{col} has {null_count} null values")
    logger.info("PASS: %s has no nulls in %s", name, columns)


def check_non_negative(df: pd.DataFrame, columns: list[str], name: str) -> None:
    """Verify numeric columns have no negative values (ignoring nulls)."""
    for col in columns:
        negative_count = (pd.to_numeric(df[col], errors="coerce").dropna() < 0).sum()
        if negative_count > 0:
            raise QualityCheckError(f"{name}.{col} has {negative_count} negative values")
    logger.info("PASS: %s has no negatives in %s", name, columns)


def check_unique(df: pd.DataFrame, columns: list[str], name: str) -> None:
    """Verify column(s) form a unique key."""
    duplicate_count = df.duplicated(subset=columns).sum()
    if duplicate_count > 0:
        raise QualityCheckError(f"{name} has {duplicate_count} duplicate rows on {columns}")
    logger.info("PASS: %s is unique on %s", name, columns)


def check_referential_integrity(
    child_df: pd.DataFrame,
    child_col: str,
    parent_df: pd.DataFrame,
    parent_col: str,
    name: str,
) -> None:
    """Verify every non-null reference exists in the parent table."""
    child_keys = set(child_df[child_col].dropna().unique())
    parent_keys = set(parent_df[parent_col].dropna().unique())
    orphans = child_keys - parent_keys
    if orphans:
        raise QualityCheckError(
            f"{name}: {len(orphans)} orphan keys in {child_col} not found in {parent_col}"
        )
    logger.info("PASS: %s referential integrity OK (%d keys)", name, len(child_keys))


def run_hip_checks(tables: dict[str, pd.DataFrame]) -> None:
    """Run all quality checks on the transformed HIP taxonomy."""
    hip_types = tables["hip_types"]
    hip_clusters = tables["hip_clusters"]
    hip_hazards = tables["hip_hazards"]

    for name, df in tables.items():
        check_not_empty(df, name)

    check_no_nulls(hip_types, ["id", "name_en"], "hip_types")
    check_no_nulls(hip_clusters, ["id", "type_id", "name_en"], "hip_clusters")
    check_no_nulls(hip_hazards, ["id", "cluster_id", "code", "name_en"], "hip_hazards")

    check_unique(hip_types, ["id"], "hip_types")
    check_unique(hip_clusters, ["id"], "hip_clusters")
    check_unique(hip_hazards, ["id"], "hip_hazards")

    check_referential_integrity(hip_clusters, "type_id", hip_types, "id", "hip_clusters→hip_types")
    check_referential_integrity(hip_hazards, "cluster_id", hip_clusters, "id", "hip_hazards→hip_clusters")

    logger.info("All HIP quality checks passed!")


def run_division_checks(divisions: pd.DataFrame) -> None:
    """Run all quality checks on a transformed division import."""
    check_not_empty(divisions, "divisions")
    check_no_nulls(divisions, ["import_id", "name", "level"], "divisions")
    check_unique(divisions, ["import_id"], "divisions")
    check_non_negative(divisions, ["level"], "divisions")
    check_referential_integrity(
        divisions, "parent_import_id", divisions, "import_id", "divisions→parent",
    )
    logger.info("All division quality checks passed!")
