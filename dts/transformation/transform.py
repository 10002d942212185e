"""Transform raw HIP and division data into the taxonomy and division tables."""

import logging
from pathlib import Path

import pandas as pd
from shapely.geometry import MultiPolygon, Polygon, shape

from dts.hierarchy.aggregate import AggregationNode, Hierarchy

logger = logging.getLogger(__name__)

RAW_DIR = Path(__file__).resolve().parents[2] / "data" / "raw"


def load_raw_hip_data(path: Path | None = None) -> pd.DataFrame:
    """Load raw HIP Parquet from the landing zone."""
    path = path or RAW_DIR / "hip_raw.parquet"
    df = pd.read_parquet(path)
    logger.info("Loaded %d rows from %s", len(df), path)
    return df


def clean_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Strip whitespace from string columns."""
    for col in df.select_dtypes(include="object").columns:
        df[col] = df[col].map(lambda v: v.strip() if isinstance(v, str) else v)
    return df


def normalize_id(value) -> str | None:
    """HIP ids arrive as ints or strings; store them as strings like '1' or '10'."""
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def build_hip_types(df: pd.DataFrame) -> pd.DataFrame:
    types = (
        df[["type_id", "type_name"]]
        .drop_duplicates(subset=["type_id"], keep="last")
        .rename(columns={"type_id": "id", "type_name": "name_en"})
    )
    types["id"] = types["id"].map(normalize_id)
    logger.info("Built hip_types: %d rows", len(types))
    return types.reset_index(drop=True)


def build_hip_clusters(df: pd.DataFrame) -> pd.DataFrame:
    clusters = (
        df[["cluster_id", "type_id", "cluster_name"]]
        .drop_duplicates(subset=["cluster_id"], keep="last")
        .rename(columns={"cluster_id": "id", "cluster_name": "name_en"})
    )
    clusters["id"] = clusters["id"].map(normalize_id)
    clusters["type_id"] = clusters["type_id"].map(normalize_id)
    logger.info("Built hip_clusters: %d rows", len(clusters))
    return clusters.reset_index(drop=True)


def build_hip_hazards(df: pd.DataFrame) -> pd.DataFrame:
    hazards = (
        df[["id", "cluster_id", "notation", "title", "description"]]
        .drop_duplicates(subset=["id"], keep="last")
        .rename(columns={"notation": "code", "title": "name_en", "description": "description_en"})
    )
    hazards["id"] = hazards["id"].map(normalize_id)
    hazards["cluster_id"] = hazards["cluster_id"].map(normalize_id)
    logger.info("Built hip_hazards: %d rows", len(hazards))
    return hazards.reset_index(drop=True)


def transform_hip(raw_path: Path | None = None, df: pd.DataFrame | None = None) -> dict[str, pd.DataFrame]:
    """Run the HIP transformations and return the three taxonomy levels."""
    if df is None:
        df = load_raw_hip_data(raw_path)
    df = clean_columns(df.copy())
    return {
        "hip_types": build_hip_types(df),
        "hip_clusters": build_hip_clusters(df),
        "hip_hazards": build_hip_hazards(df),
    }


def _as_multipolygon(geometry: dict | None):
    if not geometry:
        return None
    geom = shape(geometry)
    if isinstance(geom, Polygon):
        return MultiPolygon([geom])
    if isinstance(geom, MultiPolygon):
        return geom
    raise ValueError(f"Division geometry must be a polygon, got {geom.geom_type}")


def build_divisions(geojson: dict) -> pd.DataFrame:
    """One row per feature, with the parent resolved and ``level`` computed.

    Features need ``id`` and may carry ``parent``, ``name`` and
    ``national_id`` properties. A parent that is not in the file is an error,
    as is a cyclic parent chain.
    """
    rows = []
    for feature in geojson.get("features", []):
        props = feature.get("properties") or {}
        import_id = normalize_id(props.get("id"))
        rows.append({
            "import_id": import_id,
            "parent_import_id": normalize_id(props.get("parent")),
            "name": props.get("name") or props.get("name_en") or import_id,
            "national_id": normalize_id(props.get("national_id")),
            "geometry": _as_multipolygon(feature.get("geometry")),
        })
    divisions = pd.DataFrame(
        rows, columns=["import_id", "parent_import_id", "name", "national_id", "geometry"],
    )

    if divisions["import_id"].isna().any():
        raise ValueError("Every division feature needs an id property")

    known = set(divisions["import_id"].dropna())
    orphans = set(divisions["parent_import_id"].dropna()) - known
    if orphans:
        raise ValueError(f"Parent divisions not found in import: {sorted(orphans)}")

    tree = Hierarchy.from_nodes(
        AggregationNode(id=r.import_id, parent_id=r.parent_import_id, name=r.name)
        for r in divisions.itertuples()
    )
    depths = tree.depths()
    divisions["level"] = divisions["import_id"].map(depths).astype(int)
    logger.info(
        "Built divisions: %d rows, %d levels",
        len(divisions), divisions["level"].max() if len(divisions) else 0,
    )
    return divisions
