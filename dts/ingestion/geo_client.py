"""Load administrative division boundaries from a GeoJSON file or URL."""

import json
import logging
from pathlib import Path

import requests
from shapely.geometry import mapping, shape

logger = logging.getLogger(__name__)

RAW_DIR = Path(__file__).resolve().parents[2] / "data" / "raw"


def fetch_divisions_geojson(source: str) -> dict:
    """Read a division FeatureCollection from an http(s) URL or a local path."""
    if source.startswith(("http://", "https://")):
        logger.info("Fetching divisions GeoJSON: %s", source)
        resp = requests.get(source, timeout=60)
        resp.raise_for_status()
        geojson = resp.json()
    else:
        with open(source, encoding="utf-8") as f:
            geojson = json.load(f)

    if geojson.get("type") != "FeatureCollection":
        raise ValueError(f"Expected a FeatureCollection, got {geojson.get('type')!r}")
    logger.info("Loaded %d division features", len(geojson.get("features", [])))
    return geojson


def simplify_geojson(geojson: dict, tolerance: float = 0.0001) -> dict:
    """Simplify polygon geometries to reduce file size while preserving shape."""
    simplified_features = []
    for feature in geojson["features"]:
        geometry = feature.get("geometry")
        if geometry:
            geometry = mapping(shape(geometry).simplify(tolerance, preserve_topology=True))
        simplified_features.append({
            "type": "Feature",
            "properties": feature.get("properties", {}),
            "geometry": geometry,
        })

    result = {"type": "FeatureCollection", "features": simplified_features}
    logger.info("Simplified %d features (tolerance=%.4f)", len(simplified_features), tolerance)
    return result


def save_geojson(geojson: dict, filename: str = "divisions.geojson") -> Path:
    """Save GeoJSON to the raw data landing zone."""
    RAW_DIR.mkdir(parents=True, exist_ok=True)
    path = RAW_DIR / filename
    with open(path, "w", encoding="utf-8") as f:
        json.dump(geojson, f, ensure_ascii=False)
    logger.info("Saved divisions GeoJSON to %s (%d features)", path, len(geojson["features"]))
    return path


def ingest_geo_data(source: str) -> Path:
    """Full geo ingestion: fetch -> simplify -> save."""
    geojson = fetch_divisions_geojson(source)
    geojson = simplify_geojson(geojson)
    return save_geojson(geojson)
