"""Import pipelines: ingest → transform → validate → load.

Usage::

    python -m dts.pipeline.run_pipeline create-tables
    python -m dts.pipeline.run_pipeline hip
    python -m dts.pipeline.run_pipeline divisions --tenant <id> --source divisions.geojson
"""

import argparse
import json
import logging
import sys

import pandas as pd
from geoalchemy2.shape import from_shape
from sqlalchemy import select
from sqlalchemy.orm import Session

from dts.database.connection import engine, get_session
from dts.database.models import Base, Division, HipCluster, HipHazard, HipType
from dts.ingestion.geo_client import ingest_geo_data
from dts.ingestion.hip_client import ingest_hip_data
from dts.quality.checks import run_division_checks, run_hip_checks
from dts.transformation.transform import build_divisions, transform_hip

logger = logging.getLogger(__name__)


def create_tables() -> None:
    """Create all tables using SQLAlchemy models."""
    Base.metadata.create_all(engine)
    logger.info("Database tables created/verified")


def _none_if_na(value):
    return None if pd.isna(value) else value


def load_hip(tables: dict[str, pd.DataFrame], session: Session) -> None:
    """Upsert the taxonomy, parents before children, in one transaction."""
    for model, table_name in (
        (HipType, "hip_types"),
        (HipCluster, "hip_clusters"),
        (HipHazard, "hip_hazards"),
    ):
        records = tables[table_name].to_dict(orient="records")
        for record in records:
            session.merge(model(**{k: _none_if_na(v) for k, v in record.items()}))
        session.flush()
        logger.info("Upserted %d rows into %s", len(records), table_name)
    session.commit()


def load_divisions(divisions: pd.DataFrame, country_accounts_id: str, session: Session) -> dict[str, int]:
    """Upsert divisions by import id, returning import id → database id."""
    existing = {
        d.import_id: d
        for d in session.scalars(
            select(Division).where(Division.country_accounts_id == country_accounts_id)
        )
    }
    id_map: dict[str, int] = {}
    created = 0
    for row in divisions.sort_values("level").itertuples():
        division = existing.get(row.import_id)
        if division is None:
            division = Division(country_accounts_id=country_accounts_id, import_id=row.import_id)
            session.add(division)
            created += 1
        division.name = row.name
        division.national_id = _none_if_na(row.national_id)
        division.level = int(row.level)
        division.parent_id = id_map[row.parent_import_id] if _none_if_na(row.parent_import_id) else None
        division.geometry = from_shape(row.geometry, srid=4326) if row.geometry is not None else None
        session.flush()
        id_map[row.import_id] = division.id
    session.commit()
    logger.info(
        "Loaded %d divisions for %s (%d new)", len(id_map), country_accounts_id, created,
    )
    return id_map


def run_hip() -> None:
    """Execute the HIP taxonomy pipeline."""
    logger.info("=== Starting HIP taxonomy pipeline ===")

    logger.info("--- Step 1: Ingestion ---")
    raw_path = ingest_hip_data()

    logger.info("--- Step 2: Transformation ---")
    tables = transform_hip(raw_path)

    logger.info("--- Step 3: Quality checks ---")
    run_hip_checks(tables)

    logger.info("--- Step 4: Load to database ---")
    create_tables()
    with get_session() as session:
        load_hip(tables, session)

    logger.info("=== Pipeline complete ===")


def run_divisions(country_accounts_id: str, source: str) -> None:
    """Execute the division import pipeline for one tenant."""
    logger.info("=== Starting division pipeline for %s ===", country_accounts_id)

    logger.info("--- Step 1: Ingestion ---")
    path = ingest_geo_data(source)

    logger.info("--- Step 2: Transformation ---")
    with open(path, encoding="utf-8") as f:
        divisions = build_divisions(json.load(f))

    logger.info("--- Step 3: Quality checks ---")
    run_division_checks(divisions)

    logger.info("--- Step 4: Load to database ---")
    create_tables()
    with get_session() as session:
        load_divisions(divisions, country_accounts_id, session)

    logger.info("=== Pipeline complete ===")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Disaster tracking import pipelines")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("create-tables", help="create database tables")
    sub.add_parser("hip", help="import the HIP hazard taxonomy")
    div = sub.add_parser("divisions", help="import administrative divisions")
    div.add_argument("--tenant", required=True, help="country accounts id")
    div.add_argument("--source", required=True, help="GeoJSON path or URL")
    args = parser.parse_args(argv)

    if args.command == "create-tables":
        create_tables()
    elif args.command == "hip":
        run_hip()
    elif args.command == "divisions":
        run_divisions(args.tenant, args.source)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        main()
    except Exception:
        logger.exception("Pipeline failed")
        sys.exit(1)
