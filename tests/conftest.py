"""Shared fixtures: an in-memory SQLite database with the human-effects tables."""

import os

# Point the module-level engine away from PostgreSQL before any dts import.
os.environ.setdefault("DTS_DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dts.database.models import Base, DisasterRecord, HipCluster, HipHazard, HipType
from dts.human_effects.definitions import DimensionRegistry

# divisions needs PostGIS; everything else runs on SQLite
SQLITE_TABLES = [t for t in Base.metadata.sorted_tables if t.name != "divisions"]


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine, tables=SQLITE_TABLES)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    session = sessionmaker(bind=engine)()
    yield session
    session.close()


@pytest.fixture()
def registry():
    return DimensionRegistry()


@pytest.fixture()
def record(session):
    record = DisasterRecord(country_accounts_id="tenant-a", approval_status="completed")
    session.add(record)
    session.commit()
    return record


@pytest.fixture()
def other_record(session):
    record = DisasterRecord(country_accounts_id="tenant-a", approval_status="completed")
    session.add(record)
    session.commit()
    return record


@pytest.fixture()
def hip_taxonomy(session):
    """Two types, three clusters and four hazards."""
    session.add_all([
        HipType(id="1", name_en="Meteorological and Hydrological"),
        HipType(id="2", name_en="Geohazards"),
    ])
    session.flush()
    session.add_all([
        HipCluster(id="10", type_id="1", name_en="Flood"),
        HipCluster(id="11", type_id="1", name_en="Convective"),
        HipCluster(id="20", type_id="2", name_en="Seismogenic"),
    ])
    session.flush()
    session.add_all([
        HipHazard(id="100", cluster_id="10", code="MH0004", name_en="Flash Flood"),
        HipHazard(id="101", cluster_id="10", code="MH0005", name_en="Riverine Flood"),
        HipHazard(id="110", cluster_id="11", code="MH0010", name_en="Hail"),
        HipHazard(id="200", cluster_id="20", code="GH0001", name_en="Earthquake"),
    ])
    session.commit()
