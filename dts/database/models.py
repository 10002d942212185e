"""SQLAlchemy ORM models for disaster records, human effects and taxonomies."""

from geoalchemy2 import Geometry
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


class HipType(Base):
    __tablename__ = "hip_types"

    id = Column(String(20), primary_key=True)
    name_en = Column(String(300), nullable=False)

    clusters = relationship("HipCluster", back_populates="hip_type")


class HipCluster(Base):
    __tablename__ = "hip_clusters"

    id = Column(String(20), primary_key=True)
    type_id = Column(String(20), ForeignKey("hip_types.id"), nullable=False)
    name_en = Column(String(300), nullable=False)

    hip_type = relationship("HipType", back_populates="clusters")
    hazards = relationship("HipHazard", back_populates="cluster")


class HipHazard(Base):
    __tablename__ = "hip_hazards"

    id = Column(String(20), primary_key=True)
    cluster_id = Column(String(20), ForeignKey("hip_clusters.id"), nullable=False)
    code = Column(String(20), nullable=False)  # e.g. MH0004
    name_en = Column(String(300), nullable=False)
    description_en = Column(Text, nullable=True)

    cluster = relationship("HipCluster", back_populates="hazards")


class Division(Base):
    __tablename__ = "divisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    country_accounts_id = Column(String(36), nullable=False, index=True)
    import_id = Column(String(100), nullable=False)  # id used in the import file
    national_id = Column(String(100), nullable=True)
    parent_id = Column(Integer, ForeignKey("divisions.id"), nullable=True)
    name = Column(String(300), nullable=False)
    level = Column(Integer, nullable=False, default=1)
    geometry = Column(Geometry("MULTIPOLYGON", srid=4326), nullable=True)

    __table_args__ = (
        UniqueConstraint("country_accounts_id", "import_id", name="uq_division_import_id"),
    )


class DisasterRecord(Base):
    __tablename__ = "disaster_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    country_accounts_id = Column(String(36), nullable=False, index=True)
    approval_status = Column(String(30), nullable=False, default="draft")
    hip_type_id = Column(String(20), ForeignKey("hip_types.id"), nullable=True)
    hip_cluster_id = Column(String(20), ForeignKey("hip_clusters.id"), nullable=True)
    hip_hazard_id = Column(String(20), ForeignKey("hip_hazards.id"), nullable=True)
    # divisions carry PostGIS geometry, so no ORM relationship from here
    division_id = Column(Integer, nullable=True, index=True)

    effect_rows = relationship(
        "EffectRow", back_populates="record", cascade="all, delete-orphan", passive_deletes=True,
    )
    category_presence = relationship(
        "CategoryPresence", back_populates="record", cascade="all, delete-orphan", passive_deletes=True,
    )
    total_groups = relationship(
        "TotalGroup", back_populates="record", cascade="all, delete-orphan", passive_deletes=True,
    )


class EffectRow(Base):
    """One measured human-effect value for a record, table and dimension tuple."""

    __tablename__ = "human_effect_rows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(
        Integer, ForeignKey("disaster_records.id", ondelete="CASCADE"), nullable=False,
    )
    table_id = Column(String(32), nullable=False)

    # shared disaggregations
    sex = Column(String(10), nullable=True)
    age = Column(String(10), nullable=True)
    disability = Column(String(100), nullable=True)
    global_poverty_line = Column(String(10), nullable=True)
    national_poverty_line = Column(String(10), nullable=True)
    custom = Column(JSON, nullable=True)

    # table specific disaggregations
    as_of = Column(Date, nullable=True)
    assisted = Column(String(20), nullable=True)
    timing = Column(String(20), nullable=True)
    duration = Column(String(20), nullable=True)

    value = Column(Float, nullable=True)
    secondary = Column(Float, nullable=True)  # e.g. indirectly affected

    # canonical serialization of every dimension value, "{}" for the totals row
    dimension_key = Column(String(1000), nullable=False)

    record = relationship("DisasterRecord", back_populates="effect_rows")

    __table_args__ = (
        UniqueConstraint("record_id", "table_id", "dimension_key", name="uq_effect_dimension_tuple"),
    )


class CategoryPresence(Base):
    __tablename__ = "human_category_presence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(
        Integer, ForeignKey("disaster_records.id", ondelete="CASCADE"), nullable=False,
    )
    table_id = Column(String(32), nullable=False)
    key = Column(String(100), nullable=False)
    present = Column(Boolean, nullable=False, default=False)

    record = relationship("DisasterRecord", back_populates="category_presence")

    __table_args__ = (
        UniqueConstraint("record_id", "table_id", "key", name="uq_category_presence"),
    )


class TotalGroup(Base):
    """The disaggregation group a record's totals row is summed from, per table."""

    __tablename__ = "human_total_group"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(
        Integer, ForeignKey("disaster_records.id", ondelete="CASCADE"), nullable=False,
    )
    table_id = Column(String(32), nullable=False)
    # [{"dbName": key, "isSet": bool}, ...]
    flags = Column(JSON, nullable=False)

    record = relationship("DisasterRecord", back_populates="total_groups")

    __table_args__ = (
        UniqueConstraint("record_id", "table_id", name="uq_total_group"),
    )


class HumanDsgConfig(Base):
    """Tenant disaggregation settings; a NULL tenant row is the system default."""

    __tablename__ = "human_dsg_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    country_accounts_id = Column(String(36), nullable=True, unique=True)
    custom = Column(JSON, nullable=True)  # {"version": 1, "dimensions": [...]}
    hidden = Column(JSON, nullable=True)  # {"cols": ["disability", ...]}
