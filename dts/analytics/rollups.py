"""Analytics roll-ups of human-effects totals over the HIP and division trees."""

import logging
from typing import Iterable

import pandas as pd
from geoalchemy2.shape import to_shape
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dts.database.models import DisasterRecord, Division, EffectRow, HipCluster, HipHazard, HipType
from dts.hierarchy.aggregate import AggregationNode, Hierarchy, aggregate
from dts.human_effects.batch import TOTALS_KEY
from dts.human_effects.definitions import TableId

logger = logging.getLogger(__name__)

APPROVED_STATUS = "completed"


def record_totals(
    session: Session,
    table_id: TableId,
    column: str = "value",
    country_accounts_id: str | None = None,
    approved_only: bool = True,
) -> dict[int, float]:
    """Grand total per record, read from the row with every disaggregation unset."""
    metric = getattr(EffectRow, column)
    stmt = (
        select(EffectRow.record_id, func.coalesce(func.sum(metric), 0))
        .join(DisasterRecord, DisasterRecord.id == EffectRow.record_id)
        .where(EffectRow.table_id == table_id.value, EffectRow.dimension_key == TOTALS_KEY)
        .group_by(EffectRow.record_id)
    )
    if country_accounts_id is not None:
        stmt = stmt.where(DisasterRecord.country_accounts_id == country_accounts_id)
    if approved_only:
        stmt = stmt.where(DisasterRecord.approval_status == APPROVED_STATUS)
    return {record_id: float(total) for record_id, total in session.execute(stmt)}


def hip_tree(session: Session) -> Hierarchy:
    """Type -> Cluster -> Hazard as one hierarchy with prefixed ids."""
    nodes: list[AggregationNode] = []
    for t in session.scalars(select(HipType).order_by(HipType.id)):
        nodes.append(AggregationNode(id=f"type:{t.id}", parent_id=None, name=t.name_en))
    for c in session.scalars(select(HipCluster).order_by(HipCluster.id)):
        nodes.append(AggregationNode(id=f"cluster:{c.id}", parent_id=f"type:{c.type_id}", name=c.name_en))
    for h in session.scalars(select(HipHazard).order_by(HipHazard.id)):
        nodes.append(AggregationNode(id=f"hazard:{h.id}", parent_id=f"cluster:{h.cluster_id}", name=h.name_en))
    return Hierarchy.from_nodes(nodes)


def hip_node_for(record: DisasterRecord) -> str | None:
    """Most specific taxonomy node a record is classified under."""
    if record.hip_hazard_id:
        return f"hazard:{record.hip_hazard_id}"
    if record.hip_cluster_id:
        return f"cluster:{record.hip_cluster_id}"
    if record.hip_type_id:
        return f"type:{record.hip_type_id}"
    return None


def division_tree(session: Session, country_accounts_id: str) -> Hierarchy:
    stmt = (
        select(Division.id, Division.parent_id, Division.name)
        .where(Division.country_accounts_id == country_accounts_id)
        .order_by(Division.id)
    )
    return Hierarchy.from_nodes(
        AggregationNode(id=row.id, parent_id=row.parent_id, name=row.name)
        for row in session.execute(stmt)
    )


def own_values(
    tree: Hierarchy, assignments: Iterable[tuple[object, float]],
) -> dict[object, float]:
    """Sum record totals onto the node each record belongs to."""
    values: dict[object, float] = {}
    skipped = 0
    for node_id, total in assignments:
        if node_id is None or node_id not in tree:
            skipped += 1
            continue
        values[node_id] = values.get(node_id, 0.0) + total
    if skipped:
        logger.info("Skipped %d records without a node in the hierarchy", skipped)
    return values


def rollup_frame(tree: Hierarchy, own: dict[object, float], rolled: dict[object, float]) -> pd.DataFrame:
    depths = tree.depths()
    rows = [
        {
            "id": node.id,
            "parent_id": node.parent_id if node.parent_id in tree else None,
            "name": node.name,
            "depth": depths[node.id],
            "own_value": own.get(node.id, 0.0),
            "rolled_up_value": rolled[node.id],
        }
        for node in tree.nodes
    ]
    return pd.DataFrame(
        rows, columns=["id", "parent_id", "name", "depth", "own_value", "rolled_up_value"],
    )


def _records(session: Session, country_accounts_id: str | None, approved_only: bool) -> list[DisasterRecord]:
    stmt = select(DisasterRecord)
    if country_accounts_id is not None:
        stmt = stmt.where(DisasterRecord.country_accounts_id == country_accounts_id)
    if approved_only:
        stmt = stmt.where(DisasterRecord.approval_status == APPROVED_STATUS)
    return list(session.scalars(stmt))


def hazard_rollup(
    session: Session,
    table_id: TableId,
    column: str = "value",
    country_accounts_id: str | None = None,
    approved_only: bool = True,
) -> pd.DataFrame:
    """Human-effects totals rolled up Hazard -> Cluster -> Type."""
    tree = hip_tree(session)
    totals = record_totals(session, table_id, column, country_accounts_id, approved_only)
    records = _records(session, country_accounts_id, approved_only)
    own = own_values(tree, ((hip_node_for(r), totals.get(r.id, 0.0)) for r in records))
    rolled = aggregate(tree, lambda node: own.get(node.id))
    logger.info("Hazard roll-up for %s over %d records", table_id.value, len(records))
    return rollup_frame(tree, own, rolled)


def division_rollup(
    session: Session,
    country_accounts_id: str,
    table_id: TableId,
    column: str = "value",
    approved_only: bool = True,
) -> pd.DataFrame:
    """Human-effects totals rolled up the tenant's division tree."""
    tree = division_tree(session, country_accounts_id)
    totals = record_totals(session, table_id, column, country_accounts_id, approved_only)
    records = _records(session, country_accounts_id, approved_only)
    own = own_values(tree, ((r.division_id, totals.get(r.id, 0.0)) for r in records))
    rolled = aggregate(tree, lambda node: own.get(node.id))
    logger.info("Division roll-up for %s over %d records", table_id.value, len(records))
    return rollup_frame(tree, own, rolled)


def division_features(
    divisions: Iterable[tuple[int, str, BaseGeometry | None]], rolled: dict[object, float],
) -> dict:
    """GeoJSON FeatureCollection carrying the rolled-up value of each division."""
    features = []
    for division_id, name, geom in divisions:
        if geom is None:
            continue
        features.append({
            "type": "Feature",
            "id": division_id,
            "properties": {
                "id": division_id,
                "name": name,
                "rolled_up_value": rolled.get(division_id, 0.0),
            },
            "geometry": mapping(geom),
        })
    return {"type": "FeatureCollection", "features": features}


def load_division_geometries(
    session: Session, country_accounts_id: str, level: int | None = None,
) -> list[tuple[int, str, BaseGeometry | None]]:
    """Division shapes for the map; requires PostGIS."""
    stmt = select(Division).where(Division.country_accounts_id == country_accounts_id)
    if level is not None:
        stmt = stmt.where(Division.level == level)
    return [
        (d.id, d.name, to_shape(d.geometry) if d.geometry is not None else None)
        for d in session.scalars(stmt)
    ]
