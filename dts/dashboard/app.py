"""Streamlit dashboard of human effects rolled up by hazard and by division."""

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import streamlit as st

from dts.analytics.rollups import (
    division_features,
    division_rollup,
    hazard_rollup,
    load_division_geometries,
)
from dts.database.connection import get_session
from dts.human_effects.definitions import TableId

st.set_page_config(
    page_title="Disaster Human Effects",
    page_icon=":bar_chart:",
    layout="wide",
)


@st.cache_data(ttl=600)
def load_hazard_rollup(table: str, column: str, tenant: str | None, approved_only: bool) -> pd.DataFrame:
    """Hazard roll-up frame from the database."""
    with get_session() as session:
        return hazard_rollup(session, TableId(table), column, tenant, approved_only)


@st.cache_data(ttl=600)
def load_division_rollup(table: str, column: str, tenant: str, approved_only: bool) -> pd.DataFrame:
    with get_session() as session:
        return division_rollup(session, tenant, TableId(table), column, approved_only)


@st.cache_data(ttl=600)
def load_division_map(tenant: str, level: int, rolled: dict) -> dict:
    """Division shapes at one level, carrying their rolled-up values."""
    with get_session() as session:
        divisions = load_division_geometries(session, tenant, level)
    return division_features(divisions, rolled)


def build_sunburst(df: pd.DataFrame, metric_label: str) -> go.Figure:
    """Type -> Cluster -> Hazard sunburst sized by rolled-up value."""
    data = df[df["rolled_up_value"] > 0].copy()
    data["parent_id"] = data["parent_id"].fillna("")
    fig = px.sunburst(
        data,
        ids="id",
        parents="parent_id",
        names="name",
        values="rolled_up_value",
        branchvalues="total",
        color="rolled_up_value",
        color_continuous_scale="OrRd",
        labels={"rolled_up_value": metric_label},
    )
    fig.update_layout(margin={"r": 0, "t": 0, "l": 0, "b": 0}, height=600)
    return fig


def build_choropleth(geojson: dict, map_data: pd.DataFrame, metric_label: str) -> go.Figure:
    fig = px.choropleth(
        map_data,
        geojson=geojson,
        locations="id",
        featureidkey="properties.id",
        color="rolled_up_value",
        color_continuous_scale="OrRd",
        hover_name="name",
        hover_data={"id": False, "rolled_up_value": ":,.0f"},
        labels={"rolled_up_value": metric_label},
    )
    fig.update_geos(fitbounds="locations", visible=False)
    fig.update_layout(margin={"r": 0, "t": 0, "l": 0, "b": 0}, height=600)
    return fig


def main() -> None:
    st.title("Disaster Human Effects")
    st.markdown("Human effects of recorded disasters, rolled up the hazard taxonomy and the division tree.")

    # --- Sidebar filters ---
    st.sidebar.header("Filters")
    tenant = st.sidebar.text_input("Country account", key="tenant_filter").strip() or None
    table = st.sidebar.selectbox("Table", [t.value for t in TableId], key="table_filter")

    metric_options = {"Value": "value"}
    if table == TableId.AFFECTED.value:
        metric_options = {"Directly affected": "value", "Indirectly affected": "secondary"}
    selected_metric_label = st.sidebar.radio("Metric", list(metric_options.keys()), key="metric_filter")
    column = metric_options[selected_metric_label]

    st.sidebar.divider()
    approved_only = not st.sidebar.checkbox(
        "Include unapproved records",
        key="approval_filter",
        help="Only records with a completed approval status are counted by default",
    )

    st.info(f"Showing: **{table}** | Metric: **{selected_metric_label}**")

    with st.spinner("Loading hazard roll-up..."):
        try:
            hazards = load_hazard_rollup(table, column, tenant, approved_only)
        except Exception as e:
            st.error(f"Failed to load hazard roll-up: {e}")
            st.info("Make sure the HIP pipeline has been run and the database is available.")
            return

    if hazards.empty:
        st.warning("No hazard taxonomy found. Run the HIP pipeline first.")
        return

    # --- Summary cards ---
    roots = hazards[hazards["depth"] == 1]
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric(f"Total {table}", f"{roots['rolled_up_value'].sum():,.0f}")
    with col2:
        hazard_rows = hazards[hazards["id"].str.startswith("hazard:")]
        if hazard_rows["rolled_up_value"].sum() > 0:
            top = hazard_rows.loc[hazard_rows["rolled_up_value"].idxmax()]
            st.metric("Highest Hazard", top["name"])
        else:
            st.metric("Highest Hazard", "N/A")
    with col3:
        st.metric("Hazards with data", f"{(hazard_rows['rolled_up_value'] > 0).sum()} / {len(hazard_rows)}")

    @st.fragment
    def render_visualizations():
        st.subheader(f"{table} by Hazard")
        if roots["rolled_up_value"].sum() > 0:
            st.plotly_chart(build_sunburst(hazards, selected_metric_label), use_container_width=True)
        else:
            st.caption("No approved records with totals for this table yet.")

        if tenant is None:
            st.caption("Enter a country account to see the division breakdown.")
            return

        try:
            divisions = load_division_rollup(table, column, tenant, approved_only)
        except Exception as e:
            st.error(f"Failed to load division roll-up: {e}")
            return
        if divisions.empty:
            st.warning("No divisions found for this country account. Run the divisions pipeline first.")
            return

        levels = sorted(divisions["depth"].unique())
        level = st.selectbox("Division level", levels, key="level_filter")
        at_level = divisions[divisions["depth"] == level]

        st.subheader(f"Top 10 Divisions by {selected_metric_label} - {table}")
        top10 = at_level.nlargest(10, "rolled_up_value")
        fig_bar = px.bar(
            top10,
            x="name",
            y="rolled_up_value",
            color="rolled_up_value",
            color_continuous_scale="OrRd",
            labels={"name": "Division", "rolled_up_value": selected_metric_label},
        )
        fig_bar.update_layout(showlegend=False, xaxis_tickangle=-45)
        st.plotly_chart(fig_bar, use_container_width=True)

        st.subheader(f"{table} Map - Level {level}")
        try:
            rolled = dict(zip(at_level["id"], at_level["rolled_up_value"]))
            geojson = load_division_map(tenant, int(level), rolled)
        except Exception as e:
            st.error(f"Failed to load division boundaries: {e}")
        else:
            if geojson["features"]:
                st.plotly_chart(
                    build_choropleth(geojson, at_level, selected_metric_label),
                    use_container_width=True,
                )
            else:
                st.caption("No boundaries stored for this level.")

        with st.expander(f"View Raw Data - {table}"):
            st.dataframe(
                at_level.sort_values("rolled_up_value", ascending=False),
                use_container_width=True,
            )

    render_visualizations()


if __name__ == "__main__":
    main()
