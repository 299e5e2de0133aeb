"""
Hex Demand/Supply - Streamlit Dashboard

A dashboard for uploading demand events and supply records, viewing the
demand/supply ratio (or price) on an H3 hexagon map at a chosen instant, and
sampling the same computation over a time range into a histogram.
"""

import io
import logging
from datetime import datetime, timedelta
from typing import List, Optional

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import pydeck as pdk
import streamlit as st

# Import pipeline modules
from distribution import (
    DistributionResult,
    DistributionSettings,
    bin_entries_frame,
    build_histogram,
    distribution_title,
    export_filename,
    histogram_frame,
    sample_distribution,
    summarize,
)
from ingest import IngestError, load_demand, load_multipliers, load_supply
from processor import (
    RatioPolicy,
    SnapshotConfig,
    Snapshot,
    ValueMode,
    compose_snapshot,
    compute_time_bounds,
    default_snapshot_time,
)
from run_control import RunController


logger = logging.getLogger(__name__)

# Page configuration
st.set_page_config(
    page_title="Hex Demand/Supply Dashboard",
    page_icon="🛺",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Custom CSS
st.markdown("""
<style>
    .metric-card {
        background-color: #f0f2f6;
        border-radius: 10px;
        padding: 20px;
        margin: 10px 0;
    }
    .stProgress > div > div > div > div {
        background-color: #00cc66;
    }
</style>
""", unsafe_allow_html=True)


POLICY_LABELS = {
    RatioPolicy.ZSCORE: "Z-score (normalized raw ratio)",
    RatioPolicy.RAW: "Raw ratio (demand / supply)",
    RatioPolicy.LOG: "Log ratio (ln(d+1) / ln(s+1))",
}

MODE_LABELS = {
    ValueMode.PRICE: "Price",
    ValueMode.COEFFICIENT: "Coefficient",
    ValueMode.DEMAND: "Demand only",
    ValueMode.SUPPLY: "Supply only",
    ValueMode.NONE: "No data",
}


@st.cache_data(show_spinner=False)
def read_upload(kind: str, data: bytes, name: str):
    """Parse uploaded bytes once per file instead of on every rerun."""
    buffer = io.BytesIO(data)
    if kind == "demand":
        return load_demand(buffer, name)
    if kind == "supply":
        return load_supply(buffer, name)
    return load_multipliers(buffer, name)


def upload_section(kind: str, label: str, help_text: str):
    """File uploader that returns the parsed dataset, or None."""
    uploaded = st.file_uploader(label, type=["csv", "xlsx", "xls"], key=f"{kind}_upload", help=help_text)
    if uploaded is None:
        return None, None

    try:
        parsed = read_upload(kind, uploaded.getvalue(), uploaded.name)
    except IngestError as e:
        st.error(f"❌ {e}")
        return None, None

    st.caption(f"✅ {uploaded.name}: {len(parsed):,} rows")
    return parsed, f"{uploaded.name}:{uploaded.size}"


def value_colors(values: pd.Series) -> List[List[int]]:
    """Map values onto a blue -> red scale with a fixed alpha."""
    if values.empty:
        return []
    arr = values.to_numpy(dtype=float)
    low, high = np.nanmin(arr), np.nanmax(arr)
    scaled = np.zeros_like(arr) if high == low else (arr - low) / (high - low)
    return [[int(255 * s), int(80 + 60 * (1 - s)), int(255 * (1 - s)), 140] for s in scaled]


def render_map(snapshot: Snapshot, focus_cell: Optional[str] = None):
    """Draw active cells (filled, labeled) and halo cells (outline only)."""
    df = snapshot.to_frame()
    active_df = df[df["active"]].copy()
    inactive_df = df[~df["active"]]

    active_df["fill_color"] = value_colors(active_df["value"])
    active_df["line_color"] = [
        [255, 200, 0, 255] if cell_id == focus_cell else [0, 255, 255, 200]
        for cell_id in active_df["cell_id"]
    ]

    layers = []
    if not inactive_df.empty:
        layers.append(pdk.Layer(
            "H3HexagonLayer",
            data=inactive_df,
            get_hexagon="cell_id",
            filled=False,
            stroked=True,
            extruded=False,
            get_line_color=[100, 100, 100, 80],
            line_width_min_pixels=1,
            pickable=False,
        ))
    if not active_df.empty:
        layers.append(pdk.Layer(
            "H3HexagonLayer",
            data=active_df,
            get_hexagon="cell_id",
            filled=True,
            stroked=True,
            extruded=False,
            get_fill_color="fill_color",
            get_line_color="line_color",
            line_width_min_pixels=2,
            pickable=True,
            auto_highlight=True,
        ))
        layers.append(pdk.Layer(
            "TextLayer",
            data=active_df,
            get_position=["longitude", "latitude"],
            get_text="label",
            get_size=14,
            get_color=[20, 20, 20, 230],
            get_alignment_baseline="'center'",
        ))

    focus = active_df[active_df["cell_id"] == focus_cell] if focus_cell else active_df.iloc[0:0]
    center_df = focus if not focus.empty else active_df
    if center_df.empty:
        center_df = df
    view = pdk.ViewState(
        latitude=float(center_df["latitude"].mean()) if not center_df.empty else 40.7128,
        longitude=float(center_df["longitude"].mean()) if not center_df.empty else -74.006,
        zoom=13 if not focus.empty else 11,
        pitch=0,
    )
    tooltip = {
        "html": "<b>{cell_id}</b><br/>Demand: {demand_count}<br/>Supply: {supply_count}"
                "<br/>Ratio: {ratio}<br/>Price: {final_price}",
        "style": {"color": "white"},
    }
    st.pydeck_chart(pdk.Deck(layers=layers, initial_view_state=view, map_style="light", tooltip=tooltip))


def focus_entry(cell_id: str, instant: pd.Timestamp):
    """Jump the map to the cell and instant a histogram entry came from."""
    st.session_state["snapshot_time"] = instant.to_pydatetime()
    st.session_state["focus_cell"] = cell_id


def reset_full_range(start: datetime, end: datetime):
    st.session_state["dist_from_date"] = start.date()
    st.session_state["dist_from_time"] = start.time()
    st.session_state["dist_to_date"] = end.date()
    st.session_state["dist_to_time"] = end.time()


def main():
    st.title("🛺 Hex Demand/Supply Dashboard")
    st.markdown("""
    Upload demand events and supply availability windows to see the demand/supply
    ratio per H3 hexagon at a chosen instant, optionally converted into a price.
    """)

    # Sidebar configuration
    st.sidebar.header("⚙️ Configuration")

    with st.sidebar.expander("📁 Data Uploads", expanded=True):
        demand, demand_key = upload_section(
            "demand", "Demand events",
            "Columns: timestamp, latitude, longitude (common aliases accepted)",
        )
        supply, supply_key = upload_section(
            "supply", "Supply records",
            "Columns: startTime, endTime, latitude, longitude (common aliases accepted)",
        )
        multipliers, multipliers_key = upload_section(
            "multiplier", "Multiplier table",
            "Columns: minRatio, multiplier",
        )

    with st.sidebar.expander("🔧 Snapshot Parameters", expanded=True):
        resolution = st.slider(
            "Hexagon Resolution",
            min_value=0,
            max_value=15,
            value=8,
            help="H3 resolution; higher values mean smaller hexagons"
        )

        lookback_minutes = st.number_input(
            "Demand Lookback (minutes)",
            value=60,
            min_value=1,
            max_value=24 * 60,
            help="Demand events within this window before the snapshot instant are counted"
        )

        policy = st.selectbox(
            "Ratio Policy",
            list(POLICY_LABELS),
            format_func=lambda p: POLICY_LABELS[p],
            help="How demand and supply counts are combined per hexagon"
        )

        base_price = st.number_input(
            "Base Price",
            value=0.0,
            min_value=0.0,
            step=0.5,
            help="Price before the multiplier; 0 shows ratios instead of prices"
        )

    config = SnapshotConfig(
        resolution=resolution,
        lookback_minutes=lookback_minutes,
        policy=policy,
        base_price=base_price,
        multipliers=tuple(multipliers or ()),
    )

    bounds = compute_time_bounds(demand, supply)

    # Main content tabs
    tab1, tab2 = st.tabs(["🗺️ Hexagon Map", "📊 Distribution"])

    # =====================
    # TAB 1: Hexagon Map
    # =====================
    with tab1:
        st.header("Snapshot Map")

        with st.expander("ℹ️ About the Map", expanded=False):
            st.markdown("""
            ### What This Shows
            Each outlined hexagon holds at least one demand event inside the lookback
            window or one vehicle available at the snapshot instant. Grey outlines are
            neighboring cells shown for context only.

            ### Values
            - **Price**: demand and supply loaded, plus a multiplier table and a base price
            - **Coefficient**: demand and supply loaded; the ratio under the selected policy
            - **Demand only / Supply only**: raw event or vehicle count per hexagon
            """)

        snapshot = None
        if bounds is None:
            st.info("👆 Upload demand and/or supply data to get started.")
        else:
            start_dt = bounds.start.to_pydatetime()
            end_dt = bounds.end.to_pydatetime()

            # Re-center the snapshot when new demand data arrives
            if st.session_state.get("snapshot_source") != demand_key:
                st.session_state["snapshot_source"] = demand_key
                initial = default_snapshot_time(demand)
                st.session_state["snapshot_time"] = (initial if initial is not None else bounds.start).to_pydatetime()
            current = st.session_state.get("snapshot_time")
            if current is None or not start_dt <= current <= end_dt:
                st.session_state["snapshot_time"] = start_dt

            if start_dt < end_dt:
                snapshot_time = st.slider(
                    "Snapshot Time",
                    min_value=start_dt,
                    max_value=end_dt,
                    step=timedelta(minutes=5),
                    format="YYYY-MM-DD HH:mm",
                    key="snapshot_time",
                )
            else:
                snapshot_time = start_dt
                st.caption(f"Snapshot Time: {snapshot_time:%Y-%m-%d %H:%M}")

            try:
                with st.spinner("Calculating hexagons..."):
                    snapshot = compose_snapshot(demand, supply, pd.Timestamp(snapshot_time), config)
            except ValueError as e:
                st.error(f"❌ Error computing snapshot: {str(e)}")

        if snapshot is not None:
            col1, col2, col3, col4 = st.columns(4)
            with col1:
                st.metric("Active Hexagons", f"{len(snapshot.active):,}")
            with col2:
                st.metric("Demand in Window", f"{snapshot.total_demand:,}")
            with col3:
                st.metric("Vehicles Available", f"{snapshot.total_supply:,}")
            with col4:
                st.metric("Mode", MODE_LABELS[snapshot.mode])

            if snapshot.mode is ValueMode.COEFFICIENT and multipliers and base_price <= 0:
                st.caption("Set a base price above 0 to show prices.")

            if not snapshot.active:
                st.info("No active hexagons at this instant.")
            render_map(snapshot, st.session_state.get("focus_cell"))

            with st.expander("📋 Cell Table", expanded=False):
                st.dataframe(snapshot.to_frame(), use_container_width=True, hide_index=True)

    # =====================
    # TAB 2: Distribution
    # =====================
    with tab2:
        if bounds is None:
            st.info("Upload demand and/or supply data to see a distribution.")
            return

        start_dt = bounds.start.to_pydatetime()
        end_dt = bounds.end.to_pydatetime()

        controller: RunController = st.session_state.get("dist_controller")
        if controller is None:
            controller = RunController(applied=DistributionSettings(start=bounds.start, end=bounds.end))
            st.session_state["dist_controller"] = controller
            reset_full_range(start_dt, end_dt)

        # New datasets reset the sweep range to their full span
        data_keys = (demand_key, supply_key)
        if st.session_state.get("dist_data") != data_keys:
            st.session_state["dist_data"] = data_keys
            reset_full_range(start_dt, end_dt)
            controller.edit(start=bounds.start, end=bounds.end)
            controller.apply()

        # New uploads or snapshot parameters invalidate the last sweep
        signature = (demand_key, supply_key, multipliers_key, config)
        if st.session_state.get("dist_signature") != signature:
            st.session_state["dist_signature"] = signature
            controller.invalidate()

        with st.expander("ℹ️ About the Distribution", expanded=False):
            st.markdown("""
            Snapshots are sampled from *From* to *To* every *Step* minutes (both ends always
            included). Every active hexagon of every sampled snapshot contributes one value.
            Settings only take effect after **Recalculate now**.
            """)

        col1, col2, col3, col4 = st.columns(4)
        with col1:
            from_date = st.date_input("From", key="dist_from_date")
            from_time = st.time_input("From time", key="dist_from_time", label_visibility="collapsed")
        with col2:
            to_date = st.date_input("To", key="dist_to_date")
            to_time = st.time_input("To time", key="dist_to_time", label_visibility="collapsed")
        with col3:
            step_minutes = st.selectbox("Step (minutes)", [5, 15, 30, 60], index=1)
        with col4:
            n_bins = st.selectbox("Bins", [10, 20, 30, 40], index=1)

        controller.edit(
            start=pd.Timestamp(datetime.combine(from_date, from_time)),
            end=pd.Timestamp(datetime.combine(to_date, to_time)),
            step_minutes=step_minutes,
            n_bins=n_bins,
        )

        col1, col2, col3 = st.columns([1, 1, 3])
        with col1:
            st.button("↔️ Full range", on_click=reset_full_range, args=(start_dt, end_dt),
                      use_container_width=True)
        with col2:
            if st.button("🔁 Recalculate now", type="primary", use_container_width=True):
                controller.apply()
        with col3:
            if controller.is_dirty:
                st.caption("Settings changed - press **Recalculate now**")

        if controller.is_calculating:
            # A widget interaction rerun the script while the last sweep was in flight
            logger.debug("Distribution run %d interrupted, starting over", controller.generation)
            controller.invalidate()

        if controller.result is None:
            progress_bar = st.progress(0)
            status_text = st.empty()

            def progress_callback(stage: str, progress: float):
                progress_bar.progress(progress)
                status_text.text(f"Stage: {stage}")

            def compute(settings: DistributionSettings) -> DistributionResult:
                return sample_distribution(
                    demand,
                    supply,
                    config,
                    start=settings.start,
                    end=settings.end,
                    step_minutes=settings.step_minutes,
                    progress_callback=progress_callback,
                )

            try:
                with st.spinner("Calculating distribution... sampling snapshots and aggregating values"):
                    controller.run(compute)
            except ValueError as e:
                st.error(f"❌ Error during sampling: {str(e)}")
                st.stop()

            progress_bar.empty()
            status_text.empty()

        result: Optional[DistributionResult] = controller.result
        if result is None:
            return

        settings = controller.applied
        st.subheader(distribution_title(result.mode, config.policy))
        if result.effective_from is not None and result.effective_to is not None:
            st.caption(
                f"From {result.effective_from:%Y-%m-%d %H:%M} to {result.effective_to:%Y-%m-%d %H:%M}"
                f" • sampled every {settings.step_minutes} min"
            )

        summary = summarize(result.samples)
        if summary is None:
            st.info("No values found for the selected time range.")
            return

        col1, col2, col3, col4, col5 = st.columns(5)
        with col1:
            st.metric("Samples", f"{summary.n:,}")
        with col2:
            st.metric("Min", f"{summary.min:.2f}")
        with col3:
            st.metric("Median", f"{summary.median:.2f}")
        with col4:
            st.metric("Mean", f"{summary.mean:.2f}")
        with col5:
            st.metric("Max", f"{summary.max:.2f}")

        bins = build_histogram(result.samples, settings.n_bins)

        # Bars sit at numeric bin centers since narrow bins share a 2-decimal label
        centers = [b.center for b in bins]
        fig = go.Figure(data=[
            go.Bar(
                x=centers,
                y=[b.count for b in bins],
                width=[b.high - b.low for b in bins] if len(bins) > 1 else None,
                hovertext=[b.label for b in bins],
                hovertemplate="%{hovertext}<br>Frequency: %{y}<extra></extra>",
                marker_color="#7dd3fc",
                marker_line_color="white",
                marker_line_width=1,
            )
        ])
        fig.update_layout(
            xaxis_title="Value",
            yaxis_title="Frequency",
            xaxis=dict(tickmode="array", tickvals=centers, ticktext=[b.label for b in bins]),
            xaxis_tickangle=-25,
            height=450,
        )
        st.plotly_chart(fig, use_container_width=True)

        st.download_button(
            "⬇️ Download CSV",
            data=histogram_frame(bins).to_csv(index=False),
            file_name=export_filename(result.mode, result.effective_from, result.effective_to),
            mime="text/csv",
        )

        # Drill-down into one bin
        st.subheader("🔎 Bin Entries")
        non_empty = [i for i, b in enumerate(bins) if b.count > 0]
        selected_index = st.selectbox(
            "Bin",
            non_empty,
            format_func=lambda i: f"#{i + 1}: {bins[i].low:.4g} to {bins[i].high:.4g} ({bins[i].count:,} entries)",
        )
        selected = bins[selected_index] if selected_index is not None else None
        if selected is not None:
            st.dataframe(bin_entries_frame(selected), use_container_width=True, hide_index=True)

            entry = st.selectbox(
                "Entry",
                selected.samples,
                format_func=lambda s: f"{s.cell_id} · {s.instant:%Y-%m-%d %H:%M} ({s.value:.2f})",
            )
            if entry is not None:
                st.button(
                    "📍 Show on map",
                    on_click=focus_entry,
                    args=(entry.cell_id, entry.instant),
                )


if __name__ == "__main__":
    main()
