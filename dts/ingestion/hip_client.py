"""Ingest the Hazard Information Profile (HIP) taxonomy from the UNDRR API."""

import logging
import os
from pathlib import Path

import pandas as pd
import requests

logger = logging.getLogger(__name__)

HIP_API_URL = os.getenv(
    "DTS_HIP_API_URL", "https://data.undrr.org/api/json/hips/hazards/1.0.0/"
)
PAGE_LIMIT = 500
MAX_PAGES = 10
RAW_DIR = Path(__file__).resolve().parents[2] / "data" / "raw"

HIP_COLUMNS = [
    "id", "title", "description", "notation",
    "cluster_id", "cluster_name", "type_id", "type_name",
]


def fetch_hip_page(page: int) -> dict:
    """Fetch one page of HIP hazards."""
    logger.info("Fetching HIP page %d from %s", page, HIP_API_URL)
    resp = requests.get(HIP_API_URL, params={"limit": PAGE_LIMIT, "page": page}, timeout=60)
    resp.raise_for_status()
    return resp.json()


def fetch_hip_data() -> pd.DataFrame:
    """Fetch all HIP hazards, following ``last_page`` up to ``MAX_PAGES``."""
    items: list[dict] = []
    page = 1
    while True:
        if page > MAX_PAGES:
            raise RuntimeError("Exceeded max HIP pages, likely an infinite loop")
        data = fetch_hip_page(page)
        batch = data.get("data", [])
        items.extend(batch)
        logger.info("Got %d hazards (total so far: %d)", len(batch), len(items))
        if page >= int(data.get("last_page") or page):
            break
        page += 1

    df = pd.DataFrame(items)
    missing = [c for c in HIP_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"HIP response is missing columns: {missing}")
    logger.info("Fetched %d HIP hazards", len(df))
    return df[HIP_COLUMNS]


def save_raw(df: pd.DataFrame, filename: str = "hip_raw.parquet") -> Path:
    """Save DataFrame as Parquet to the raw data landing zone."""
    RAW_DIR.mkdir(parents=True, exist_ok=True)
    path = RAW_DIR / filename
    df.to_parquet(path, index=False)
    logger.info("Saved raw HIP data to %s (%d rows)", path, len(df))
    return path


def ingest_hip_data() -> Path:
    """Full ingestion: fetch -> save."""
    return save_raw(fetch_hip_data())


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    ingest_hip_data()
