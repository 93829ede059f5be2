"""
images_info.csv: one row per image kept for an asset.
"""

import csv
from pathlib import Path

from kobosync.models import ImgInfo

HEADER = ["assetUid", "assetName", "recordId", "name", "size", "sizeMB", "type", "dimensions", "width", "height", "hash"]


def ledger_path(asset_images_dir: Path) -> Path:
    return asset_images_dir / "data" / "images_info.csv"


def start_ledger(path: Path):
    """
    (Re)create the ledger with only its header row.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        csv.writer(f).writerow(HEADER)


def append_row(path: Path, info: ImgInfo):
    row = [
        info.asset_uid,
        info.asset_name,
        info.record_id,
        info.name,
        info.size,
        info.size_mb,
        info.type,
        info.dimensions,
        info.width,
        info.height,
        info.hash,
    ]
    with open(path, "a", newline="", encoding="utf-8") as f:
        csv.writer(f).writerow(row)
