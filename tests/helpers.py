import io
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image

from kobosync.errors import AssetNotFoundError, DownloadError
from kobosync.kobo_api import DownloadResult
from kobosync.models import Asset, AssetSummary, Record

MEDIA = "https://kc.example.org"


def jpeg_bytes(color=(200, 30, 30), size=(8, 6)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


def png_bytes(color=(10, 200, 10), size=(5, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def attachment_payload(att_id: int, basename: str, record_id: int = 1721, mimetype: str = "image/jpeg") -> dict:
    return {
        "id": att_id,
        "mimetype": mimetype,
        "download_url": f"{MEDIA}/media/original?media_file=user/attachments/{att_id}/{basename}",
        "filename": f"user/attachments/abc/{att_id}/{basename}",
        "instance": record_id,
        "xform": 7,
    }


def submission_payload(record_id: int, values: Dict[str, object], attachments: List[dict]) -> dict:
    return {"_id": record_id, "_uuid": f"uuid-{record_id}", "_attachments": attachments, **values}


def asset_payload(uid: str, name: str, autonames: List[str], submission_count: int = 1) -> dict:
    survey = [{"type": "start", "$autoname": "start"}]
    survey += [{"type": "image", "$autoname": a, "$xpath": a, "label": [a]} for a in autonames]
    return {
        "uid": uid,
        "name": name,
        "deployment__submission_count": submission_count,
        "content": {"survey": survey},
    }


class FakeClient:
    """
    In-memory stand-in for KoboClient: assets and submissions from payloads,
    attachment bytes keyed by download url.
    """

    def __init__(self, assets=None, submissions=None, files=None):
        self.assets: Dict[str, dict] = {a["uid"]: a for a in (assets or [])}
        self.submissions: Dict[str, List[dict]] = submissions or {}
        self.files: Dict[str, bytes] = files or {}
        self.fail_urls = set()
        self.downloads: List[str] = []
        self.parts: List[Optional[Path]] = []

    def list_assets(self) -> List[AssetSummary]:
        return [AssetSummary.model_validate(a) for a in self.assets.values()]

    def get_asset(self, uid: str) -> Asset:
        if uid not in self.assets:
            raise AssetNotFoundError(f"asset {uid} not found (404)", status=404)
        return Asset.from_api(self.assets[uid])

    def get_submissions(self, uid: str) -> List[Record]:
        return [Record.from_api(s) for s in self.submissions.get(uid, [])]

    def download(self, url: str, dest: Path, part: Optional[Path] = None) -> DownloadResult:
        self.downloads.append(url)
        self.parts.append(part)
        if url in self.fail_urls:
            raise DownloadError(f"saving image failed after 3 retries: {url}")
        data = self.files[url]
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return DownloadResult(dest, len(data), "image/jpeg")


def record(record_id: int, values: Dict[str, object], attachments: Optional[List[dict]] = None) -> Record:
    return Record.from_api(submission_payload(record_id, values, attachments or []))
