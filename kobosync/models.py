"""
Typed records for everything that crosses a boundary: remote API payloads,
the per-run action map, the persisted attachment state and the run reports.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, model_validator

from kobosync.errors import MalformedResponseError


Action = Literal["keep", "delete", "none"]


def parse_payload(model, payload: Any, what: str):
    """
    Validate an upstream payload, turning pydantic errors into the fatal
    MalformedResponseError.
    """
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(f"malformed {what}: {e}") from e


# -----------------------------
# Remote entities
# -----------------------------

class Attachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    mimetype: str
    download_url: str
    filename: str
    instance: int
    xform: Optional[int] = None

    def is_image(self) -> bool:
        return self.mimetype.startswith("image")


class ImageField(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    autoname: str = Field(alias="$autoname")
    xpath: Optional[str] = Field(default=None, alias="$xpath")
    name: Optional[str] = None

    def matches_key(self, key: str) -> bool:
        """
        A raw submission key belongs to this field when it is the autoname,
        the full xpath, or a group path ending in the autoname.
        """
        if key == self.autoname or key.endswith("/" + self.autoname):
            return True
        return self.xpath is not None and key == self.xpath


class AssetSummary(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    uid: str
    name: str = ""
    submission_count: int = Field(default=0, alias="deployment__submission_count")


class Asset(AssetSummary):
    image_fields: List[ImageField] = []

    @classmethod
    def from_api(cls, payload: Any) -> "Asset":
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"malformed asset: expected object, got {type(payload).__name__}")
        content = payload.get("content") or {}
        survey = content.get("survey") or []
        if not isinstance(survey, list):
            raise MalformedResponseError(f"malformed asset {payload.get('uid')}: content.survey is not a list")
        imgs = [q for q in survey if isinstance(q, dict) and q.get("type") == "image"]
        return parse_payload(cls, {**payload, "image_fields": imgs}, "asset")


class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(alias="_id")
    attachments: List[Attachment] = Field(alias="_attachments")
    raw_values: Dict[str, Any] = {}

    @classmethod
    def from_api(cls, payload: Any) -> "Record":
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"malformed submission: expected object, got {type(payload).__name__}")
        raw_values = {k: v for k, v in payload.items() if not k.startswith("_")}
        return parse_payload(cls, {**payload, "raw_values": raw_values}, f"submission {payload.get('_id')}")


# -----------------------------
# Action map
# -----------------------------

class FieldAction(BaseModel):
    value: Optional[str] = None
    attachment: Optional[Attachment] = None
    action: Action
    subm_mapped_key: Optional[str] = None
    warning: Optional[str] = None

    @model_validator(mode="after")
    def _check_action(self):
        if self.value is None:
            expected = "delete"
        elif self.attachment is not None:
            expected = "keep"
        else:
            expected = "none"
        if self.action != expected:
            raise ValueError(f"action '{self.action}' inconsistent with value/attachment (expected '{expected}')")
        return self


class RecordActionMap(BaseModel):
    record_id: int
    actions: Dict[str, FieldAction] = {}


class MapCounters(BaseModel):
    keeps: int = 0
    deletes: int = 0
    nones: int = 0
    total_actions: int = 0
    warnings: int = 0


class AssetActionMap(BaseModel):
    uid: str
    name: str
    image_fields: List[ImageField] = []
    records: List[RecordActionMap] = []
    counters: MapCounters = MapCounters()
    warnings: List[str] = []


# -----------------------------
# Persisted attachment state
# -----------------------------

class ImgInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash: StrictStr
    width: StrictInt
    height: StrictInt
    dimensions: StrictStr
    asset_uid: StrictStr = Field(alias="assetUid")
    asset_name: StrictStr = Field(alias="assetName")
    record_id: StrictInt = Field(alias="recordId")
    name: StrictStr
    type: StrictStr
    size: StrictInt
    size_mb: StrictStr = Field(alias="sizeMB")


class AttachmentState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_name: StrictStr = Field(alias="imageName")
    original_name: StrictStr = Field(alias="originalName")
    attachment_id: StrictInt = Field(alias="attachmentId")
    save_timestamp: StrictStr = Field(alias="saveTimestamp")
    img_info: ImgInfo = Field(alias="imgInfo")


# -----------------------------
# Reports
# -----------------------------

class EntryResult(BaseModel):
    field: str
    name: Optional[str] = None
    action: Action
    status: Literal["ok", "error"] = "ok"
    op: str
    detail: str = ""
    path: Optional[str] = None
    new_path: Optional[str] = None
    error: Optional[str] = None


class RecordRunResult(BaseModel):
    record_id: int
    entries: List[EntryResult] = []


class CleanerOp(BaseModel):
    status: Literal["ok", "error"]
    target_file: str
    target_file_path: str
    new_file_path: Optional[str] = None
    detail: str
    error: Optional[str] = None


class CleanerReport(BaseModel):
    state: str
    total_actions: int = 0
    total_actions_executed: int = 0
    cleaned: List[CleanerOp] = []
    errors: List[CleanerOp] = []


class AssetRunReport(BaseModel):
    uid: str
    name: str
    downloads: int = 0
    up_to_date: int = 0
    deletes: int = 0
    nones: int = 0
    total_actions: int = 0
    planned_actions: int = 0
    warnings: List[str] = []
    errors: List[str] = []
    records: List[RecordRunResult] = []
    cleaner: Optional[CleanerReport] = None

    def counters(self) -> Dict[str, Any]:
        counters = {
            "downloads": self.downloads,
            "upToDate": self.up_to_date,
            "deletes": self.deletes,
            "nones": self.nones,
            "totalActions": f"{self.total_actions}/{self.planned_actions}",
        }
        if self.warnings:
            counters["warnings"] = len(self.warnings)
        if self.errors:
            counters["errors"] = len(self.errors)
        return counters
