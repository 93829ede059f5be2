import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from kobosync.action_map import build_image_name
from kobosync.config import OutputPaths, RunConfig, current_timestamp
from kobosync.errors import (
    DuplicateImageNameError,
    EntryError,
    HashMismatchError,
    InvalidStateError,
    NotARegularFileError,
)
from kobosync.kobo_api import KoboClient
from kobosync.ledger import append_row, ledger_path, start_ledger
from kobosync.local_store import (
    delete_local_file,
    get_img_info,
    is_up_to_date,
    is_valid_file_hash,
    load_state,
    move_local_file,
    safe_dirname,
    save_state,
    size_label,
    state_path,
)
from kobosync.models import (
    AssetActionMap,
    AssetRunReport,
    AttachmentState,
    EntryResult,
    FieldAction,
    ImgInfo,
    RecordRunResult,
)

logger = logging.getLogger(__name__)

ACTION_TAGS = {"keep": "k", "delete": "d", "none": "n"}


def action_line(action: str, n: int, total: int, field_n: int, field_total: int) -> str:
    return f"[a:{ACTION_TAGS[action]} #{n}/{total} f:#{field_n}/{field_total}]"


@dataclass
class NamePlan:
    """
    File names claimed by an asset's action map, known before anything is
    downloaded. Delete names come from the attachment states saved by
    earlier runs.
    """
    keeps: Set[str] = field(default_factory=set)
    nones: Set[str] = field(default_factory=set)
    deletes: Dict[Tuple[int, str], AttachmentState] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def delete_names(self) -> Set[str]:
        return {state.image_name for state in self.deletes.values()}


class ActionExecutor:
    """
    Applies the keep / delete / none actions of one asset to its image
    directory and keeps the attachment state store up to date.
    """

    def __init__(self, config: RunConfig, paths: OutputPaths, client: KoboClient):
        self.config = config
        self.paths = paths
        self.client = client

    # -----------------------------
    # Paths
    # -----------------------------

    def images_dir(self, asset_map: AssetActionMap) -> Path:
        return self.paths.images / asset_map.uid / safe_dirname(asset_map.name)

    def cleaned_dir(self, asset_map: AssetActionMap) -> Path:
        return self.paths.images_deleted / asset_map.uid / safe_dirname(asset_map.name)

    def _state_path(self, uid: str, record_id: int, field_name: str) -> Path:
        return state_path(self.paths.attachments_map, uid, record_id, field_name)

    def _read_state(self, path: Path, warnings: List[str]) -> Optional[AttachmentState]:
        try:
            return load_state(path)
        except InvalidStateError as e:
            logger.warning("%s", e)
            warnings.append(str(e))
            return None

    # -----------------------------
    # Planning
    # -----------------------------

    def plan(self, asset_map: AssetActionMap) -> NamePlan:
        plan = NamePlan()
        for record_map in asset_map.records:
            rid = record_map.record_id
            for field_name, action in record_map.actions.items():
                if action.action == "keep":
                    plan.keeps.add(build_image_name(rid, action.value))
                elif action.action == "none":
                    plan.nones.add(build_image_name(rid, action.value))
                else:
                    state = self._read_state(self._state_path(asset_map.uid, rid, field_name), plan.warnings)
                    if state is not None:
                        plan.deletes[(rid, field_name)] = state
        return plan

    # -----------------------------
    # Run
    # -----------------------------

    async def run_asset(self, asset_map: AssetActionMap, plan: NamePlan) -> AssetRunReport:
        report = AssetRunReport(
            uid=asset_map.uid,
            name=asset_map.name,
            planned_actions=asset_map.counters.total_actions,
            warnings=list(asset_map.warnings) + list(plan.warnings),
        )
        images_dir = self.images_dir(asset_map)
        images_dir.mkdir(parents=True, exist_ok=True)
        ledger = ledger_path(images_dir)
        start_ledger(ledger)

        claimed_keeps: Set[str] = set()
        claimed_deletes: Set[str] = set()
        total = asset_map.counters.total_actions
        n = 0

        for record_map in asset_map.records:
            rid = record_map.record_id
            record_result = RecordRunResult(record_id=rid)
            field_total = len(record_map.actions)

            for field_n, (field_name, action) in enumerate(record_map.actions.items(), start=1):
                n += 1
                tag = action_line(action.action, n, total, field_n, field_total)
                try:
                    if action.action == "keep":
                        entry = await self._keep(asset_map, images_dir, ledger, rid, field_name, action, claimed_keeps, report)
                    elif action.action == "delete":
                        entry = self._delete(asset_map, images_dir, rid, field_name, plan, claimed_deletes, report)
                    else:
                        entry = self._none(rid, field_name, action, report)
                except (EntryError, OSError) as e:
                    label = build_image_name(rid, action.value) if action.value else f"image field: {field_name}"
                    logger.error("%s %s: %s (skipped)", tag, label, e)
                    report.errors.append(f"an error occurs while processing image - record: {rid}, field: {field_name} - error: {e}")
                    entry = EntryResult(field=field_name, name=label, action=action.action, status="error", op="error", error=str(e))
                else:
                    logger.info("%s %s: %s", tag, entry.name, entry.detail)

                record_result.entries.append(entry)
                report.total_actions += 1

            report.records.append(record_result)

        return report

    # -----------------------------
    # 1) keep
    # -----------------------------

    async def _keep(self, asset_map, images_dir, ledger, rid, field_name, action: FieldAction, claimed_keeps, report) -> EntryResult:
        image_name = build_image_name(rid, action.value)
        if image_name in claimed_keeps:
            raise DuplicateImageNameError(f"in action 'keep': image name is duplicated in to-keep list: {image_name}")
        claimed_keeps.add(image_name)

        image_path = images_dir / image_name
        if image_path.exists() and not image_path.is_file():
            raise NotARegularFileError(f"image name exists but is not a regular file - cannot store the image in: {image_path}")

        attachment = action.attachment
        state_file = self._state_path(asset_map.uid, rid, field_name)
        state = self._read_state(state_file, report.warnings)

        up_to_date = await asyncio.to_thread(is_up_to_date, image_path, state, image_name, attachment.id)
        if up_to_date:
            append_row(ledger, state.img_info)
            report.up_to_date += 1
            return EntryResult(field=field_name, name=image_name, action="keep", op="saveImage", detail="image up to date", path=str(image_path))

        # partial downloads live next to the state file, out of the cleaner's reach
        part = state_file.with_name(state_file.stem + ".part")
        download = await asyncio.to_thread(self.client.download, attachment.download_url, image_path, part)
        try:
            info = await asyncio.to_thread(get_img_info, image_path)
        except EntryError:
            delete_local_file(image_path)
            raise

        size = image_path.stat().st_size
        content_type = (download.content_type or "").split(";")[0].strip()
        img_info = ImgInfo(
            asset_uid=asset_map.uid,
            asset_name=asset_map.name,
            record_id=rid,
            name=image_name,
            type=content_type or attachment.mimetype,
            size=size,
            size_mb=size_label(size),
            **info,
        )
        new_state = AttachmentState(
            image_name=image_name,
            original_name=action.value,
            attachment_id=attachment.id,
            save_timestamp=current_timestamp(),
            img_info=img_info,
        )
        save_state(state_file, new_state)
        append_row(ledger, img_info)
        report.downloads += 1
        return EntryResult(field=field_name, name=image_name, action="keep", op="saveImage", detail="image downloaded", path=str(image_path))

    # -----------------------------
    # 2) delete
    # -----------------------------

    def _delete(self, asset_map, images_dir, rid, field_name, plan: NamePlan, claimed_deletes, report) -> EntryResult:
        state = plan.deletes.get((rid, field_name))
        if state is None:
            report.nones += 1
            return EntryResult(
                field=field_name,
                name=f"image field: {field_name}",
                action="delete",
                op="deleteImage",
                detail="has no filename: if exists will be cleaned",
            )

        image_name = state.image_name
        if image_name in plan.keeps:
            raise DuplicateImageNameError(f"in action 'delete': image name is duplicated in to-keep list: {image_name}")
        if image_name in claimed_deletes:
            raise DuplicateImageNameError(f"in action 'delete': image name is duplicated in to-delete list: {image_name}")
        claimed_deletes.add(image_name)

        image_path = images_dir / image_name
        if not image_path.is_file():
            report.nones += 1
            return EntryResult(field=field_name, name=image_name, action="delete", op="deleteImage", detail="image does not exists", path=str(image_path))

        if not is_valid_file_hash(image_path, state.img_info.hash):
            raise HashMismatchError(f"trying to remove an image with a different hash than the image that was stored originally: {image_path}")

        if self.config.delete_images:
            delete_local_file(image_path)
            report.deletes += 1
            return EntryResult(field=field_name, name=image_name, action="delete", op="deleteImage", detail="image deleted", path=str(image_path))

        new_path = move_local_file(image_path, self.cleaned_dir(asset_map) / image_name)
        report.deletes += 1
        return EntryResult(
            field=field_name,
            name=image_name,
            action="delete",
            op="deleteImage",
            detail="image moved to 'images_deleted' dir",
            path=str(image_path),
            new_path=str(new_path),
        )

    # -----------------------------
    # 3) none
    # -----------------------------

    def _none(self, rid, field_name, action: FieldAction, report) -> EntryResult:
        report.nones += 1
        return EntryResult(
            field=field_name,
            name=build_image_name(rid, action.value),
            action="none",
            op="none",
            detail="has no attachment: if exists will be cleaned",
        )
