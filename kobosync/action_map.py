"""
Classification of every (record, image field) pair into keep / delete / none.

  - keep:   the field names an image and an image attachment with that name
            exists; the file must be present locally and up to date.
  - delete: the field has no image name; any file previously saved for it
            must go.
  - none:   the field names an image but no attachment backs it. Reported as
            a warning; a local file with that name is quarantined by the
            cleaner.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from kobosync.errors import AmbiguousFieldValueError, MalformedResponseError
from kobosync.models import (
    AssetActionMap,
    Attachment,
    FieldAction,
    ImageField,
    MapCounters,
    Record,
    RecordActionMap,
)

logger = logging.getLogger(__name__)


def build_image_name(record_id: int, value: str) -> str:
    return f"{record_id}_{value}"


def find_attachment(name: str, attachments: Iterable[Attachment], record_id: Optional[int] = None) -> Optional[Attachment]:
    """
    Return the image attachment whose filename ends with 'name'. When several
    match (the image was re-uploaded), the one with the greatest id wins.
    """
    if not name:
        return None

    result = None
    for attachment in attachments:
        if not attachment.is_image():
            continue
        if not attachment.filename.endswith(name):
            continue
        if result is None or attachment.id > result.id:
            result = attachment

    if result is not None:
        logger.debug("record %s: '%s' matched attachment %d", record_id, name, result.id)
    return result


def lookup_field_value(record: Record, field: ImageField) -> Tuple[Optional[str], Optional[str]]:
    """
    Return (raw key, value) bound to 'field' in the record, or (None, None).
    """
    matches = [(k, v) for k, v in record.raw_values.items() if field.matches_key(k)]
    if len(matches) > 1:
        keys = [k for k, _ in matches]
        raise AmbiguousFieldValueError(
            f"expected one or zero values for field '{field.autoname}' in record {record.id}, found {len(matches)}: {keys}"
        )
    if not matches:
        return None, None

    key, value = matches[0]
    if value is None or value == "":
        return key, None
    if not isinstance(value, str):
        raise MalformedResponseError(
            f"expected string value for field '{field.autoname}' in record {record.id}, got {type(value).__name__}"
        )
    return key, value


def classify(record: Record, field: ImageField) -> FieldAction:
    key, value = lookup_field_value(record, field)

    if value is None:
        return FieldAction(value=None, attachment=None, action="delete", subm_mapped_key=key)

    attachment = find_attachment(value, record.attachments, record.id)
    if attachment is None:
        warning = (
            "this field has an image name defined, but no attachment exist for it"
            f" - record: {record.id}, field: {field.autoname}, value: {value}"
        )
        return FieldAction(value=value, action="none", subm_mapped_key=key, warning=warning)

    return FieldAction(value=value, attachment=attachment, action="keep", subm_mapped_key=key)


def build_record_map(record: Record, image_fields: Sequence[ImageField]) -> Tuple[RecordActionMap, List[str]]:
    record_map = RecordActionMap(record_id=record.id)
    warnings = []
    for field in image_fields:
        action = classify(record, field)
        record_map.actions[field.autoname] = action
        if action.warning:
            warnings.append(action.warning)
    return record_map, warnings


def build_asset_map(uid: str, name: str, image_fields: Sequence[ImageField], records: Sequence[Record]) -> AssetActionMap:
    """
    Build the action map of one asset. Callers filter out assets without
    submissions or image fields before getting here.
    """
    asset_map = AssetActionMap(uid=uid, name=name, image_fields=list(image_fields))
    counters = MapCounters()

    for record in records:
        record_map, warnings = build_record_map(record, image_fields)
        for action in record_map.actions.values():
            if action.action == "keep":
                counters.keeps += 1
            elif action.action == "delete":
                counters.deletes += 1
            else:
                counters.nones += 1
            counters.total_actions += 1
        asset_map.records.append(record_map)
        asset_map.warnings.extend(warnings)

    counters.warnings = len(asset_map.warnings)
    asset_map.counters = counters
    return asset_map
