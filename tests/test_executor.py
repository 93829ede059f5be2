import csv
import json

import pytest

from kobosync.action_map import build_asset_map
from kobosync.executor import ActionExecutor, action_line
from kobosync.local_store import hash_file, state_path
from kobosync.models import AssetActionMap, ImageField

from helpers import FakeClient, attachment_payload, jpeg_bytes, record

UID = "aXyZ"


def _fields(*names):
    return [ImageField.model_validate({"$autoname": n, "$xpath": n}) for n in names]


def _map(records, fields=("photo_a", "photo_b")) -> AssetActionMap:
    return build_asset_map(UID, "Survey", _fields(*fields), records)


def _scenario():
    att = attachment_payload(2395, "photo.jpg")
    client = FakeClient(files={att["download_url"]: jpeg_bytes()})
    return client, att, _map([record(1721, {"photo_a": "photo.jpg"}, [att])])


async def _run(executor: ActionExecutor, asset_map: AssetActionMap):
    return await executor.run_asset(asset_map, executor.plan(asset_map))


def test_action_line():
    assert action_line("keep", 3, 10, 1, 2) == "[a:k #3/10 f:#1/2]"
    assert action_line("none", 1, 1, 1, 1) == "[a:n #1/1 f:#1/1]"


@pytest.mark.asyncio
async def test_first_run_downloads_then_second_is_up_to_date(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)

    report = await _run(executor, asset_map)

    image = executor.images_dir(asset_map) / "1721_photo.jpg"
    assert image.read_bytes() == jpeg_bytes()
    assert (report.downloads, report.up_to_date, report.deletes, report.nones) == (1, 0, 0, 1)
    assert report.errors == []
    assert report.counters()["totalActions"] == "2/2"

    saved = json.loads(state_path(paths.attachments_map, UID, 1721, "photo_a").read_text())
    assert saved["imageName"] == "1721_photo.jpg"
    assert saved["originalName"] == "photo.jpg"
    assert saved["attachmentId"] == 2395
    assert saved["imgInfo"]["hash"] == hash_file(image)
    assert saved["imgInfo"]["dimensions"] == "width: 8 pixels, height: 6 pixels"
    assert saved["imgInfo"]["type"] == "image/jpeg"
    assert client.parts == [state_path(paths.attachments_map, UID, 1721, "photo_a").with_name("photo_a.part")]

    entries = {e.field: e for e in report.records[0].entries}
    assert entries["photo_a"].detail == "image downloaded"
    assert entries["photo_b"].action == "delete"
    assert entries["photo_b"].status == "ok"

    again = await _run(executor, asset_map)
    assert (again.downloads, again.up_to_date, again.deletes) == (0, 1, 0)
    assert client.downloads == [att["download_url"]]

    with open(executor.images_dir(asset_map) / "data" / "images_info.csv", newline="") as f:
        rows = list(csv.reader(f))
    assert len(rows) == 2
    assert rows[1][3] == "1721_photo.jpg"


@pytest.mark.asyncio
async def test_new_attachment_id_forces_download(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    await _run(executor, asset_map)

    newer = attachment_payload(2500, "photo.jpg")
    client.files[newer["download_url"]] = jpeg_bytes(color=(0, 0, 255))
    report = await _run(executor, _map([record(1721, {"photo_a": "photo.jpg"}, [att, newer])]))

    assert report.downloads == 1
    assert client.downloads[-1] == newer["download_url"]
    saved = json.loads(state_path(paths.attachments_map, UID, 1721, "photo_a").read_text())
    assert saved["attachmentId"] == 2500


@pytest.mark.asyncio
async def test_corrupted_file_is_downloaded_again(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    await _run(executor, asset_map)

    image = executor.images_dir(asset_map) / "1721_photo.jpg"
    image.write_bytes(image.read_bytes()[:-20])
    report = await _run(executor, asset_map)

    assert report.downloads == 1
    assert image.read_bytes() == jpeg_bytes()


@pytest.mark.asyncio
async def test_invalid_state_is_a_warning_and_triggers_download(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    await _run(executor, asset_map)

    state_path(paths.attachments_map, UID, 1721, "photo_a").write_text('{"imageName": 3}')
    report = await _run(executor, asset_map)

    assert report.downloads == 1
    assert report.errors == []
    assert any("attachment map wasn't ok" in w for w in report.warnings)


@pytest.mark.asyncio
async def test_duplicate_keep_name_is_an_entry_error(run_config, paths):
    att = attachment_payload(2395, "photo.jpg")
    client = FakeClient(files={att["download_url"]: jpeg_bytes()})
    asset_map = _map([record(1721, {"photo_a": "photo.jpg", "photo_b": "photo.jpg"}, [att])])
    executor = ActionExecutor(run_config, paths, client)

    report = await _run(executor, asset_map)

    assert report.downloads == 1
    assert len(report.errors) == 1
    statuses = {e.field: e.status for e in report.records[0].entries}
    assert statuses == {"photo_a": "ok", "photo_b": "error"}
    assert "duplicated" in report.records[0].entries[1].error
    assert len(client.downloads) == 1


@pytest.mark.asyncio
async def test_cleared_field_moves_file_to_quarantine(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    await _run(executor, asset_map)

    cleared = _map([record(1721, {}, [att])])
    report = await _run(executor, cleared)

    image = executor.images_dir(cleared) / "1721_photo.jpg"
    moved = executor.cleaned_dir(cleared) / "1721_photo.jpg"
    assert not image.exists()
    assert moved.read_bytes() == jpeg_bytes()
    assert report.deletes == 1
    entry = report.records[0].entries[0]
    assert entry.new_path == str(moved)


@pytest.mark.asyncio
async def test_cleared_field_deleted_when_destructive(run_config, paths):
    client, att, asset_map = _scenario()
    config = run_config.model_copy(update={"delete_images": True})
    executor = ActionExecutor(config, paths, client)
    await _run(executor, asset_map)

    cleared = _map([record(1721, {}, [att])])
    report = await _run(executor, cleared)

    assert not (executor.images_dir(cleared) / "1721_photo.jpg").exists()
    assert not executor.cleaned_dir(cleared).exists()
    assert report.records[0].entries[0].detail == "image deleted"


@pytest.mark.asyncio
async def test_delete_refuses_file_with_other_hash(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    await _run(executor, asset_map)

    image = executor.images_dir(asset_map) / "1721_photo.jpg"
    image.write_bytes(b"edited by hand")
    report = await _run(executor, _map([record(1721, {}, [att])]))

    assert image.read_bytes() == b"edited by hand"
    assert report.deletes == 0
    assert len(report.errors) == 1
    assert "different hash" in report.records[0].entries[0].error


@pytest.mark.asyncio
async def test_failed_move_is_not_counted_as_delete(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    await _run(executor, asset_map)

    # a plain file where the asset's images_deleted dir should go
    (paths.images_deleted / UID).write_bytes(b"x")
    cleared = _map([record(1721, {}, [att])])
    report = await _run(executor, cleared)

    assert report.deletes == 0
    assert len(report.errors) == 1
    assert report.total_actions == 2
    assert report.records[0].entries[0].status == "error"
    assert (executor.images_dir(cleared) / "1721_photo.jpg").read_bytes() == jpeg_bytes()


@pytest.mark.asyncio
async def test_delete_name_claimed_by_keep_is_an_entry_error(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    await _run(executor, asset_map)

    # photo_a now empty, photo_b now names the same image
    swapped = _map([record(1721, {"photo_b": "photo.jpg"}, [att])])
    report = await _run(executor, swapped)

    entries = {e.field: e for e in report.records[0].entries}
    assert entries["photo_a"].status == "error"
    assert "to-keep list" in entries["photo_a"].error
    assert entries["photo_b"].status == "ok"
    assert (executor.images_dir(swapped) / "1721_photo.jpg").exists()


@pytest.mark.asyncio
async def test_download_failure_is_recorded_and_run_continues(run_config, paths):
    bad = attachment_payload(1, "bad.jpg", record_id=1)
    good = attachment_payload(2, "good.jpg", record_id=2)
    client = FakeClient(files={good["download_url"]: jpeg_bytes()})
    client.fail_urls.add(bad["download_url"])
    asset_map = _map(
        [record(1, {"photo_a": "bad.jpg"}, [bad]), record(2, {"photo_a": "good.jpg"}, [good])],
        fields=("photo_a",),
    )
    executor = ActionExecutor(run_config, paths, client)

    report = await _run(executor, asset_map)

    assert report.downloads == 1
    assert len(report.errors) == 1
    assert report.total_actions == 2
    assert report.records[0].entries[0].status == "error"
    assert (executor.images_dir(asset_map) / "2_good.jpg").exists()
    assert not state_path(paths.attachments_map, UID, 1, "photo_a").exists()


@pytest.mark.asyncio
async def test_unreadable_image_is_an_entry_error(run_config, paths):
    att = attachment_payload(7, "x.jpg", record_id=5)
    client = FakeClient(files={att["download_url"]: b"<html>not an image</html>"})
    asset_map = _map([record(5, {"photo_a": "x.jpg"}, [att])], fields=("photo_a",))
    executor = ActionExecutor(run_config, paths, client)

    report = await _run(executor, asset_map)

    assert len(report.errors) == 1
    assert not (executor.images_dir(asset_map) / "5_x.jpg").exists()


@pytest.mark.asyncio
async def test_keep_target_that_is_a_directory(run_config, paths):
    client, att, asset_map = _scenario()
    executor = ActionExecutor(run_config, paths, client)
    (executor.images_dir(asset_map) / "1721_photo.jpg").mkdir(parents=True)

    report = await _run(executor, asset_map)

    assert "not a regular file" in report.records[0].entries[0].error
    assert client.downloads == []
