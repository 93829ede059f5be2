import asyncio
from pathlib import Path

import pytest

from kobosync.action_map import build_asset_map
from kobosync.cleaner import COMPLETED, NOT_STARTED, CleanerConfig, ImageCleaner
from kobosync.models import ImageField

from helpers import attachment_payload, record


def _config(tmp_path: Path, delete_images=False, **names) -> CleanerConfig:
    images = tmp_path / "images"
    images.mkdir(exist_ok=True)
    return CleanerConfig(
        images_dir=images,
        cleaned_dir=tmp_path / "deleted",
        keeps=frozenset(names.get("keeps", ())),
        deletes=frozenset(names.get("deletes", ())),
        nones=frozenset(names.get("nones", ())),
        delete_images=delete_images,
    )


def _touch(directory: Path, *names):
    for name in names:
        (directory / name).write_bytes(name.encode())


@pytest.mark.asyncio
async def test_sweep_moves_orphans_and_spares_claimed_names(tmp_path: Path):
    config = _config(tmp_path, keeps={"1_a.jpg"}, deletes={"2_b.jpg"}, nones={"3_c.jpg"})
    _touch(config.images_dir, "1_a.jpg", "2_b.jpg", "3_c.jpg", "9_old.jpg")
    (config.images_dir / "data").mkdir()
    _touch(config.images_dir / "data", "images_info.csv")

    cleaner = ImageCleaner(config)
    assert cleaner.state == NOT_STARTED
    report = await cleaner.start().wait()

    assert cleaner.state == COMPLETED
    assert sorted(p.name for p in config.images_dir.iterdir()) == ["1_a.jpg", "2_b.jpg", "data"]
    assert sorted(p.name for p in config.cleaned_dir.iterdir()) == ["3_c.jpg", "9_old.jpg"]
    assert (config.images_dir / "data" / "images_info.csv").exists()
    assert report.total_actions == 2
    assert report.total_actions_executed == 2
    assert {op.target_file for op in report.cleaned} == {"3_c.jpg", "9_old.jpg"}
    assert all(op.detail == "file moved" for op in report.cleaned)
    assert report.errors == []


@pytest.mark.asyncio
async def test_destructive_sweep_still_quarantines_nones(tmp_path: Path):
    config = _config(tmp_path, delete_images=True, nones={"3_c.jpg"})
    _touch(config.images_dir, "3_c.jpg", "9_old.jpg")

    report = await ImageCleaner(config).start().wait()

    assert list(config.images_dir.iterdir()) == []
    assert [p.name for p in config.cleaned_dir.iterdir()] == ["3_c.jpg"]
    details = {op.target_file: op.detail for op in report.cleaned}
    assert details == {"3_c.jpg": "file moved", "9_old.jpg": "file deleted"}


@pytest.mark.asyncio
async def test_quarantine_collisions_get_suffix(tmp_path: Path):
    config = _config(tmp_path)
    config.cleaned_dir.mkdir()
    _touch(config.cleaned_dir, "9_old.jpg")
    _touch(config.images_dir, "9_old.jpg")

    report = await ImageCleaner(config).start().wait()

    assert report.cleaned[0].new_file_path == str(config.cleaned_dir / "9_old(1).jpg")


@pytest.mark.asyncio
async def test_cleaner_is_one_shot(tmp_path: Path):
    cleaner = ImageCleaner(_config(tmp_path))
    with pytest.raises(RuntimeError):
        await cleaner.wait()
    cleaner.start()
    with pytest.raises(RuntimeError):
        cleaner.start()
    await cleaner.wait()


@pytest.mark.asyncio
async def test_files_written_during_sweep_are_untouched(tmp_path: Path):
    config = _config(tmp_path, keeps={"1_new.jpg"})
    _touch(config.images_dir, *[f"9_old{i}.jpg" for i in range(5)])

    cleaner = ImageCleaner(config).start()
    await asyncio.sleep(0)
    _touch(config.images_dir, "1_new.jpg")
    await cleaner.wait()

    assert [p.name for p in config.images_dir.iterdir()] == ["1_new.jpg"]


def test_config_from_action_map(tmp_path: Path):
    fields = [ImageField.model_validate({"$autoname": n}) for n in ("photo_a", "photo_b", "photo_c")]
    records = [record(1721, {"photo_a": "photo.jpg", "photo_c": "lost.jpg"}, [attachment_payload(2395, "photo.jpg")])]
    asset_map = build_asset_map("aXyZ", "Survey", fields, records)

    config = CleanerConfig.from_action_map(asset_map, tmp_path / "i", tmp_path / "d", delete_names={"1721_old.jpg"})

    assert config.keeps == {"1721_photo.jpg"}
    assert config.nones == {"1721_lost.jpg"}
    assert config.deletes == {"1721_old.jpg"}
    assert config.delete_images is False
