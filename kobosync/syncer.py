import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

from kobosync.action_map import build_asset_map
from kobosync.cleaner import COMPLETED, CleanerConfig, ImageCleaner
from kobosync.config import OutputPaths, RunConfig
from kobosync.errors import AmbiguousFieldValueError, KoboSyncError, MalformedResponseError, StepError
from kobosync.executor import ActionExecutor
from kobosync.kobo_api import KoboClient
from kobosync.log import console
from kobosync.models import Asset, AssetActionMap, AssetRunReport, AssetSummary, CleanerReport, Record

logger = logging.getLogger(__name__)

SEPARATOR = "-----------------"


def _write_json(path: Path, data: Any):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


class KoboImageSync:
    """
    Main class orchestrating the image sync of one run:
     - list the assets of the token (token mode only)
     - fetch the image fields of each asset
     - fetch the submissions of each asset
     - build the keep / delete / none action map
     - update the local images, with the orphan sweep alongside
    Every step writes its result under steps/{n}_{name}/.
    """

    def __init__(self, config: RunConfig, paths: OutputPaths, client: Optional[KoboClient] = None):
        self.config = config
        self.paths = paths
        self.client = client or KoboClient(config)
        self.executor = ActionExecutor(config, paths, self.client)
        self.step_id = 0

    def _start_step(self, title: str, name: str) -> Path:
        self.step_id += 1
        logger.info("%s", title)
        step_dir = self.paths.steps / f"{self.step_id}_{name}"
        step_dir.mkdir(parents=True, exist_ok=True)
        return step_dir

    def _end_step(self, step_dir: Path, results: Any, counters: Dict[str, Any], errors: List[str]):
        _write_json(step_dir / f"{self.step_id}-result.json", results)
        logger.info("%s %s", "ok" if not errors else "fail", counters)
        logger.info(SEPARATOR)
        if errors:
            raise StepError(f"step completed with failed operations: {len(errors)} failed\n" + "\n".join(errors))

    # -----------------------------
    # 1) ASSETS LIST
    # -----------------------------

    def get_assets_list(self) -> List[AssetSummary]:
        step_dir = self._start_step("get assets list", "get_assets_list")
        assets = self.client.list_assets()

        results = []
        for i, asset in enumerate(assets, start=1):
            if asset.submission_count == 0:
                logger.info("[%d/%d]%s: has no submissions - (skipped)", i, len(assets), asset.uid)
                continue
            results.append(asset)

        counters = {"assetsCount": len(assets), "assetsFiltered": len(assets) - len(results), "totalResults": len(results)}
        self._end_step(step_dir, [a.model_dump(mode="json") for a in results], counters, [])
        return results

    # -----------------------------
    # 2) IMAGE FIELDS
    # -----------------------------

    def get_image_fields(self, uids: List[str]) -> List[Asset]:
        step_dir = self._start_step("get image fields", "get_image_fields")

        results = []
        errors = []
        skipped = 0
        for i, uid in enumerate(uids, start=1):
            try:
                asset = self.client.get_asset(uid)
            except KoboSyncError as e:
                logger.error("[%d/%d]%s: %s", i, len(uids), uid, e)
                errors.append(f"{uid}: {e}")
                continue

            if not asset.image_fields:
                logger.info("[%d/%d]%s: has no image fields - (skipped)", i, len(uids), uid)
                skipped += 1
                continue
            logger.info("[%d/%d]%s: %d image fields", i, len(uids), uid, len(asset.image_fields))
            results.append(asset)

        counters = {"assetsCount": len(uids), "assetsFetched": len(results) + skipped, "assetsFiltered": skipped, "totalResults": len(results)}
        self._end_step(step_dir, [a.model_dump(mode="json", by_alias=True) for a in results], counters, errors)
        return results

    # -----------------------------
    # 3) SUBMISSIONS
    # -----------------------------

    def _select_records(self, uid: str, records: List[Record]) -> List[Record]:
        selected = records
        f = self.config.filter_for(uid)
        if f is not None and f.submission_ids:
            ids = set(f.submission_ids)
            selected = [r for r in selected if r.id in ids]
        without_attachments = [r.id for r in selected if not r.attachments]
        if without_attachments:
            logger.info("%s: %d submissions have no attachments - (skipped)", uid, len(without_attachments))
            logger.debug("%s: submissions without attachments: %s", uid, without_attachments)
        return [r for r in selected if r.attachments]

    def get_submissions(self, assets: List[Asset]) -> Dict[str, List[Record]]:
        step_dir = self._start_step("get submissions", "get_submissions")

        results: Dict[str, List[Record]] = {}
        errors = []
        for i, asset in enumerate(assets, start=1):
            try:
                records = self.client.get_submissions(asset.uid)
            except KoboSyncError as e:
                logger.error("[%d/%d]%s: %s", i, len(assets), asset.uid, e)
                errors.append(f"{asset.uid}: {e}")
                continue

            selected = self._select_records(asset.uid, records)
            if not selected:
                logger.info("[%d/%d]%s: has no submissions - (skipped)", i, len(assets), asset.uid)
                continue
            logger.info("[%d/%d]%s: totalSubmissions: %d", i, len(assets), asset.uid, len(selected))
            results[asset.uid] = selected

        counters = {"assetsCount": len(assets), "assetsFiltered": len(assets) - len(results) - len(errors), "totalResults": len(results)}
        dump = {uid: [r.model_dump(mode="json", by_alias=True) for r in records] for uid, records in results.items()}
        self._end_step(step_dir, dump, counters, errors)
        return results

    # -----------------------------
    # 4) ACTION MAP
    # -----------------------------

    def build_action_map(self, assets: List[Asset], submissions: Dict[str, List[Record]]) -> List[AssetActionMap]:
        step_dir = self._start_step("build action map", "build_action_map")

        results = []
        errors = []
        totals = {"totalKeeps": 0, "totalDeletes": 0, "totalNones": 0, "totalWarnings": 0, "totalActions": 0}
        for i, asset in enumerate(assets, start=1):
            records = submissions.get(asset.uid)
            if not records:
                continue
            try:
                asset_map = build_asset_map(asset.uid, asset.name, asset.image_fields, records)
            except (AmbiguousFieldValueError, MalformedResponseError) as e:
                logger.error("[%d/%d]%s: %s", i, len(assets), asset.uid, e)
                errors.append(f"{asset.uid}: {e}")
                continue

            for warning in asset_map.warnings:
                logger.warning("%s: %s", asset.uid, warning)
            c = asset_map.counters
            logger.info(
                "[%d/%d]%s: keeps: %d, deletes: %d, nones: %d, totalActions: %d, warnings: %d",
                i, len(assets), asset.uid, c.keeps, c.deletes, c.nones, c.total_actions, c.warnings,
            )
            totals["totalKeeps"] += c.keeps
            totals["totalDeletes"] += c.deletes
            totals["totalNones"] += c.nones
            totals["totalWarnings"] += c.warnings
            totals["totalActions"] += c.total_actions
            results.append(asset_map)

        counters = {"assetsCount": len(assets), "assetsProcessed": len(results), **totals}
        self._end_step(step_dir, [m.model_dump(mode="json", by_alias=True) for m in results], counters, errors)
        return results

    # -----------------------------
    # 5) UPDATE IMAGES
    # -----------------------------

    async def _wait_cleaner(self, cleaner: ImageCleaner) -> CleanerReport:
        if cleaner.state != COMPLETED:
            columns = (TextColumn("cleaning images"), BarColumn(), MofNCompleteColumn())
            with Progress(*columns, console=console, transient=True) as progress:
                task = progress.add_task("clean", total=None)
                while cleaner.state != COMPLETED:
                    done, total = cleaner.progress
                    progress.update(task, completed=done, total=total or None)
                    await asyncio.sleep(0.1)
        return await cleaner.wait()

    async def update_asset(self, asset_map: AssetActionMap) -> AssetRunReport:
        plan = self.executor.plan(asset_map)
        cleaner_config = CleanerConfig.from_action_map(
            asset_map,
            images_dir=self.executor.images_dir(asset_map),
            cleaned_dir=self.executor.cleaned_dir(asset_map),
            delete_names=plan.delete_names,
            delete_images=self.config.delete_images,
        )
        cleaner = ImageCleaner(cleaner_config).start()
        try:
            report = await self.executor.run_asset(asset_map, plan)
        finally:
            # the sweep must not outlive the asset even if the executor failed
            cleaner_report = await self._wait_cleaner(cleaner)
        report.cleaner = cleaner_report
        return report

    async def update_images(self, asset_maps: List[AssetActionMap]) -> List[AssetRunReport]:
        step_dir = self._start_step("update images", "update_images")

        reports = []
        for i, asset_map in enumerate(asset_maps, start=1):
            logger.info("[%d/%d]%s: %s", i, len(asset_maps), asset_map.uid, asset_map.name)
            report = await self.update_asset(asset_map)
            logger.info("[%d/%d]%s: %s", i, len(asset_maps), asset_map.uid, report.counters())
            if report.cleaner is not None:
                logger.info(
                    "[%d/%d]%s: cleaner: %d/%d files cleaned, %d errors",
                    i, len(asset_maps), asset_map.uid,
                    len(report.cleaner.cleaned), report.cleaner.total_actions, len(report.cleaner.errors),
                )
            _write_json(step_dir / f"{asset_map.uid}-{self.step_id}-result.json", report.model_dump(mode="json"))
            reports.append(report)

        counters = {
            "assetsCount": len(asset_maps),
            "downloads": sum(r.downloads for r in reports),
            "upToDate": sum(r.up_to_date for r in reports),
            "deletes": sum(r.deletes for r in reports),
            "nones": sum(r.nones for r in reports),
            "warnings": sum(len(r.warnings) for r in reports),
            "errors": sum(len(r.errors) for r in reports),
        }
        summary = [{"uid": r.uid, "name": r.name, "mapRunnerCounters": r.counters()} for r in reports]
        self._end_step(step_dir, summary, counters, [])
        return reports

    # -----------------------------
    # Run
    # -----------------------------

    async def run(self) -> List[AssetRunReport]:
        """
        Run all steps. Stops early, without error, as soon as a step has
        nothing left to hand to the next one.
        """
        if self.config.mode == "token":
            assets = self.get_assets_list()
            uids = [a.uid for a in assets]
        else:
            uids = [f.asset_id for f in self.config.filters]
        if not uids:
            logger.info("no assets to process - nothing to do")
            return []

        assets = self.get_image_fields(uids)
        if not assets:
            logger.info("no assets with image fields - nothing to do")
            return []

        submissions = self.get_submissions(assets)
        if not submissions:
            logger.info("no submissions to process - nothing to do")
            return []

        asset_maps = self.build_action_map(assets, submissions)
        if not asset_maps:
            logger.info("empty action map - nothing to do")
            return []

        return await self.update_images(asset_maps)
