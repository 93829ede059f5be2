"""
Orphan sweep of an asset's image directory.

The sweep runs as its own asyncio task next to the action executor. It only
touches files whose names are neither in the keep set nor in the delete set
of the run, and both sets are fixed before the executor starts, so any file
the executor writes during the run is out of its reach.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Tuple

from kobosync.action_map import build_image_name
from kobosync.local_store import delete_local_file, move_local_file
from kobosync.models import AssetActionMap, CleanerOp, CleanerReport

logger = logging.getLogger(__name__)

NOT_STARTED = "not-started"
RUNNING = "running"
COMPLETED = "completed"


@dataclass(frozen=True)
class CleanerConfig:
    images_dir: Path
    cleaned_dir: Path
    keeps: FrozenSet[str]
    deletes: FrozenSet[str]
    nones: FrozenSet[str]
    delete_images: bool = False

    @classmethod
    def from_action_map(
        cls,
        asset_map: AssetActionMap,
        images_dir: Path,
        cleaned_dir: Path,
        delete_names: Iterable[str] = (),
        delete_images: bool = False,
    ) -> "CleanerConfig":
        """
        Keep and none names come straight from the map. Delete names can only
        be known from the saved attachment states, so the caller resolves them.
        """
        keeps = set()
        nones = set()
        for record_map in asset_map.records:
            for action in record_map.actions.values():
                if action.action == "keep":
                    keeps.add(build_image_name(record_map.record_id, action.value))
                elif action.action == "none":
                    nones.add(build_image_name(record_map.record_id, action.value))
        return cls(
            images_dir=images_dir,
            cleaned_dir=cleaned_dir,
            keeps=frozenset(keeps),
            deletes=frozenset(delete_names),
            nones=frozenset(nones),
            delete_images=delete_images,
        )


class ImageCleaner:
    """
    One-shot handle over a sweep. Build it with a CleanerConfig, call start()
    from a running event loop and await wait() for the report.
    """

    def __init__(self, config: CleanerConfig):
        self.config = config
        self._task: Optional[asyncio.Task] = None
        self._state = NOT_STARTED
        self._total = 0
        self._executed = 0
        self._cleaned: List[CleanerOp] = []
        self._errors: List[CleanerOp] = []

    @property
    def state(self) -> str:
        return self._state

    @property
    def progress(self) -> Tuple[int, int]:
        """(files handled, files expected to need handling)"""
        return self._executed, max(self._total, self._executed)

    def start(self) -> "ImageCleaner":
        if self._task is not None:
            raise RuntimeError("image cleaner was already started")
        self._state = RUNNING
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    async def wait(self) -> CleanerReport:
        if self._task is None:
            raise RuntimeError("image cleaner was not started")
        await self._task
        return self.report()

    def report(self) -> CleanerReport:
        return CleanerReport(
            state=self._state,
            total_actions=self._total,
            total_actions_executed=self._executed,
            cleaned=list(self._cleaned),
            errors=list(self._errors),
        )

    # -----------------------------
    # Sweep
    # -----------------------------

    def _list_files(self) -> List[Path]:
        if not self.config.images_dir.is_dir():
            return []
        return sorted(p for p in self.config.images_dir.iterdir() if p.is_file())

    async def _run(self):
        cfg = self.config
        try:
            files = self._list_files()
            self._total = max(0, len(files) - (len(cfg.keeps) + len(cfg.deletes)))
            logger.debug("cleaner: %d files in %s, %d to check", len(files), cfg.images_dir, self._total)

            for path in files:
                # let the executor run between files
                await asyncio.sleep(0)
                name = path.name
                if name in cfg.keeps or name in cfg.deletes:
                    continue
                # nones may still be recovered: never destroyed here
                move = name in cfg.nones or not cfg.delete_images
                self._clean(path, move)
        finally:
            self._state = COMPLETED

    def _clean(self, path: Path, move: bool):
        op = {"target_file": path.name, "target_file_path": str(path)}
        try:
            if move:
                new_path = move_local_file(path, self.config.cleaned_dir / path.name)
                op.update(status="ok", new_file_path=str(new_path), detail="file moved")
            else:
                delete_local_file(path)
                op.update(status="ok", detail="file deleted")
        except OSError as e:
            logger.error("cleaner: %s: %s", path, e)
            op.update(status="error", detail=str(e), error=repr(e))
            self._errors.append(CleanerOp(**op))
        else:
            logger.info("cleaner: %s: %s", path.name, op["detail"])
            self._cleaned.append(CleanerOp(**op))
        self._executed += 1
