"""
Keep-Alive sweeper

DHT items expire unless they are put again. On a fixed interval this
sweeper re-puts every pointer record and message this store authored
(seed namespace) and, as a courtesy to their publishers, the last-known
record of every foreign address currently joined. Records are re-put
verbatim: same sequence, same signature.
"""

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING, Dict, List, Optional

from btpk.backends.local_index import SEED
from btpk.core.record_codec import PointerRecord
from btpk.core.refs import KIND_ADDRESS, KIND_MESSAGE
from .pointer import MessageRecord

if TYPE_CHECKING:
    from btpk.storage.lifecycle import ContentLifecycle

logger = logging.getLogger(__name__)


class KeepAlive:
    """
    Periodic reaffirmation of published pointers.

    Sweeps never overlap: a tick that arrives while the previous sweep is
    still running is skipped. Ids with a load or mutation in flight are
    skipped for the current sweep.
    """

    def __init__(
        self,
        lifecycle: "ContentLifecycle",
        interval: Optional[float] = None,
        item_delay: Optional[float] = None
    ):
        """
        Initialize keep-alive sweeper.

        Args:
            lifecycle: Store whose index, cache and pointer protocol are swept
            interval: Seconds between sweeps (config.keepalive_interval when omitted)
            item_delay: Seconds between reaffirmed items (config.keepalive_delay when omitted)
        """
        self.lifecycle = lifecycle
        self.interval = lifecycle.config.keepalive_interval if interval is None else interval
        self.item_delay = lifecycle.config.keepalive_delay if item_delay is None else item_delay

        self.running = False
        self.sweeping = False
        self.last_report: Optional[Dict[str, List[str]]] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._sweep_tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the sweep timer."""
        if self.running:
            logger.warning("Keep-alive already running")
            return

        self.running = True
        self._loop_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"✅ Keep-alive started (every {self.interval}s)")

    async def stop(self):
        """Stop the timer and cancel a sweep in progress."""
        if not self.running:
            return

        self.running = False
        tasks = [self._loop_task, *self._sweep_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sweep_tasks.clear()
        self._loop_task = None

        logger.info("Keep-alive stopped")

    async def sweep(self) -> Optional[Dict[str, List[str]]]:
        """
        Run one sweep.

        Any error while reaffirming one item is logged and reported as a
        failure of that item; the sweep moves on to the next one. Seed
        records are read from the index when their turn comes, so a
        publish during the sweep is reaffirmed at its new sequence.

        Returns:
            {"reaffirmed": [...], "failed": [...], "skipped": [...]} ids,
            or None if another sweep was still in flight
        """
        if self.sweeping:
            logger.info("Previous keep-alive sweep still running, skipping")
            return None

        self.sweeping = True
        report = {"reaffirmed": [], "failed": [], "skipped": []}
        try:
            first = True
            for logical_id, reaffirm in self._work():
                if not first and self.item_delay:
                    await asyncio.sleep(self.item_delay)
                first = False

                if self.lifecycle.cache.is_busy(logical_id):
                    report["skipped"].append(logical_id)
                    continue

                try:
                    done = await reaffirm()
                except Exception as e:
                    logger.error(f"Keep-alive failed for {logical_id[:16]}...: {e}")
                    report["failed"].append(logical_id)
                    continue

                report["reaffirmed" if done else "skipped"].append(logical_id)
        finally:
            self.sweeping = False

        self.last_report = report
        logger.info(
            f"Keep-alive sweep: {len(report['reaffirmed'])} reaffirmed, "
            f"{len(report['failed'])} failed, {len(report['skipped'])} skipped"
        )
        return report

    def _work(self):
        """(id, coroutine factory) for every item of a sweep, seed entries first."""
        for kind, logical_id, value in self.lifecycle.index.scan_namespace(SEED):
            if (kind == KIND_ADDRESS and value.get("record")) or kind == KIND_MESSAGE:
                yield logical_id, partial(self._reaffirm_seed, kind, logical_id)

        pointer = self.lifecycle.pointer
        for active in self.lifecycle.cache.active_handles():
            if active.own or active.record is None:
                continue
            yield active.logical_id, partial(self._reaffirm_foreign, pointer, active.record)

    async def _reaffirm_seed(self, kind: str, logical_id: str) -> bool:
        """Re-put the record the index holds now; False if the entry is gone."""
        entry = self.lifecycle.index.get(SEED, kind, logical_id)
        if entry is None:
            logger.debug(f"{logical_id[:16]}... gone before reaffirm")
            return False

        pointer = self.lifecycle.pointer
        if kind == KIND_ADDRESS:
            await pointer.reaffirm(PointerRecord.from_dict(entry["record"]))
        else:
            await pointer.reaffirm_message(MessageRecord(
                target=logical_id,
                infohash=entry["infohash"],
                stuff=dict(entry.get("stuff") or {})
            ))
        return True

    @staticmethod
    async def _reaffirm_foreign(pointer, record: PointerRecord) -> bool:
        await pointer.reaffirm(record)
        return True

    async def _sweep_loop(self):
        """Background task starting a sweep every interval."""
        while self.running:
            try:
                if not self.sweeping:
                    task = asyncio.create_task(self.sweep())
                    self._sweep_tasks.append(task)
                    task.add_done_callback(self._sweep_done)
                else:
                    logger.info("Keep-alive tick while sweeping, skipped")
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

    def _sweep_done(self, task: asyncio.Task):
        if task in self._sweep_tasks:
            self._sweep_tasks.remove(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Keep-alive sweep crashed: {task.exception()}")
