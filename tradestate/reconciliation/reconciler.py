"""
Snapshot reconciliation.

Fetches the full snapshot and merges it into the store as REST writes.

- The merge sequence is taken before the fetch is issued, so realtime
  writes that land while the request is in flight carry a higher sequence
  and win over the (older) snapshot values.
- Pending optimistic fields refuse the merge; the store decides per field.
- Entities missing from a snapshot are never force-closed: closing only
  happens through an explicit close event or a closed entry.
- A failed fetch leaves the store untouched and raises TransportFailure.

Logs RECONCILE_SUMMARY with counts after every refresh.
"""
import asyncio
from typing import Any, Dict, Mapping, Optional

from tradestate.domain.mapping import closing_patch, patch_for, payload_id
from tradestate.domain.models import EntityKind, PositionStatus, WriteSource, entity_key
from tradestate.domain.protocols import Snapshot, SnapshotSource, snapshot_from_dict
from tradestate.exceptions import DataError, TransportFailure
from tradestate.monitoring.logger import get_logger, log_context
from tradestate.state.store import StateStore

logger = get_logger(__name__)


def _empty_summary() -> Dict[str, int]:
    return {"fetched": 0, "created": 0, "updated": 0, "unchanged": 0, "fields_rejected": 0, "malformed": 0}


class ReconciliationScheduler:
    """
    Periodic and on-demand snapshot refresh.

    refresh() can be called directly (pull-to-refresh); run()/start() drive
    it on an interval. Overlapping refreshes are serialized.
    """

    def __init__(
        self,
        store: StateStore,
        source: SnapshotSource,
        *,
        interval_seconds: float = 60.0,
        enabled: bool = True,
        refresh_on_start: bool = True,
        request_timeout: Optional[float] = None,
    ):
        self.store = store
        self.source = source
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.refresh_on_start = refresh_on_start
        self.request_timeout = request_timeout
        self.last_summary: Optional[Dict[str, int]] = None
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._adhoc: Optional[asyncio.Task] = None
        self._in_flight = False
        self._rerun = False

    async def refresh(self) -> Dict[str, int]:
        """
        Fetch and merge one snapshot. Returns summary counts.

        Raises:
            TransportFailure: fetch failed or timed out; store untouched
        """
        async with self._lock:
            sequence = self.store.next_sequence()
            self._in_flight = True
            try:
                with log_context(refresh_sequence=sequence):
                    logger.info("RECONCILE_START")
                    summary = await self._fetch_and_merge(sequence)
            finally:
                self._in_flight = False
            self.last_summary = summary
            return summary

    def request_refresh(self) -> Optional[asyncio.Task]:
        """
        Ask for a refresh as soon as possible.

        Wakes the periodic loop when it runs; otherwise schedules a one-off
        refresh on the running event loop and returns its task. A request
        that arrives while a one-off refresh is already fetching makes that
        task run once more, since its snapshot may predate the request.
        """
        if self._task is not None and not self._task.done():
            self._wake.set()
            return self._task
        if self._adhoc is not None and not self._adhoc.done():
            if self._in_flight:
                self._rerun = True
            return self._adhoc
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("RECONCILE_REQUEST_IGNORED", reason="no_running_loop")
            return None
        self._adhoc = loop.create_task(self._requested_refresh())
        return self._adhoc

    async def run(self) -> None:
        """Refresh loop. Errors are logged and the loop continues."""
        self._running = True
        logger.info("RECONCILE_LOOP_STARTED", interval_seconds=self.interval_seconds)
        try:
            if self.refresh_on_start:
                await self._safe_refresh()
            while self._running:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
                if not self._running:
                    break
                await self._safe_refresh()
        finally:
            self._running = False
            logger.info("RECONCILE_LOOP_STOPPED")

    def start(self) -> Optional[asyncio.Task]:
        """Start the loop as a background task. No-op when disabled."""
        if not self.enabled:
            logger.info("RECONCILE_LOOP_DISABLED")
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._running = False
        self._wake.set()
        for task in (self._task, self._adhoc):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._adhoc = None
        self._rerun = False

    # ========== INTERNALS ==========

    async def _fetch_and_merge(self, sequence: int) -> Dict[str, int]:
        snapshot = await self._fetch()

        summary = _empty_summary()
        with self.store.batch():
            for kind, entries in (
                (EntityKind.POSITION, snapshot.positions),
                (EntityKind.STRATEGY, snapshot.subscriptions),
            ):
                for entry in entries:
                    summary["fetched"] += 1
                    self._merge(kind, entry, sequence, summary)

        logger.info("RECONCILE_SUMMARY", **summary)
        return summary

    async def _fetch(self) -> Snapshot:
        try:
            if self.request_timeout:
                raw = await asyncio.wait_for(self.source.fetch_snapshot(), timeout=self.request_timeout)
            else:
                raw = await self.source.fetch_snapshot()
        except asyncio.TimeoutError:
            logger.warning("RECONCILE_FETCH_FAILED", timed_out=True)
            raise TransportFailure(f"snapshot fetch timed out after {self.request_timeout}s", timed_out=True)
        except TransportFailure as e:
            logger.warning("RECONCILE_FETCH_FAILED", error=str(e))
            raise
        except Exception as e:
            logger.warning("RECONCILE_FETCH_FAILED", error=str(e))
            raise TransportFailure(f"snapshot fetch failed: {e}") from e

        if isinstance(raw, Mapping):
            return snapshot_from_dict(raw)
        if not isinstance(raw, Snapshot):
            raise TransportFailure(f"snapshot source returned {type(raw).__name__}")
        return raw

    def _merge(self, kind: EntityKind, entry: Any, sequence: int, summary: Dict[str, int]) -> None:
        if not isinstance(entry, Mapping) or payload_id(entry) is None:
            summary["malformed"] += 1
            logger.warning("RECONCILE_ENTRY_SKIPPED", entity_kind=kind.value, reason="missing_id")
            return
        entity_id = entity_key(kind, payload_id(entry))
        try:
            patch = patch_for(kind, entry, full=True)
        except DataError as e:
            summary["malformed"] += 1
            logger.warning("RECONCILE_ENTRY_SKIPPED", entity_id=entity_id, reason="malformed", error=str(e))
            return
        if kind == EntityKind.POSITION and patch.get("status") == PositionStatus.CLOSED:
            patch = closing_patch(patch)

        result = self.store.upsert(entity_id, patch, WriteSource.REST, sequence)
        summary["fields_rejected"] += len(result.rejected)
        if result.reason == "incomplete":
            summary["malformed"] += 1
        elif result.created:
            summary["created"] += 1
        elif result.changed:
            summary["updated"] += 1
        else:
            summary["unchanged"] += 1

    async def _safe_refresh(self) -> Optional[Dict[str, int]]:
        try:
            return await self.refresh()
        except Exception as e:
            logger.error("RECONCILE_FAILED", error=str(e), error_type=type(e).__name__)
            return None

    async def _requested_refresh(self) -> Optional[Dict[str, int]]:
        summary = await self._safe_refresh()
        while self._rerun:
            self._rerun = False
            logger.info("RECONCILE_RERUN")
            summary = await self._safe_refresh()
        return summary
