"""Session synchronization engine.

Keeps one session's local draft and workflow in step with the shared
progress document:

  - Local mutations stamp the change clock and schedule a debounced save.
    The payload (step, progress, draft) is read when the timer fires, so a
    burst of edits produces one write carrying the latest state.
  - Remote snapshots are merged under an echo-suppression window. A
    snapshot that arrives within ``suppression_window_seconds`` of the last
    local change is most likely the echo of an older write of ours and is
    discarded whole. Outside the window the step, draft and lock are
    reconciled one by one, and applying the same snapshot twice is a no-op.
  - Write failures are logged, recorded in ``last_error`` and handed to the
    failure callback. Nothing is retried here; the next local change
    schedules a fresh save, and ``needs_save`` stays set until a write
    succeeds so ``close(flush=True)`` can still deliver it.

All methods must be called from the session's event queue. When the engine
is bound to an asyncio loop, store writes run in a worker thread through
``AsyncStoreWrapper`` (bounded by the write timeout, applied in order) and
store callbacks are hopped back onto the loop with
``call_soon_threadsafe``. Without a loop, writes are synchronous, which is
what the manual-clock tests use.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
from collections.abc import Callable, Mapping
from typing import Any

from auditdrill.async_store import AsyncStoreWrapper
from auditdrill.config import SimulatorConfig
from auditdrill.draft import FIXED_ASSET_SECTIONS, Draft, drafts_equal, normalize_draft
from auditdrill.errors import PersistenceError
from auditdrill.protocol import RemoteSnapshot
from auditdrill.scheduler import SaveScheduler
from auditdrill.store import Document, DocumentStore, Unsubscribe
from auditdrill.workflow import WorkflowMachine, progress_state_for

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Exception], None]


class SyncEngine:
    """Debounced persistence plus suppression-window reconciliation.

    The engine does not own the draft. It reads and replaces it through
    ``get_draft`` / ``set_draft`` so the session stays the single owner.

    Args:
        session_id: Key of the progress document in the store.
        store: The shared document store.
        workflow: The session's workflow machine.
        get_draft: Returns the session's current draft.
        set_draft: Replaces the session's draft with a remote one.
        scheduler: Debounce timer and local-change clock.
        config: Timing configuration. The suppression window and write
            timeout are read here; the debounce interval lives in the
            scheduler.
        sections: Draft sections used to validate remote drafts.
        completion_ratio: Optional callable giving the share of items
            finished, used for range-based progress percentages.
        on_error: Called with every write or subscription failure.
        on_remote_applied: Called after a remote snapshot changed local state.
        loop: Event loop the session runs on. When set, writes go through
            an ``AsyncStoreWrapper`` and store callbacks are delivered on
            this loop.
    """

    def __init__(
        self,
        session_id: str,
        store: DocumentStore,
        workflow: WorkflowMachine,
        get_draft: Callable[[], Draft],
        set_draft: Callable[[Draft], None],
        scheduler: SaveScheduler,
        config: SimulatorConfig | None = None,
        sections: tuple[str, ...] = FIXED_ASSET_SECTIONS,
        completion_ratio: Callable[[], float | None] | None = None,
        on_error: ErrorCallback | None = None,
        on_remote_applied: Callable[[], None] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._session_id = session_id
        self._store = store
        self._workflow = workflow
        self._get_draft = get_draft
        self._set_draft = set_draft
        self._scheduler = scheduler
        self._config = config or SimulatorConfig()
        self._sections = sections
        self._completion_ratio = completion_ratio
        self._on_error = on_error
        self._on_remote_applied = on_remote_applied
        self._loop = loop
        self._async_store = (
            AsyncStoreWrapper(store, write_timeout=self._config.write_timeout_seconds)
            if loop is not None
            else None
        )

        self._unsubscribe: Unsubscribe | None = None
        self._pending_step: str | None = None
        self._reset_in_flight = False
        self._closed = False
        self._last_write: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self.last_error: Exception | None = None
        self.needs_save = False
        self.saves_written = 0
        self.snapshots_discarded = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def scheduler(self) -> SaveScheduler:
        return self._scheduler

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def writes_in_flight(self) -> int:
        return len(self._in_flight)

    # ── lifecycle ─────────────────────────────────────────────────

    def start(self) -> None:
        """Subscribe to the session's progress document."""
        if self._closed:
            raise RuntimeError("SyncEngine is closed")
        if self._unsubscribe is not None:
            return
        if self._loop is None:
            self._unsubscribe = self._store.subscribe(
                self._session_id, self.on_remote_snapshot, self.on_remote_error
            )
        else:
            self._unsubscribe = self._store.subscribe(
                self._session_id, self._dispatch_snapshot, self._dispatch_error
            )
        logger.info("Sync started for %s", self._session_id)

    def close(self, flush: bool = False) -> None:
        """Tear down: unsubscribe first, then deal with the pending save.

        Writes already handed to the store are left to finish; await
        ``drain`` to wait for them.

        Args:
            flush: Write a pending save, or a save that failed earlier,
                immediately instead of dropping it.
        """
        if self._closed:
            return
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        had_pending = self._scheduler.cancel_pending()
        if flush and (had_pending or self.needs_save):
            self.flush()
        self._scheduler.close()
        self._closed = True
        logger.info("Sync closed for %s", self._session_id)

    async def drain(self) -> None:
        """Wait for every write already handed to the store to settle."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            # Let the done callbacks record the outcomes.
            await asyncio.sleep(0)

    # ── local side ────────────────────────────────────────────────

    def record_local_change(self) -> None:
        """Stamp the change clock. Call before scheduling the save."""
        self._scheduler.record_change()

    def schedule_save(self, target_step: str | None = None) -> bool:
        """Debounce a save of the current state.

        Args:
            target_step: Step to persist. Defaults to the workflow's current
                step when the save fires.

        Returns:
            False if the engine is closed.
        """
        if self._closed:
            return False
        self._pending_step = target_step
        return self._scheduler.schedule(self._fire)

    def save_now(self, target_step: str | None = None) -> bool:
        """Cancel any pending save and write immediately."""
        if self._closed:
            return False
        self._scheduler.cancel_pending()
        self._pending_step = target_step
        return self.flush()

    def build_payload(self, target_step: str | None = None) -> dict[str, Any]:
        """Snapshot of local state in the progress document's shape."""
        config = self._workflow.config
        step = config.resolve_step(target_step) if target_step else self._workflow.current_step
        ratio = self._completion_ratio() if self._completion_ratio else None
        percent = config.percent_complete(step, ratio)
        return {
            "step": step,
            "state": progress_state_for(config, step, percent).value,
            "percent_complete": percent,
            "draft": copy.deepcopy(self._get_draft()),
        }

    def flush(self) -> bool:
        """Write the current payload now.

        Returns:
            True if the write succeeded, or, on a loop-bound engine, was
            handed to the store. Failures are reported through
            ``last_error`` and the error callback, never raised.
        """
        step, self._pending_step = self._pending_step, None
        payload = self.build_payload(step)
        if self._async_store is not None:
            self._start_write(payload, force_overwrite=False)
            return True
        try:
            self._store.write(self._session_id, payload)
        except PersistenceError as exc:
            self._write_failed(exc)
            return False
        self._write_succeeded(payload["step"], force_overwrite=False)
        return True

    def reset_remote(self) -> bool:
        """Force-overwrite the remote document with the current (reset) state.

        Cancels any pending save first. Snapshots delivered while the reset
        write is in flight are ignored, so an echo of the pre-reset document
        cannot resurrect old answers.

        Returns:
            True if the overwrite succeeded, or, on a loop-bound engine,
            was handed to the store.
        """
        if self._closed:
            return False
        self._scheduler.cancel_pending()
        self._pending_step = None
        payload = self.build_payload()
        self._reset_in_flight = True
        if self._async_store is not None:
            self._start_write(payload, force_overwrite=True)
            return True
        try:
            self._store.write(self._session_id, payload, force_overwrite=True)
        except PersistenceError as exc:
            self._write_failed(exc)
            return False
        finally:
            self._reset_in_flight = False
        self._write_succeeded(payload["step"], force_overwrite=True)
        return True

    # ── remote side ───────────────────────────────────────────────

    def on_remote_snapshot(self, document: Mapping[str, Any]) -> bool:
        """Merge a pushed snapshot into local state.

        Returns:
            True if any local state changed.
        """
        if self._closed:
            return False
        if self._reset_in_flight:
            logger.debug("Ignoring snapshot for %s during reset", self._session_id)
            self.snapshots_discarded += 1
            return False

        since = self._scheduler.seconds_since_change()
        if since is not None and since < self._config.suppression_window_seconds:
            logger.debug(
                "Discarding snapshot for %s: local change %.3fs ago", self._session_id, since
            )
            self.snapshots_discarded += 1
            return False

        snapshot = RemoteSnapshot.from_document(document)
        changed = False

        if snapshot.step and self._workflow.apply_remote_step(snapshot.step):
            changed = True

        remote_draft = normalize_draft(snapshot.draft, self._sections)
        if remote_draft is None:
            logger.warning("Discarding malformed remote draft for %s", self._session_id)
        elif not drafts_equal(remote_draft, self._get_draft()):
            self._set_draft(remote_draft)
            changed = True

        at_results = self._workflow.current_step == self._workflow.config.results_step
        if (snapshot.is_submitted or at_results) and not self._workflow.locked:
            self._workflow.lock()
            changed = True

        if changed:
            logger.debug("Applied remote snapshot for %s", self._session_id)
            if self._on_remote_applied is not None:
                try:
                    self._on_remote_applied()
                except Exception:
                    logger.exception("Error in remote-applied callback for %s", self._session_id)
        return changed

    def on_remote_error(self, error: Exception) -> None:
        """Surface a subscription failure without touching local state."""
        if self._closed:
            return
        self._report_failure(error)

    # ── internals ─────────────────────────────────────────────────

    def _fire(self) -> None:
        if self._closed:
            return
        self.flush()

    def _dispatch_snapshot(self, document: Document) -> None:
        assert self._loop is not None
        self._loop.call_soon_threadsafe(self.on_remote_snapshot, document)

    def _dispatch_error(self, error: Exception) -> None:
        assert self._loop is not None
        self._loop.call_soon_threadsafe(self.on_remote_error, error)

    def _start_write(self, payload: dict[str, Any], force_overwrite: bool) -> None:
        assert self._loop is not None
        task = self._loop.create_task(
            self._write_after(self._last_write, payload, force_overwrite)
        )
        self._last_write = task
        self._in_flight.add(task)
        task.add_done_callback(
            functools.partial(
                self._on_write_done, step=payload["step"], force_overwrite=force_overwrite
            )
        )

    async def _write_after(
        self,
        previous: asyncio.Task[None] | None,
        payload: dict[str, Any],
        force_overwrite: bool,
    ) -> None:
        # Writes land in the order they were issued.
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        assert self._async_store is not None
        await self._async_store.write(self._session_id, payload, force_overwrite)

    def _on_write_done(self, task: asyncio.Task[None], step: str, force_overwrite: bool) -> None:
        self._in_flight.discard(task)
        if self._last_write is task:
            self._last_write = None
        if force_overwrite:
            self._reset_in_flight = False
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            self._write_succeeded(step, force_overwrite)
        elif isinstance(error, Exception):
            self._write_failed(error)

    def _write_succeeded(self, step: str, force_overwrite: bool) -> None:
        self.last_error = None
        self.needs_save = False
        self.saves_written += 1
        if force_overwrite:
            logger.info("Reset remote progress for %s", self._session_id)
        else:
            logger.debug("Saved %s at step %r", self._session_id, step)

    def _write_failed(self, error: Exception) -> None:
        self.needs_save = True
        self._report_failure(error)

    def _report_failure(self, error: Exception) -> None:
        self.last_error = error
        logger.warning("Persistence failure for %s: %s", self._session_id, error)
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            logger.exception("Error in failure callback for %s", self._session_id)
