import asyncio
import logging
from dataclasses import replace
from enum import Enum

from stormbox.constants import DELTA_POLL_INTERVAL_SEC, EMAIL_SUMMARY_PROPERTIES
from stormbox.errors import ExternalServiceError, StaleCursorError

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    POLLING = "polling"


class ReconcileOutcome(Enum):
    APPLIED = "applied"
    NOT_RECONCILABLE = "not_reconcilable"
    FAILED = "failed"


def apply_changes(entry, changes, added_summaries):
    """Patch the first page with a queryChanges result.

    Added indexes are positions in the resulting list, so inserts go in
    ascending index order after all removals.
    """
    by_id = {summary.id: summary for summary in added_summaries}
    dropped = set(changes.removed) | {message_id for message_id, _ in changes.added}

    def _patch(index, page):
        if index != 0:
            return page
        messages = [message for message in page.messages if message.id not in dropped]
        for message_id, position in sorted(changes.added, key=lambda item: item[1] if item[1] is not None else 0):
            summary = by_id.get(message_id)
            if summary is None or position is None:
                continue
            messages.insert(position, summary)
        return replace(
            page,
            messages=tuple(messages),
            query_state=changes.new_query_state,
            total=changes.total if changes.total is not None else page.total,
        )

    return entry.map_pages(_patch)


class DeltaSyncEngine:
    """Reconciles cached folders against the server's queryState cursor."""

    def __init__(
        self,
        client,
        cache,
        directory=None,
        poll_interval_sec=DELTA_POLL_INTERVAL_SEC,
        on_applied=None,
    ):
        self.client = client
        self.cache = cache
        self.directory = directory
        self.poll_interval_sec = poll_interval_sec
        self.on_applied = on_applied
        self._states = {}
        self._outcomes = {}
        self._inflight = {}
        self._timer = None

    def state(self, key):
        return self._states.get(key, SyncState.IDLE)

    def last_outcome(self, key):
        return self._outcomes.get(key)

    async def reconcile(self, key):
        """Apply server changes to the key's first page; concurrent callers share one call."""
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._reconcile(key))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key, task):
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)

    def _finish(self, key, outcome):
        self._states[key] = SyncState.IDLE
        self._outcomes[key] = outcome
        return outcome

    async def _reconcile(self, key):
        entry = self.cache.entry(key)
        query_state = entry.query_state if entry else None
        if not query_state:
            return self._finish(key, ReconcileOutcome.NOT_RECONCILABLE)

        self._states[key] = SyncState.POLLING
        try:
            changes = await self.client.query_message_changes(key.mailbox_id, query_state, key.sort_property)
            if changes.error or not changes.new_query_state:
                raise StaleCursorError(changes.error or "server returned no new query state")
            added_ids = [message_id for message_id, _ in changes.added]
            added = []
            if added_ids:
                added = await self.client.get_messages(added_ids, EMAIL_SUMMARY_PROPERTIES)
        except ExternalServiceError as exc:
            logger.debug("delta reconciliation failed for %s: %s", key, exc)
            return self._finish(key, ReconcileOutcome.FAILED)

        current = self.cache.entry(key)
        if current is None or current.query_state != query_state:
            logger.debug("cache for %s moved past cursor %s; skipping delta", key, query_state)
            return self._finish(key, ReconcileOutcome.NOT_RECONCILABLE)

        self.cache.update(key, lambda snapshot: apply_changes(snapshot, changes, added), fresh=True)
        if self.directory is not None and changes.total is not None:
            self.directory.set_total(key.mailbox_id, changes.total)
        if self.on_applied is not None and (added or changes.removed):
            self.on_applied(key, list(added), list(changes.removed))
        return self._finish(key, ReconcileOutcome.APPLIED)

    async def refresh(self, key):
        """Reconcile, falling back to a full refetch when the delta cannot be used."""
        outcome = await self.reconcile(key)
        if outcome is ReconcileOutcome.APPLIED:
            return outcome
        if outcome is ReconcileOutcome.NOT_RECONCILABLE:
            entry = self.cache.entry(key)
            if entry is not None and entry.query_state:
                return outcome
        try:
            await self.cache.invalidate(key)
        except ExternalServiceError as exc:
            logger.info("full refetch failed for %s: %s", key, exc)
        return outcome

    def start(self, active_key_fn, connected_fn):
        self.stop()
        self._timer = asyncio.ensure_future(self._poll_loop(active_key_fn, connected_fn))
        return self._timer

    def stop(self):
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def _poll_loop(self, active_key_fn, connected_fn):
        while True:
            await asyncio.sleep(self.poll_interval_sec)
            key = active_key_fn()
            if key is None or not connected_fn():
                continue
            await self.refresh(key)


def collect_new_unread(messages, known_ids):
    """Return unread messages that are new to the known-id set."""
    new_unread = []
    for message in messages:
        if not message.id:
            continue
        if message.id in known_ids:
            continue
        known_ids.add(message.id)
        if not message.seen:
            new_unread.append(message)
    return new_unread


__all__ = [
    "DeltaSyncEngine",
    "ReconcileOutcome",
    "SyncState",
    "apply_changes",
    "collect_new_unread",
]
